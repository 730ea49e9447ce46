"""Platform connections: OAuth2 lifecycle, token storage and refresh."""
