"""External integrations (OAuth platforms, token endpoints, state store)."""
