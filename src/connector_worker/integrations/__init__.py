"""Sheet API access."""
