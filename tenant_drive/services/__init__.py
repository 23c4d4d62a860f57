"""Control-plane services."""
