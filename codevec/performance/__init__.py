"""Performance helpers: caching."""
