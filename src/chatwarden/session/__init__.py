"""Session records, registry and lifecycle controller."""
