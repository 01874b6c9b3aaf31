"""Guards around calls into unreliable third-party services."""
