"""passify: a local, encrypted, hierarchical secret store."""

__version__ = "0.1.0"
