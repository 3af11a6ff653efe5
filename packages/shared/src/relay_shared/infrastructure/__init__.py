"""Infrastructure adapters: configuration, logging, broker and object store."""
