"""Storage sync worker: uploads encoder output to the object store."""
