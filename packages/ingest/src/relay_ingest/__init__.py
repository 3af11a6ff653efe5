"""Live media ingest service."""
