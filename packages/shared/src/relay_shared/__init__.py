"""Shared configuration, events, registry and infrastructure for the relay services."""
