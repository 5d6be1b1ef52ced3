"""REPLICATOR HTTP API."""
