"""REPLICATOR — audio restoration / mastering job processing core."""

__version__ = "0.1.0"
