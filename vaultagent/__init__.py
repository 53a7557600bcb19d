"""vaultagent: agent orchestration core for a document vault."""

__version__ = "0.1.0"
