"""Purchase and payment reconciliation service for the lesson catalog back office."""

__version__ = "1.0.0"
