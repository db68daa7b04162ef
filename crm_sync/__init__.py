"""CRM synchronization service for completed training sessions."""

__version__ = "1.0.0"
