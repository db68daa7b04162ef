"""Database models for the CRM sync service."""

from .base import Base
from .integration import FieldMapping, Integration, Provider, TransformType
from .sync import SyncLog, SyncStatus, SyncType

__all__ = [
    "Base",
    "FieldMapping",
    "Integration",
    "Provider",
    "TransformType",
    "SyncLog",
    "SyncStatus",
    "SyncType",
]
