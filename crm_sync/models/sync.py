"""Sync log model."""

from enum import Enum

from sqlalchemy import Column, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import BaseModel


class SyncStatus(str, Enum):
    """Sync attempt status."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class SyncType(str, Enum):
    """Kind of delivery performed."""
    CREATE = "create"
    UPDATE = "update"
    RETRY = "retry"


class SyncLog(BaseModel):
    """Delivery record of one session summary to one CRM provider.

    A session has at most one row per integration. Later syncs and retries
    mutate that row, so ``external_id`` (only ever written on success) is the
    authoritative pointer to the remote record.
    """

    __tablename__ = "crm_sync_logs"

    integration_id = Column(Integer, ForeignKey("crm_integrations.id"), nullable=False)
    session_id = Column(String(64), nullable=False)

    sync_type = Column(String(16), default=SyncType.CREATE.value, nullable=False)
    object_type = Column(String(32), nullable=False)
    status = Column(String(16), default=SyncStatus.PENDING.value, nullable=False)
    external_id = Column(String(64), nullable=True)

    request_payload = Column(JSON, nullable=True)
    response_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    integration = relationship("Integration", back_populates="sync_logs")

    __table_args__ = (
        UniqueConstraint("integration_id", "session_id", name="uq_sync_log_session"),
        Index("idx_sync_log_status", "integration_id", "status"),
    )
