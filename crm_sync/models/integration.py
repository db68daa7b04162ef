"""Integration and field mapping models."""

from enum import Enum

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship

from .base import BaseModel


class Provider(str, Enum):
    """Supported CRM providers."""
    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"


class TransformType(str, Enum):
    """Field mapping transform types."""
    NONE = "none"
    MAP = "map"
    FORMAT = "format"


class Integration(BaseModel):
    """One row per CRM provider holding its OAuth state and health."""

    __tablename__ = "crm_integrations"

    provider = Column(String(32), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Connection
    is_enabled = Column(Boolean, default=False, nullable=False)
    is_connected = Column(Boolean, default=False, nullable=False)
    access_token = Column(Text, nullable=True)  # encrypted
    refresh_token = Column(Text, nullable=True)  # encrypted
    token_expires_at = Column(DateTime, nullable=True)
    instance_url = Column(String(500), nullable=True)  # Salesforce
    portal_id = Column(String(64), nullable=True)  # HubSpot

    # Health
    last_sync_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    field_mappings = relationship(
        "FieldMapping",
        back_populates="integration",
        cascade="all, delete-orphan",
        order_by="FieldMapping.id",
    )
    sync_logs = relationship("SyncLog", back_populates="integration")

    def __repr__(self) -> str:
        return f"<Integration {self.provider} enabled={self.is_enabled} connected={self.is_connected}>"


class FieldMapping(BaseModel):
    """Projects one session summary field onto one provider record field."""

    __tablename__ = "crm_field_mappings"

    integration_id = Column(Integer, ForeignKey("crm_integrations.id"), nullable=False, index=True)
    source_field = Column(String(100), nullable=False)
    target_object = Column(String(100), nullable=False)
    target_field = Column(String(100), nullable=False)
    transform_type = Column(String(16), default=TransformType.NONE.value, nullable=False)
    transform_config = Column(JSON, nullable=True)
    is_enabled = Column(Boolean, default=True, nullable=False)

    integration = relationship("Integration", back_populates="field_mappings")

    __table_args__ = (
        UniqueConstraint("integration_id", "target_object", "target_field", name="uq_mapping_target"),
    )
