"""Canonical session summary consumed by the sync engine."""

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


def epoch_millis(value: datetime) -> int:
    """Milliseconds since the epoch, naive datetimes read as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def utc_date(value: datetime) -> date:
    """Calendar date in UTC, naive datetimes read as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def calculate_grade(score: float) -> str:
    """Letter grade for a 0-100 score."""
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


class SessionSummary(BaseModel):
    """Finished training session as handed over by the training subsystem."""
    session_id: str = Field(alias="sessionId")
    user_name: str = Field(default="Anonymous", alias="userName")
    user_email: Optional[str] = Field(default=None, alias="userEmail")
    outcome: str = "unknown"
    score: float = Field(default=0, ge=0, le=100)
    grade: str = "F"
    sales_mode: str = Field(default="user_sells", alias="salesMode")
    duration: float = 0
    message_count: int = Field(default=0, alias="messageCount")
    started_at: datetime = Field(alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")

    class Config:
        populate_by_name = True

    @property
    def is_completed(self) -> bool:
        return self.ended_at is not None

    @property
    def priority(self) -> str:
        """Canonical priority derived from the score."""
        if self.score >= 80:
            return "high"
        if self.score >= 60:
            return "medium"
        return "low"

    @property
    def status(self) -> str:
        return "completed" if self.is_completed else "in_progress"

    def field_values(self) -> Dict[str, Any]:
        """Field values addressable by snake_case or camelCase name."""
        values = self.model_dump()
        values.update(self.model_dump(by_alias=True))
        return values


class SyncPayload(BaseModel):
    """Outbound payload stored on the sync log and replayed on retry."""
    summary: SessionSummary
    priority: str
    status: str
    mapped_fields: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def build(cls, summary: SessionSummary, mapped_fields: Optional[Dict[str, Any]] = None) -> "SyncPayload":
        return cls(
            summary=summary,
            priority=summary.priority,
            status=summary.status,
            mapped_fields=mapped_fields or {},
        )

    def to_log(self) -> Dict[str, Any]:
        """JSON-safe form for the sync log."""
        return self.model_dump(mode="json", by_alias=True)

    def wire_fields(self) -> Dict[str, Any]:
        """Mapped fields with dates and decimals rendered JSON-safe."""
        return self.model_dump(mode="json", include={"mapped_fields"})["mapped_fields"]
