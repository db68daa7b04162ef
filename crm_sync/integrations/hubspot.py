"""HubSpot integration implementation."""

from typing import Dict, Any, Optional
from html import escape
import logging

from crm_sync.integrations.base import (
    ConnectionTestResult,
    CrmProvider,
    duration_minutes,
    format_score,
    mode_label,
    outcome_label,
)
from crm_sync.integrations.registry import ProviderRegistry
from crm_sync.models import Provider
from crm_sync.core.config import PROVIDER_CONFIGS
from crm_sync.schemas.session import SessionSummary, SyncPayload, epoch_millis

logger = logging.getLogger(__name__)


PRIORITY_VALUES = {
    "high": "HIGH",
    "medium": "MEDIUM",
    "low": "LOW",
}

STATUS_VALUES = {
    "completed": "COMPLETED",
    "in_progress": "NOT_STARTED",
}


def build_body(summary: SessionSummary) -> str:
    """HTML engagement body for a training session."""
    return (
        "<h3>Sales Training Session</h3>\n"
        f"<p><strong>Trainee:</strong> {escape(summary.user_name)}</p>\n"
        f"<p><strong>Mode:</strong> {escape(mode_label(summary))}</p>\n"
        f"<p><strong>Outcome:</strong> {escape(outcome_label(summary))}</p>\n"
        f"<p><strong>Score:</strong> {format_score(summary.score)}/100 ({escape(summary.grade)})</p>\n"
        f"<p><strong>Duration:</strong> {duration_minutes(summary)} minutes</p>\n"
        f"<p><strong>Messages:</strong> {summary.message_count}</p>\n"
        "<hr>\n"
        "<p><em>Logged by SellMeAPen Training Platform</em></p>"
    )


@ProviderRegistry.register(Provider.HUBSPOT)
class HubSpotProvider(CrmProvider):
    """HubSpot CRM client writing training sessions as TASK engagements."""

    display_name = "HubSpot"
    object_type = PROVIDER_CONFIGS["hubspot"]["object_type"]
    default_date_format = "epoch_millis"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.config = PROVIDER_CONFIGS["hubspot"]
        self.api_base_url = self.config["api_base_url"]

    def build_metadata(self, payload: SyncPayload) -> Dict[str, Any]:
        summary = payload.summary
        metadata = {
            "subject": f"Sales Training: {summary.grade} Grade ({format_score(summary.score)}/100)",
            "body": build_body(summary),
            "status": STATUS_VALUES[payload.status],
            "taskType": "TRAINING",
            "priority": PRIORITY_VALUES[payload.priority],
        }
        metadata.update(payload.wire_fields())
        return metadata

    async def create_record(self, payload: SyncPayload) -> str:
        """Create a TASK engagement and return its id."""
        summary = payload.summary
        contact_ids = []
        contact_id = await self.lookup_contact(summary.user_email)
        if contact_id:
            try:
                contact_ids.append(int(contact_id))
            except ValueError:
                logger.warning(
                    f"Skipping association with non-numeric HubSpot contact id {contact_id!r}",
                    extra={"provider": self.provider.value},
                )

        engagement = {
            "engagement": {
                "type": "TASK",
                "timestamp": epoch_millis(summary.started_at),
            },
            "associations": {"contactIds": contact_ids},
            "metadata": self.build_metadata(payload),
        }

        response = await self.make_api_request(
            "POST",
            f"{self.api_base_url}/engagements/v1/engagements",
            json=engagement,
        )
        return str(response.json()["engagement"]["id"])

    async def update_record(self, external_id: str, payload: SyncPayload) -> None:
        """Update engagement metadata."""
        await self.make_api_request(
            "PATCH",
            f"{self.api_base_url}/engagements/v1/engagements/{external_id}",
            json={"metadata": self.build_metadata(payload)},
        )

    async def find_contact_by_email(self, email: str) -> Optional[str]:
        """Find a contact id through the CRM search API."""
        response = await self.make_api_request(
            "POST",
            f"{self.api_base_url}/crm/v3/objects/contacts/search",
            json={
                "filterGroups": [{
                    "filters": [{
                        "propertyName": "email",
                        "operator": "EQ",
                        "value": email,
                    }]
                }],
                "limit": 1,
            },
        )
        results = response.json().get("results") or []
        if not results:
            return None
        return str(results[0]["id"])

    async def get_account_info(self) -> Dict[str, Any]:
        response = await self.make_api_request("GET", f"{self.api_base_url}/account-info/v3/details")
        return response.json()

    async def get_portal_id(self) -> Optional[str]:
        """Get the connected HubSpot portal id."""
        portal_id = (await self.get_account_info()).get("portalId")
        return str(portal_id) if portal_id is not None else None

    async def test_connection(self) -> ConnectionTestResult:
        """Test HubSpot connection."""
        account = await self.get_account_info()
        return ConnectionTestResult(
            ok=True,
            detail={
                "portal_id": account.get("portalId"),
                "time_zone": account.get("timeZone"),
                "account_type": account.get("accountType"),
            },
        )
