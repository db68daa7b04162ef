"""Salesforce integration implementation."""

from typing import Dict, Any, Optional
import logging

from crm_sync.integrations.base import (
    ConnectionTestResult,
    CrmProvider,
    NotConnectedError,
    ProviderApiError,
    duration_minutes,
    format_score,
    mode_label,
    outcome_label,
)
from crm_sync.integrations.registry import ProviderRegistry
from crm_sync.models import Provider
from crm_sync.core.config import PROVIDER_CONFIGS
from crm_sync.schemas.session import SessionSummary, SyncPayload, utc_date

logger = logging.getLogger(__name__)


PRIORITY_VALUES = {
    "high": "High",
    "medium": "Normal",
    "low": "Low",
}

STATUS_VALUES = {
    "completed": "Completed",
    "in_progress": "In Progress",
}


def escape_soql(value: str) -> str:
    """Escape a string literal for a SOQL WHERE clause."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_description(summary: SessionSummary) -> str:
    """Plain-text Task description for a training session."""
    return (
        "Sales Training Session Summary\n"
        "================================\n"
        f"Mode: {mode_label(summary)}\n"
        f"Outcome: {outcome_label(summary)}\n"
        f"Score: {format_score(summary.score)}/100 ({summary.grade})\n"
        f"Duration: {duration_minutes(summary)} minutes\n"
        f"Messages: {summary.message_count}\n"
        "\n"
        "This activity was logged automatically by SellMeAPen Training Platform."
    )


@ProviderRegistry.register(Provider.SALESFORCE)
class SalesforceProvider(CrmProvider):
    """Salesforce CRM client writing training sessions as Task activities."""

    display_name = "Salesforce"
    object_type = PROVIDER_CONFIGS["salesforce"]["object_type"]
    default_date_format = "iso"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.config = PROVIDER_CONFIGS["salesforce"]
        self.api_version = self.config["api_version"]

    async def instance_url(self) -> str:
        """Get Salesforce instance URL captured at code exchange."""
        instance_url = await self.token_manager.get_instance_url(self.provider.value)
        if not instance_url:
            raise NotConnectedError("Salesforce instance URL not configured")
        return instance_url.rstrip("/")

    async def api_url(self, path: str) -> str:
        return f"{await self.instance_url()}/services/data/{self.api_version}{path}"

    def build_task(self, payload: SyncPayload) -> Dict[str, Any]:
        """Build Task fields, mapped fields last so they can override defaults."""
        summary = payload.summary
        task = {
            "Subject": f"Sales Training Session - {summary.grade} Grade",
            "Description": build_description(summary),
            "Status": STATUS_VALUES[payload.status],
            "Priority": PRIORITY_VALUES[payload.priority],
            "ActivityDate": utc_date(summary.started_at).isoformat(),
            "Type": "Training",
        }
        task.update(payload.wire_fields())
        return task

    async def create_record(self, payload: SyncPayload) -> str:
        """Create a Task and return its id."""
        task = self.build_task(payload)
        contact_id = await self.lookup_contact(payload.summary.user_email)
        if contact_id:
            task["WhoId"] = contact_id

        response = await self.make_api_request("POST", await self.api_url("/sobjects/Task"), json=task)
        result = response.json()
        if not result.get("success"):
            raise ProviderApiError(
                f"Failed to create task: {result.get('errors')}",
                status_code=response.status_code,
                response_text=response.text,
            )
        return result["id"]

    async def update_record(self, external_id: str, payload: SyncPayload) -> None:
        """Update an existing Task."""
        await self.make_api_request(
            "PATCH",
            await self.api_url(f"/sobjects/Task/{external_id}"),
            json=self.build_task(payload),
        )

    async def find_contact_by_email(self, email: str) -> Optional[str]:
        """Find a Contact id with a SOQL query on Email."""
        query = f"SELECT Id FROM Contact WHERE Email = '{escape_soql(email)}' LIMIT 1"
        response = await self.make_api_request("GET", await self.api_url("/query"), params={"q": query})
        records = response.json().get("records") or []
        if not records:
            return None
        return records[0].get("Id")

    async def test_connection(self) -> ConnectionTestResult:
        """Test Salesforce connection against the userinfo endpoint."""
        url = f"{await self.instance_url()}/services/oauth2/userinfo"
        response = await self.make_api_request("GET", url)
        user_info = response.json()
        return ConnectionTestResult(
            ok=True,
            detail={
                "user_id": user_info.get("user_id"),
                "organization_id": user_info.get("organization_id"),
                "username": user_info.get("preferred_username"),
            },
        )
