"""Tests for the Salesforce and HubSpot clients."""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from crm_sync.integrations import HubSpotProvider, ProviderRegistry, SalesforceProvider
from crm_sync.integrations.base import NotConnectedError, ProviderApiError
from crm_sync.integrations.salesforce import escape_soql
from crm_sync.models import Provider
from crm_sync.schemas.session import SyncPayload

from conftest import SF_API


@pytest.fixture
def salesforce(token_manager, http_client):
    return SalesforceProvider(token_manager, http_client)


@pytest.fixture
def hubspot(token_manager, http_client):
    return HubSpotProvider(token_manager, http_client)


def test_registry_lists_both_providers():
    assert ProviderRegistry.get("salesforce") is SalesforceProvider
    assert ProviderRegistry.get("hubspot") is HubSpotProvider
    assert ProviderRegistry.get("pipedrive") is None
    assert set(ProviderRegistry.list_providers()) == {Provider.SALESFORCE, Provider.HUBSPOT}


def test_escape_soql():
    assert escape_soql("o'brien@example.com") == "o\\'brien@example.com"
    assert escape_soql("a\\b") == "a\\\\b"


class TestSalesforceProvider:

    @pytest.mark.asyncio
    async def test_create_task_payload(self, salesforce, connect_integration, crm, summary):
        await connect_integration("salesforce")
        crm.route("GET", f"{SF_API}/query", json={"totalSize": 1, "done": True, "records": [{"Id": "003C1"}]})

        external_id = await salesforce.create_record(SyncPayload.build(summary, {"Score__c": 92.0}))

        assert external_id == "T1"
        [request] = crm.calls("POST", f"{SF_API}/sobjects/Task")
        assert request.url.host == "acme.my.salesforce.com"
        assert request.headers["Authorization"] == "Bearer salesforce-access"
        task = json.loads(request.content)
        assert task["Subject"] == "Sales Training Session - A Grade"
        assert task["Status"] == "Completed"
        assert task["Priority"] == "High"
        assert task["ActivityDate"] == "2024-05-01"
        assert task["Type"] == "Training"
        assert task["WhoId"] == "003C1"
        assert task["Score__c"] == 92.0
        assert task["Description"].splitlines() == [
            "Sales Training Session Summary",
            "================================",
            "Mode: User as Seller",
            "Outcome: Sale Made",
            "Score: 92/100 (A)",
            "Duration: 10 minutes",
            "Messages: 24",
            "",
            "This activity was logged automatically by SellMeAPen Training Platform.",
        ]

        [query] = crm.calls("GET", f"{SF_API}/query")
        assert parse_qs(query.url.query.decode())["q"] == [
            "SELECT Id FROM Contact WHERE Email = 'jamie@example.com' LIMIT 1"
        ]

    @pytest.mark.asyncio
    async def test_in_progress_low_score(self, salesforce, connect_integration, crm, summary):
        await connect_integration("salesforce")
        summary = summary.model_copy(update={"ended_at": None, "score": 55, "grade": "F"})

        task = salesforce.build_task(SyncPayload.build(summary))

        assert task["Status"] == "In Progress"
        assert task["Priority"] == "Low"

    @pytest.mark.asyncio
    async def test_activity_date_is_utc_day(self, salesforce, summary):
        started = datetime(2024, 4, 30, 22, 30, tzinfo=timezone(timedelta(hours=-5)))
        summary = summary.model_copy(update={"started_at": started})

        assert salesforce.build_task(SyncPayload.build(summary))["ActivityDate"] == "2024-05-01"

    @pytest.mark.asyncio
    async def test_contact_lookup_failure_does_not_block_create(self, salesforce, connect_integration, crm, summary):
        await connect_integration("salesforce")
        crm.route("GET", f"{SF_API}/query", status=500, json=[{"errorCode": "UNKNOWN"}])

        assert await salesforce.create_record(SyncPayload.build(summary)) == "T1"

        task = json.loads(crm.calls("POST", f"{SF_API}/sobjects/Task")[0].content)
        assert "WhoId" not in task

    @pytest.mark.asyncio
    async def test_create_rejected(self, salesforce, connect_integration, crm, summary):
        await connect_integration("salesforce")
        crm.route("POST", f"{SF_API}/sobjects/Task", json={
            "id": None, "success": False, "errors": ["REQUIRED_FIELD_MISSING"],
        })

        with pytest.raises(ProviderApiError, match="REQUIRED_FIELD_MISSING"):
            await salesforce.create_record(SyncPayload.build(summary))

    @pytest.mark.asyncio
    async def test_update_patches_task(self, salesforce, connect_integration, crm, summary):
        await connect_integration("salesforce")

        await salesforce.update_record("T1", SyncPayload.build(summary))

        [request] = crm.calls("PATCH", f"{SF_API}/sobjects/Task/T1")
        assert json.loads(request.content)["Subject"] == "Sales Training Session - A Grade"
        assert crm.calls("GET", f"{SF_API}/query") == []

    @pytest.mark.asyncio
    async def test_not_connected_makes_no_request(self, salesforce, crm, summary):
        with pytest.raises(NotConnectedError):
            await salesforce.create_record(SyncPayload.build(summary.model_copy(update={"user_email": None})))

        assert crm.requests == []

    @pytest.mark.asyncio
    async def test_api_error_keeps_status_and_body(self, salesforce, connect_integration, crm, summary):
        await connect_integration("salesforce")
        crm.route("PATCH", f"{SF_API}/sobjects/Task/T9", status=404, json=[{"errorCode": "NOT_FOUND"}])

        with pytest.raises(ProviderApiError) as exc_info:
            await salesforce.update_record("T9", SyncPayload.build(summary))

        assert exc_info.value.status_code == 404
        assert "NOT_FOUND" in exc_info.value.response_text
        assert "Salesforce API error (404)" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_is_provider_error(self, salesforce, connect_integration, crm, summary):
        await connect_integration("salesforce")

        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        crm.route("PATCH", f"{SF_API}/sobjects/Task/T1", handler=timeout)

        with pytest.raises(ProviderApiError, match="timed out"):
            await salesforce.update_record("T1", SyncPayload.build(summary))

    @pytest.mark.asyncio
    async def test_connection(self, salesforce, connect_integration):
        await connect_integration("salesforce")

        result = await salesforce.test_connection()

        assert result.ok is True
        assert result.detail["username"] == "admin@acme.com"


class TestHubSpotProvider:

    @pytest.mark.asyncio
    async def test_create_engagement_payload(self, hubspot, connect_integration, crm, summary):
        await connect_integration("hubspot")
        crm.route("POST", "/crm/v3/objects/contacts/search", json={"total": 1, "results": [{"id": "901"}]})

        external_id = await hubspot.create_record(SyncPayload.build(summary, {"hs_outcome": "WON"}))

        assert external_id == "555"
        [search] = crm.calls("POST", "/crm/v3/objects/contacts/search")
        assert json.loads(search.content)["filterGroups"][0]["filters"][0] == {
            "propertyName": "email", "operator": "EQ", "value": "jamie@example.com",
        }

        body = json.loads(crm.calls("POST", "/engagements/v1/engagements")[0].content)
        started = summary.started_at.replace(tzinfo=timezone.utc)
        assert body["engagement"] == {"type": "TASK", "timestamp": int(started.timestamp() * 1000)}
        assert body["associations"] == {"contactIds": [901]}
        metadata = body["metadata"]
        assert metadata["subject"] == "Sales Training: A Grade (92/100)"
        assert metadata["status"] == "COMPLETED"
        assert metadata["priority"] == "HIGH"
        assert metadata["taskType"] == "TRAINING"
        assert metadata["hs_outcome"] == "WON"
        assert "<p><strong>Trainee:</strong> Jamie Rivera</p>" in metadata["body"]
        assert metadata["body"].endswith("<hr>\n<p><em>Logged by SellMeAPen Training Platform</em></p>")

    @pytest.mark.asyncio
    async def test_non_numeric_contact_id_skips_association(self, hubspot, connect_integration, crm, summary):
        await connect_integration("hubspot")
        crm.route("POST", "/crm/v3/objects/contacts/search", json={"total": 1, "results": [{"id": "abc-901"}]})

        assert await hubspot.create_record(SyncPayload.build(summary)) == "555"

        body = json.loads(crm.calls("POST", "/engagements/v1/engagements")[0].content)
        assert body["associations"] == {"contactIds": []}

    @pytest.mark.asyncio
    async def test_medium_priority_not_started(self, hubspot, summary):
        summary = summary.model_copy(update={"ended_at": None, "score": 65, "grade": "D"})

        metadata = hubspot.build_metadata(SyncPayload.build(summary))

        assert metadata["priority"] == "MEDIUM"
        assert metadata["status"] == "NOT_STARTED"

    @pytest.mark.asyncio
    async def test_update_sends_metadata_only(self, hubspot, connect_integration, crm, summary):
        await connect_integration("hubspot")

        await hubspot.update_record("555", SyncPayload.build(summary))

        body = json.loads(crm.calls("PATCH", "/engagements/v1/engagements/555")[0].content)
        assert set(body) == {"metadata"}

    @pytest.mark.asyncio
    async def test_contact_not_found(self, hubspot, connect_integration):
        await connect_integration("hubspot")

        assert await hubspot.find_contact_by_email("nobody@example.com") is None

    @pytest.mark.asyncio
    async def test_portal_id(self, hubspot, connect_integration):
        await connect_integration("hubspot")

        assert await hubspot.get_portal_id() == "12345"
        result = await hubspot.test_connection()
        assert result.ok is True
        assert result.detail["portal_id"] == 12345
