"""Tests for field mapping transforms."""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from crm_sync.integrations.base import MappingTransformError
from crm_sync.models import FieldMapping, Integration
from crm_sync.schemas.integration import FieldMappingIn
from crm_sync.services.transformation_service import (
    DateFormat,
    LookupMap,
    NoOp,
    apply_transform,
    parse_transform,
    validate_mappings,
)


STARTED = datetime(2024, 5, 1, 11, 40, 0)
STARTED_MILLIS = int(datetime(2024, 5, 1, 11, 40, 0, tzinfo=timezone.utc).timestamp() * 1000)


class TestParseTransform:
    """Save-time parsing of stored transform configs."""

    def test_none(self):
        assert parse_transform("none") == NoOp()
        assert parse_transform("none", {"ignored": True}) == NoOp()

    def test_map_from_json_string(self):
        assert parse_transform("map", '{"sale_made": "Won"}') == LookupMap({"sale_made": "Won"})

    def test_format_kinds(self):
        assert parse_transform("format") == DateFormat()
        assert parse_transform("format", {"type": "date"}) == DateFormat()
        assert parse_transform("format", {"format": "epoch_millis"}) == DateFormat("epoch_millis")

    @pytest.mark.parametrize("transform_type,config", [
        ("uppercase", None),
        ("map", None),
        ("map", {}),
        ("map", "{not json"),
        ("map", "[1, 2]"),
        ("format", {"format": "rfc2822"}),
        ("format", {"type": "currency"}),
    ])
    def test_rejects_malformed(self, transform_type, config):
        with pytest.raises(MappingTransformError):
            parse_transform(transform_type, config)


class TestApplyTransform:
    """Pure transform evaluation."""

    def test_noop_passes_raw_value(self):
        assert apply_transform(NoOp(), 92) == 92

    def test_lookup_hit_and_miss(self):
        table = LookupMap({"sale_made": "Closed Won", "92": "Top"})

        assert apply_transform(table, "sale_made") == "Closed Won"
        assert apply_transform(table, "no_sale") == "no_sale"
        assert apply_transform(table, 92.0) == "Top"

    def test_date_formats(self):
        assert apply_transform(DateFormat("iso"), STARTED) == "2024-05-01T11:40:00+00:00"
        assert apply_transform(DateFormat("epoch_millis"), STARTED) == STARTED_MILLIS
        assert apply_transform(DateFormat("date"), STARTED) == "2024-05-01"
        assert apply_transform(DateFormat("date"), date(2024, 5, 1)) == "2024-05-01"

    def test_date_uses_utc_calendar_day(self):
        late_evening = datetime(2024, 4, 30, 22, 30, tzinfo=timezone(timedelta(hours=-5)))

        assert apply_transform(DateFormat("date"), late_evening) == "2024-05-01"

    def test_provider_default_applies_without_kind(self):
        assert apply_transform(DateFormat(), STARTED, default_date_format="epoch_millis") == STARTED_MILLIS
        assert apply_transform(DateFormat(), STARTED) == "2024-05-01T11:40:00+00:00"

    def test_non_date_is_stringified(self):
        assert apply_transform(DateFormat("iso"), 92) == "92"


class TestValidateMappings:

    def test_duplicate_target_rejected(self):
        mappings = [
            FieldMappingIn(sourceField="score", targetObject="Task", targetField="Score__c"),
            FieldMappingIn(sourceField="grade", targetObject="Task", targetField="Score__c"),
        ]
        with pytest.raises(MappingTransformError, match="Duplicate mapping target"):
            validate_mappings(mappings)

    def test_same_field_on_other_object_allowed(self):
        mappings = [
            FieldMappingIn(sourceField="score", targetObject="Task", targetField="Score__c"),
            FieldMappingIn(sourceField="score", targetObject="Event", targetField="Score__c"),
        ]
        assert len(validate_mappings(mappings)) == 2


class TestFieldMappingEngine:
    """Mapping evaluation against stored mappings."""

    @pytest.mark.asyncio
    async def test_disabled_mapping_excluded(self, token_manager, mapping_engine, summary):
        await mapping_engine.replace_mappings("salesforce", [
            FieldMappingIn(sourceField="score", targetObject="Task", targetField="Score__c"),
            FieldMappingIn(sourceField="grade", targetObject="Task", targetField="Grade__c", isEnabled=False),
        ])

        fields = await mapping_engine.apply_mappings("salesforce", summary)

        assert fields == {"Score__c": 92}

    @pytest.mark.asyncio
    async def test_camel_case_sources_and_transforms(self, token_manager, mapping_engine, summary):
        await mapping_engine.replace_mappings("hubspot", [
            FieldMappingIn(sourceField="outcome", targetObject="Engagement", targetField="hs_outcome",
                           transformType="map", transformConfig={"sale_made": "WON"}),
            FieldMappingIn(sourceField="startedAt", targetObject="Engagement", targetField="hs_started",
                           transformType="format"),
            FieldMappingIn(sourceField="messageCount", targetObject="Engagement", targetField="hs_messages"),
        ])

        fields = await mapping_engine.apply_mappings("hubspot", summary)

        assert fields == {
            "hs_outcome": "WON",
            "hs_started": STARTED_MILLIS,
            "hs_messages": 24,
        }

    @pytest.mark.asyncio
    async def test_absent_source_skipped(self, token_manager, mapping_engine, summary):
        await mapping_engine.replace_mappings("salesforce", [
            FieldMappingIn(sourceField="territory", targetObject="Task", targetField="Territory__c"),
        ])

        assert await mapping_engine.apply_mappings("salesforce", summary) == {}

    @pytest.mark.asyncio
    async def test_malformed_stored_mapping_skipped(self, database, token_manager, mapping_engine, summary):
        async with database.session() as session:
            result = await session.execute(select(Integration).where(Integration.provider == "salesforce"))
            integration = result.scalar_one()
            session.add_all([
                FieldMapping(integration_id=integration.id, source_field="outcome", target_object="Task",
                             target_field="Outcome__c", transform_type="uppercase"),
                FieldMapping(integration_id=integration.id, source_field="grade", target_object="Task",
                             target_field="Grade__c", transform_type="none"),
            ])
            await session.commit()

        fields = await mapping_engine.apply_mappings("salesforce", summary)

        assert fields == {"Grade__c": "A"}

    @pytest.mark.asyncio
    async def test_replace_rejects_invalid_and_keeps_existing(self, token_manager, mapping_engine):
        await mapping_engine.replace_mappings("salesforce", [
            FieldMappingIn(sourceField="score", targetObject="Task", targetField="Score__c"),
        ])

        with pytest.raises(MappingTransformError):
            await mapping_engine.replace_mappings("salesforce", [
                FieldMappingIn(sourceField="grade", targetObject="Task", targetField="Grade__c",
                               transformType="map", transformConfig="not json"),
            ])

        [mapping] = await mapping_engine.get_mappings("salesforce")
        assert mapping.target_field == "Score__c"
