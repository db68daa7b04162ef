"""Field mapping transforms projecting session summaries onto CRM fields."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union
import json
import logging

from sqlalchemy import delete, select

from crm_sync.core.database import Database
from crm_sync.integrations.base import MappingTransformError
from crm_sync.integrations.registry import ProviderRegistry
from crm_sync.models import FieldMapping, Integration, TransformType
from crm_sync.schemas.integration import FieldMappingIn
from crm_sync.schemas.session import SessionSummary, epoch_millis, utc_date

logger = logging.getLogger(__name__)


DATE_FORMATS = ("iso", "epoch_millis", "date")


@dataclass(frozen=True)
class NoOp:
    """Pass the raw value through."""


@dataclass(frozen=True)
class LookupMap:
    """Replace the value from a table, passing it through on a miss."""
    table: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DateFormat:
    """Render dates as ``iso``, ``epoch_millis`` or ``date``.

    ``kind`` of ``None`` means the provider's default rendering.
    """
    kind: Optional[str] = None


Transform = Union[NoOp, LookupMap, DateFormat]


def _load_config(config: Union[Dict[str, Any], str, None]) -> Optional[Dict[str, Any]]:
    if config is None or config == "":
        return None
    if isinstance(config, str):
        try:
            config = json.loads(config)
        except json.JSONDecodeError as e:
            raise MappingTransformError(f"Transform config is not valid JSON: {e}") from e
    if not isinstance(config, dict):
        raise MappingTransformError("Transform config must be a JSON object")
    return config


def parse_transform(transform_type: str, config: Union[Dict[str, Any], str, None] = None) -> Transform:
    """Parse a stored transform into its variant.

    Raises:
        MappingTransformError: unknown transform type or malformed config.
    """
    try:
        kind = TransformType(transform_type or TransformType.NONE.value)
    except ValueError:
        raise MappingTransformError(f"Unknown transform type: {transform_type!r}") from None

    loaded = _load_config(config)

    if kind == TransformType.NONE:
        return NoOp()

    if kind == TransformType.MAP:
        if not loaded:
            raise MappingTransformError("Map transform requires a non-empty lookup table")
        return LookupMap(table=dict(loaded))

    loaded = loaded or {}
    date_kind = loaded.get("format")
    if date_kind is not None and date_kind not in DATE_FORMATS:
        raise MappingTransformError(
            f"Unknown date format {date_kind!r}, expected one of {', '.join(DATE_FORMATS)}"
        )
    # {"type": "date"} asks for the provider default
    legacy_type = loaded.get("type")
    if legacy_type is not None and legacy_type != "date":
        raise MappingTransformError(f"Unsupported format type: {legacy_type!r}")
    return DateFormat(kind=date_kind)


def _lookup_key(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _format_date(value: Union[date, datetime], kind: str) -> Any:
    if isinstance(value, datetime):
        aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if kind == "epoch_millis":
            return epoch_millis(aware)
        if kind == "date":
            return utc_date(aware).isoformat()
        return aware.isoformat()

    if kind == "epoch_millis":
        return epoch_millis(datetime(value.year, value.month, value.day))
    return value.isoformat()


def apply_transform(transform: Transform, value: Any, default_date_format: str = "iso") -> Any:
    """Evaluate a transform against a raw summary value."""
    if isinstance(transform, NoOp):
        return value

    if isinstance(transform, LookupMap):
        if isinstance(value, str) and value in transform.table:
            return transform.table[value]
        return transform.table.get(_lookup_key(value), value)

    if isinstance(value, (date, datetime)):
        return _format_date(value, transform.kind or default_date_format)
    return str(value)


def validate_mappings(mappings: Sequence[FieldMappingIn]) -> List[Transform]:
    """Check a full mapping set before it is stored.

    Raises:
        MappingTransformError: on a malformed transform or a target field
            mapped more than once.
    """
    transforms = []
    seen = set()
    for mapping in mappings:
        target = (mapping.target_object, mapping.target_field)
        if target in seen:
            raise MappingTransformError(
                f"Duplicate mapping target {mapping.target_object}.{mapping.target_field}"
            )
        seen.add(target)
        transforms.append(parse_transform(mapping.transform_type.value, mapping.transform_config))
    return transforms


class FieldMappingEngine:
    """Reads, stores and evaluates an integration's field mappings."""

    def __init__(self, database: Database):
        self.database = database

    async def get_mappings(self, provider: str) -> List[FieldMapping]:
        async with self.database.session() as session:
            result = await session.execute(
                select(FieldMapping)
                .join(Integration, FieldMapping.integration_id == Integration.id)
                .where(Integration.provider == provider)
                .order_by(FieldMapping.id)
            )
            return list(result.scalars().all())

    async def replace_mappings(self, provider: str, mappings: Sequence[FieldMappingIn]) -> List[FieldMapping]:
        """Validate and replace every mapping of a provider in one transaction."""
        validate_mappings(mappings)

        async with self.database.session() as session:
            result = await session.execute(select(Integration).where(Integration.provider == provider))
            integration = result.scalar_one_or_none()
            if integration is None:
                raise LookupError(f"Integration {provider} not initialized")

            await session.execute(delete(FieldMapping).where(FieldMapping.integration_id == integration.id))
            rows = []
            for mapping in mappings:
                row = FieldMapping(
                    integration_id=integration.id,
                    source_field=mapping.source_field,
                    target_object=mapping.target_object,
                    target_field=mapping.target_field,
                    transform_type=mapping.transform_type.value,
                    transform_config=_load_config(mapping.transform_config),
                    is_enabled=mapping.is_enabled,
                )
                session.add(row)
                rows.append(row)
            await session.commit()

        logger.info(f"Saved {len(rows)} field mappings", extra={"provider": provider})
        return rows

    async def apply_mappings(self, provider: str, summary: SessionSummary) -> Dict[str, Any]:
        """Evaluate enabled mappings against a summary.

        Absent or null source fields are skipped. A failing mapping is logged and
        skipped without failing the sync. Mappings apply in id order and the
        first one wins when two write the same target field.
        """
        provider_class = ProviderRegistry.get(provider)
        default_date_format = provider_class.default_date_format if provider_class else "iso"
        values = summary.field_values()
        output: Dict[str, Any] = {}

        for mapping in await self.get_mappings(provider):
            if not mapping.is_enabled:
                continue
            if values.get(mapping.source_field) is None:
                continue
            if mapping.target_field in output:
                logger.warning(
                    f"Ignoring mapping {mapping.id}, {mapping.target_field} already mapped",
                    extra={"provider": provider, "session_id": summary.session_id},
                )
                continue

            try:
                transform = parse_transform(mapping.transform_type, mapping.transform_config)
                output[mapping.target_field] = apply_transform(
                    transform, values[mapping.source_field], default_date_format
                )
            except MappingTransformError as e:
                logger.warning(
                    f"Skipping mapping {mapping.id} ({mapping.source_field} -> {mapping.target_field}): {e}",
                    extra={"provider": provider, "session_id": summary.session_id},
                )

        return output
