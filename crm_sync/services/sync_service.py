"""Synchronization of completed training sessions to connected CRMs."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from datetime import datetime
import logging
from collections import defaultdict

import httpx
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from crm_sync.core.database import Database
from crm_sync.integrations.base import (
    CrmProvider,
    IntegrationError,
    SessionNotFoundError,
    SyncLogNotFoundError,
)
from crm_sync.integrations.registry import ProviderRegistry
from crm_sync.models import Integration, SyncLog, SyncStatus, SyncType
from crm_sync.schemas.integration import SyncStats
from crm_sync.schemas.session import SessionSummary, SyncPayload
from crm_sync.services.token_service import TokenLifecycleManager
from crm_sync.services.transformation_service import FieldMappingEngine

logger = logging.getLogger(__name__)


class SessionSummarySource(Protocol):
    """Supplies finished session summaries by id."""

    async def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        ...


@dataclass
class SyncResult:
    """Outcome of delivering one session to one provider."""
    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None


class SyncService:
    """Delivers session summaries to every enabled and connected integration.

    A session has one sync log row per integration. The first successful
    delivery records the remote id on that row and every later sync or retry
    updates that remote record instead of creating another one. Deliveries
    for the same (integration, session) pair are serialized in-process; the
    unique constraint on the log table rejects a concurrent first delivery
    from another process.
    """

    def __init__(
        self,
        database: Database,
        token_manager: TokenLifecycleManager,
        mapping_engine: FieldMappingEngine,
        http_client: httpx.AsyncClient,
        summary_source: Optional[SessionSummarySource] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        providers: Optional[Dict[str, CrmProvider]] = None,
    ):
        self.database = database
        self.token_manager = token_manager
        self.mapping_engine = mapping_engine
        self.summary_source = summary_source
        self.clock = clock
        if providers is None:
            providers = {
                provider.value: ProviderRegistry.get(provider.value)(token_manager, http_client)
                for provider in ProviderRegistry.list_providers()
            }
        self.providers = providers
        self._locks: Dict[Tuple[int, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[int, str], int] = defaultdict(int)

    def get_provider(self, provider: str) -> Optional[CrmProvider]:
        return self.providers.get(provider)

    async def sync_session(self, session_id: str) -> Dict[str, SyncResult]:
        """Load a session summary and sync it to all active integrations.

        Raises:
            SessionNotFoundError: the summary source has no such session.
        """
        if self.summary_source is None:
            raise SessionNotFoundError("No session summary source configured")
        summary = await self.summary_source.get_summary(session_id)
        if summary is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return await self.sync_summary(summary)

    async def sync_summary(self, summary: SessionSummary) -> Dict[str, SyncResult]:
        """Sync a summary to every enabled and connected integration.

        Every integration is attempted; a failure for one provider is recorded
        on its sync log and does not stop the others.
        """
        results: Dict[str, SyncResult] = {}
        for integration in await self._active_integrations():
            try:
                results[integration.provider] = await self._sync_integration(integration, summary)
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.exception(
                    f"Sync to {integration.name} aborted",
                    extra={"provider": integration.provider, "session_id": summary.session_id},
                )
                await self._record_integration_error(integration.id, error)
                results[integration.provider] = SyncResult(success=False, error=error)
        return results

    async def on_session_completed(self, summary: SessionSummary) -> Dict[str, SyncResult]:
        """Session-completion hook; never raises into the caller."""
        try:
            return await self.sync_summary(summary)
        except Exception:
            logger.exception(
                "CRM sync failed for completed session",
                extra={"session_id": summary.session_id},
            )
            return {}

    async def retry(self, sync_log_id: int) -> SyncResult:
        """Replay a failed delivery from its stored payload.

        Raises:
            SyncLogNotFoundError: no sync log with this id.
        """
        async with self.database.session() as session:
            sync_log = await session.get(SyncLog, sync_log_id)
            if sync_log is None:
                raise SyncLogNotFoundError(f"Sync log {sync_log_id} not found")
            integration = await session.get(Integration, sync_log.integration_id)

        if sync_log.status == SyncStatus.SUCCESS.value:
            return SyncResult(success=True, external_id=sync_log.external_id)
        if not integration.is_enabled:
            return SyncResult(success=False, error=f"{integration.name} integration is disabled")

        client = self.get_provider(integration.provider)
        if client is None:
            return SyncResult(success=False, error=f"No client registered for {integration.provider}")

        async with self._session_lock((integration.id, sync_log.session_id)):
            async with self.database.session() as session:
                sync_log = await session.get(SyncLog, sync_log_id)
                if sync_log.status == SyncStatus.SUCCESS.value:
                    return SyncResult(success=True, external_id=sync_log.external_id)
                sync_log.retry_count += 1
                sync_log.status = SyncStatus.RETRYING.value
                sync_log.sync_type = SyncType.RETRY.value
                await session.commit()

            logger.info(
                f"Retrying sync to {integration.name}",
                extra={
                    "provider": integration.provider,
                    "session_id": sync_log.session_id,
                    "sync_log_id": sync_log.id,
                    "retry_count": sync_log.retry_count,
                },
            )

            try:
                payload = SyncPayload.model_validate(sync_log.request_payload or {})
            except ValidationError as e:
                error = f"Stored payload is invalid: {e}"
                await self._record_failure(integration.id, sync_log.id, error)
                return SyncResult(success=False, error=error)

            return await self._deliver(integration, client, sync_log.id, sync_log.external_id, payload)

    async def get_sync_stats(self, provider: str) -> SyncStats:
        """Count sync logs by status for one provider."""
        async with self.database.session() as session:
            integration = await self._get_integration(session, provider)
            result = await session.execute(
                select(SyncLog.status, func.count(SyncLog.id))
                .where(SyncLog.integration_id == integration.id)
                .group_by(SyncLog.status)
            )
            counts = dict(result.all())

        return SyncStats(
            total=sum(counts.values()),
            success=counts.get(SyncStatus.SUCCESS.value, 0),
            failed=counts.get(SyncStatus.FAILED.value, 0),
            pending=counts.get(SyncStatus.PENDING.value, 0) + counts.get(SyncStatus.RETRYING.value, 0),
            last_sync=integration.last_sync_at,
        )

    async def get_recent_sync_logs(
        self,
        provider: str,
        limit: int = 50,
        status: Optional[SyncStatus] = None,
    ) -> List[SyncLog]:
        """Most recently touched sync logs first."""
        async with self.database.session() as session:
            integration = await self._get_integration(session, provider)
            query = select(SyncLog).where(SyncLog.integration_id == integration.id)
            if status:
                query = query.where(SyncLog.status == SyncStatus(status).value)
            query = query.order_by(SyncLog.updated_at.desc(), SyncLog.id.desc()).limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def has_active_integrations(self) -> bool:
        return bool(await self._active_integrations())

    async def _active_integrations(self) -> List[Integration]:
        async with self.database.session() as session:
            result = await session.execute(
                select(Integration)
                .where(Integration.is_enabled.is_(True), Integration.is_connected.is_(True))
                .order_by(Integration.id)
            )
            return list(result.scalars().all())

    async def _get_integration(self, session, provider: str) -> Integration:
        result = await session.execute(select(Integration).where(Integration.provider == provider))
        integration = result.scalar_one_or_none()
        if integration is None:
            raise LookupError(f"Integration {provider} not initialized")
        return integration

    async def _sync_integration(self, integration: Integration, summary: SessionSummary) -> SyncResult:
        client = self.get_provider(integration.provider)
        if client is None:
            logger.error(f"No client registered for {integration.provider}")
            return SyncResult(success=False, error=f"No client registered for {integration.provider}")

        async with self._session_lock((integration.id, summary.session_id)):
            mapped_fields = await self.mapping_engine.apply_mappings(integration.provider, summary)
            payload = SyncPayload.build(summary, mapped_fields)

            try:
                sync_log_id, external_id = await self._begin_sync_log(integration, client, payload)
            except IntegrityError:
                logger.warning(
                    "Sync already in progress elsewhere",
                    extra={"provider": integration.provider, "session_id": summary.session_id},
                )
                return SyncResult(success=False, error="Sync already in progress for this session")

            return await self._deliver(integration, client, sync_log_id, external_id, payload)

    async def _begin_sync_log(
        self,
        integration: Integration,
        client: CrmProvider,
        payload: SyncPayload,
    ) -> Tuple[int, Optional[str]]:
        """Put the session's sync log in ``pending`` and return it with any prior remote id."""
        async with self.database.session() as session:
            result = await session.execute(
                select(SyncLog).where(
                    SyncLog.integration_id == integration.id,
                    SyncLog.session_id == payload.summary.session_id,
                )
            )
            sync_log = result.scalar_one_or_none()
            if sync_log is None:
                sync_log = SyncLog(
                    integration_id=integration.id,
                    session_id=payload.summary.session_id,
                    object_type=client.object_type,
                    retry_count=0,
                )
                session.add(sync_log)

            sync_log.sync_type = (SyncType.UPDATE if sync_log.external_id else SyncType.CREATE).value
            sync_log.status = SyncStatus.PENDING.value
            sync_log.request_payload = payload.to_log()
            sync_log.error_message = None
            await session.commit()
            return sync_log.id, sync_log.external_id

    async def _deliver(
        self,
        integration: Integration,
        client: CrmProvider,
        sync_log_id: int,
        external_id: Optional[str],
        payload: SyncPayload,
    ) -> SyncResult:
        context = {
            "provider": integration.provider,
            "session_id": payload.summary.session_id,
            "sync_log_id": sync_log_id,
        }
        try:
            if external_id:
                await client.update_record(external_id, payload)
                action = "updated"
            else:
                external_id = await client.create_record(payload)
                action = "created"
        except IntegrationError as e:
            logger.error(f"Sync to {integration.name} failed: {e}", extra=context)
            await self._record_failure(integration.id, sync_log_id, str(e))
            return SyncResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error syncing to {integration.name}", extra=context)
            await self._record_failure(integration.id, sync_log_id, str(e) or type(e).__name__)
            return SyncResult(success=False, error=str(e) or type(e).__name__)

        now = self.clock()
        async with self.database.session() as session:
            sync_log = await session.get(SyncLog, sync_log_id)
            sync_log.status = SyncStatus.SUCCESS.value
            sync_log.external_id = external_id
            sync_log.error_message = None
            sync_log.response_data = {
                "action": action,
                "external_id": external_id,
                "synced_at": now.isoformat(),
            }
            db_integration = await session.get(Integration, integration.id)
            db_integration.last_sync_at = now
            db_integration.last_error = None
            await session.commit()

        logger.info(f"Session {action} in {integration.name}", extra={**context, "external_id": external_id})
        return SyncResult(success=True, external_id=external_id)

    async def _record_failure(self, integration_id: int, sync_log_id: int, error: str) -> None:
        async with self.database.session() as session:
            sync_log = await session.get(SyncLog, sync_log_id)
            sync_log.status = SyncStatus.FAILED.value
            sync_log.error_message = error
            db_integration = await session.get(Integration, integration_id)
            db_integration.last_error = error
            await session.commit()

    async def _record_integration_error(self, integration_id: int, error: str) -> None:
        try:
            async with self.database.session() as session:
                db_integration = await session.get(Integration, integration_id)
                db_integration.last_error = error
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record sync error on integration {integration_id}: {e}")

    @asynccontextmanager
    async def _session_lock(self, key: Tuple[int, str]):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._locks.pop(key, None)
