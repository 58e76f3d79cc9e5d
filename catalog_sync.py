"""
Catalog Sync Orchestrator

Drives import (POS to local), export (local to POS) and bidirectional catalog
sync runs for one tenant integration. A run moves through
fetching -> transforming -> syncing -> complete | error:

- fetching: page through the remote catalog under the executor's rate limiter
- transforming: build a plan per item (mapping lookup, conflict detection and
  resolution, merged values)
- syncing: apply the plans through the batch executor

Every run writes one pending sync log entry up front and finalizes it once.
"""

import asyncio
import hashlib
import json
import logging
import threading
import time
from contextlib import AsyncExitStack, contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from batch_executor import BatchConfig, BatchExecutor, BatchProgress, ItemFailure
from catalog_transform import (
    RemoteItem, local_to_remote, parse_timestamp, project_local, remote_to_local
)
from config import Config
from conflict_resolver import ConflictResolver, Resolution, values_equal
from exceptions import (
    AuthError, PosSyncError, SyncInProgressError, ValidationError, error_code_for
)
from logging_config import get_sync_logger, release_sync_logger
from models import (
    IdentityMapping, Integration, MappingStatus, SyncDirection, SyncLogStatus,
    SyncOperation, SyncType
)
from pos_catalog_client import PosCatalogClient
from repositories import (
    ConflictReviewRepository, IntegrationRepository, InventoryRepository,
    MappingRepository, SyncLogRepository
)
from token_manager import TokenManager

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 100


class SyncStage(Enum):
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    SYNCING = "syncing"
    COMPLETE = "complete"
    ERROR = "error"


class PlanAction(Enum):
    CREATE_LOCAL = "create_local"
    UPDATE_LOCAL = "update_local"
    CREATE_REMOTE = "create_remote"
    UPDATE_REMOTE = "update_remote"
    UNCHANGED = "unchanged"


@dataclass
class SyncOptions:
    direction: str = SyncDirection.FROM_REMOTE.value
    sync_type: str = SyncType.CATALOG.value
    batch_size: Optional[int] = None
    dry_run: bool = False

    def __post_init__(self):
        if self.direction not in [d.value for d in SyncDirection]:
            raise ValueError(f"Invalid sync direction: {self.direction}")
        if self.sync_type not in [t.value for t in SyncType]:
            raise ValueError(f"Invalid sync type: {self.sync_type}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncOptions':
        batch_size = data.get('batch_size')
        return cls(
            direction=data.get('direction') or SyncDirection.FROM_REMOTE.value,
            sync_type=data.get('sync_type') or SyncType.CATALOG.value,
            batch_size=int(batch_size) if batch_size is not None else None,
            dry_run=bool(data.get('dry_run', False))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'direction': self.direction,
            'sync_type': self.sync_type,
            'batch_size': self.batch_size,
            'dry_run': self.dry_run
        }


@dataclass
class SyncError:
    """A failed item within a sync run."""
    item_id: Optional[str]
    item_name: Optional[str]
    error: str
    code: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item_id': self.item_id,
            'item_name': self.item_name,
            'error': self.error,
            'code': self.code
        }


@dataclass
class SyncProgress:
    stage: SyncStage
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    current_batch: int = 0
    total_batches: int = 0
    estimated_time_remaining: Optional[float] = None
    message: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stage': self.stage.value,
            'total': self.total,
            'processed': self.processed,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'current_batch': self.current_batch,
            'total_batches': self.total_batches,
            'estimated_time_remaining': self.estimated_time_remaining,
            'message': self.message
        }


@dataclass
class SyncResult:
    success: bool
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    errors: List[SyncError] = field(default_factory=list)
    duration: float = 0.0
    sync_log_id: Optional[int] = None
    items_skipped: int = 0
    items_created: int = 0
    items_updated: int = 0
    conflicts: int = 0
    manual_reviews: int = 0
    dry_run: bool = False
    cancelled: bool = False
    requires_reauthorization: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'items_processed': self.items_processed,
            'items_succeeded': self.items_succeeded,
            'items_failed': self.items_failed,
            'items_skipped': self.items_skipped,
            'items_created': self.items_created,
            'items_updated': self.items_updated,
            'conflicts': self.conflicts,
            'manual_reviews': self.manual_reviews,
            'errors': [e.to_dict() for e in self.errors],
            'duration': self.duration,
            'sync_log_id': self.sync_log_id,
            'dry_run': self.dry_run,
            'cancelled': self.cancelled,
            'requires_reauthorization': self.requires_reauthorization
        }


@dataclass
class SyncPlan:
    """What one item needs, decided before anything is written."""
    action: PlanAction
    phase: str
    item_id: str
    item_name: str
    record: Dict[str, Any] = field(default_factory=dict)
    remote: Optional[RemoteItem] = None
    local_item: Any = None
    mapping: Optional[IdentityMapping] = None
    resolutions: List[Resolution] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str]:
        """Identity of the catalog item across the import and export phases."""
        if self.remote is not None:
            return _catalog_key(self.remote.remote_id, None)
        if self.mapping is not None:
            return _catalog_key(self.mapping.remote_object_id, None)
        return _catalog_key(None, self.item_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item_id': self.item_id,
            'item_name': self.item_name,
            'action': self.action.value,
            'phase': self.phase,
            'changes': self.record if self.action == PlanAction.UPDATE_LOCAL else None,
            'conflicts': [r.to_dict() for r in self.resolutions]
        }


def _catalog_key(remote_id: Optional[str], local_id: Optional[str]) -> Tuple[str, str]:
    if remote_id:
        return ('remote', remote_id)
    return ('local', local_id)


@dataclass
class _RunTally:
    """Run counters.

    created, updated and unchanged count applied actions, so a bidirectional
    run that writes both sides of one item counts two updates. The item
    counters are distinct catalog items: a failure in either phase makes the
    item failed, and a skip only counts if the other phase did nothing.
    """
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    conflicts: int = 0
    manual_reviews: int = 0
    errors: List[SyncError] = field(default_factory=list)
    preview: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    run_error: Optional[BaseException] = None
    ok_keys: Set[Tuple[str, str]] = field(default_factory=set)
    failed_keys: Set[Tuple[str, str]] = field(default_factory=set)
    skipped_keys: Set[Tuple[str, str]] = field(default_factory=set)

    def fail(self, key: Tuple[str, str], error: SyncError) -> None:
        self.errors.append(error)
        self.failed_keys.add(key)

    @property
    def succeeded(self) -> int:
        return len(self.ok_keys - self.failed_keys)

    @property
    def skipped(self) -> int:
        return len(self.skipped_keys - self.ok_keys - self.failed_keys)

    @property
    def failed(self) -> int:
        return len(self.failed_keys)

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.skipped


def _item_attr(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


class SyncRunGuard:
    """Rejects a second concurrent run for the same tenant integration."""

    def __init__(self):
        self._running: Set[Tuple[str, int]] = set()
        self._lock = threading.Lock()

    def is_running(self, tenant_id: str, integration_id: int) -> bool:
        return (tenant_id, integration_id) in self._running

    def acquire(self, tenant_id: str, integration_id: int) -> None:
        key = (tenant_id, integration_id)
        with self._lock:
            if key in self._running:
                raise SyncInProgressError(f"A sync is already in progress for tenant {tenant_id}")
            self._running.add(key)

    def release(self, tenant_id: str, integration_id: int) -> None:
        with self._lock:
            self._running.discard((tenant_id, integration_id))

    @contextmanager
    def running(self, tenant_id: str, integration_id: int):
        self.acquire(tenant_id, integration_id)
        try:
            yield
        finally:
            self.release(tenant_id, integration_id)


class CatalogSyncOrchestrator:
    """Sync runs for one tenant integration. Build a new instance per run."""

    def __init__(self, tenant_id: str, integration: Integration, session: Session, client: Any,
                 local_store: Any = None, resolver: Optional[ConflictResolver] = None,
                 batch_config: Optional[BatchConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.tenant_id = tenant_id
        self.integration = integration
        self.session = session
        self.client = client
        self.local_store = local_store if local_store is not None else InventoryRepository(session)
        self.resolver = resolver or ConflictResolver()
        self.batch_config = batch_config or BatchConfig()
        self.batch_config.validate()

        self.mappings = MappingRepository(session)
        self.sync_logs = SyncLogRepository(session)
        self.reviews = ConflictReviewRepository(session)
        self.integrations = IntegrationRepository(session)

        self._clock = clock
        self._sleep = sleep
        self._progress_callbacks: List[Callable[[SyncProgress], Any]] = []
        self._executor: Optional[BatchExecutor] = None
        self._cancel_requested = False
        self._run_logger = logger

    # Public API

    def on_progress(self, callback: Callable[[SyncProgress], Any]) -> None:
        self._progress_callbacks.append(callback)

    def cancel(self) -> None:
        """Abort the run between batches."""
        self._cancel_requested = True
        if self._executor is not None:
            self._executor.cancel()

    async def sync_from_remote(self, options: Optional[SyncOptions] = None) -> SyncResult:
        options = replace(options or SyncOptions(), direction=SyncDirection.FROM_REMOTE.value)
        return await self._run(options)

    async def sync_to_remote(self, options: Optional[SyncOptions] = None) -> SyncResult:
        options = replace(options or SyncOptions(), direction=SyncDirection.TO_REMOTE.value)
        return await self._run(options)

    async def sync_bidirectional(self, options: Optional[SyncOptions] = None) -> SyncResult:
        options = replace(options or SyncOptions(), direction=SyncDirection.BIDIRECTIONAL.value)
        return await self._run(options)

    async def sync(self, options: SyncOptions) -> SyncResult:
        """Dispatch on ``options.direction``."""
        return await self._run(options)

    def get_rate_limit_status(self) -> Dict[str, Any]:
        if self._executor is None:
            return {'can_make_request': True, 'requests_in_last_minute': 0}
        return self._executor.get_rate_limit_status()

    # Run driver

    def _new_executor(self, batch_size: Optional[int] = None) -> BatchExecutor:
        config = self.batch_config
        if batch_size:
            config = replace(config, batch_size=batch_size)
        executor = BatchExecutor(config, clock=self._clock, sleep=self._sleep)
        if self._cancel_requested:
            executor.cancel()
        return executor

    async def _run(self, options: SyncOptions) -> SyncResult:
        started = self._clock()
        # Configuration errors surface before any log entry exists
        executor = self._new_executor(options.batch_size)
        self._executor = executor

        log_entry = self.sync_logs.create_sync_log(
            tenant_id=self.tenant_id,
            integration_id=self.integration.id,
            direction=options.direction,
            sync_type=options.sync_type,
            operation=SyncOperation.SYNC.value,
            request_payload=options.to_dict()
        )
        self.sync_logs.commit()

        self._run_logger, capture = get_sync_logger(log_entry.id)
        tally = _RunTally()
        self._run_logger.info(f"Starting {options.direction} sync for tenant {self.tenant_id} "
                              f"(dry_run={options.dry_run})")

        try:
            async with AsyncExitStack() as stack:
                if hasattr(self.client, '__aenter__'):
                    await stack.enter_async_context(self.client)

                await self._emit(SyncProgress(stage=SyncStage.FETCHING, message="Fetching POS catalog"))
                remote_items, fetch_errors = await self._fetch_remote_catalog(executor)
                for error in fetch_errors:
                    tally.fail(_catalog_key(error.item_id, None), error)

                phases = [options.direction]
                if options.direction == SyncDirection.BIDIRECTIONAL.value:
                    phases = [SyncDirection.FROM_REMOTE.value, SyncDirection.TO_REMOTE.value]

                for phase in phases:
                    await self._run_phase(phase, remote_items, executor, options, tally)
                    if tally.run_error is not None or tally.cancelled:
                        break

        except PosSyncError as e:
            # Catalog could not be fetched, or credentials failed outside the executor
            tally.run_error = e
        except Exception as e:
            self._run_logger.error(f"Sync run failed unexpectedly: {e}")
            self._finalize(log_entry, options, tally, started, capture, unexpected=e)
            raise

        result = self._finalize(log_entry, options, tally, started, capture)
        await self._emit(SyncProgress(
            stage=SyncStage.COMPLETE if result.success or options.dry_run else SyncStage.ERROR,
            total=result.items_processed,
            processed=result.items_processed,
            succeeded=result.items_succeeded,
            failed=result.items_failed,
            message="Sync finished"
        ))
        return result

    async def _fetch_remote_catalog(self, executor: BatchExecutor) -> Tuple[List[RemoteItem], List[SyncError]]:
        """All ITEM objects of the remote catalog, transformed to local shape."""
        objects: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        pages = 0

        while True:
            outcome = await executor.execute(cursor, self.client.list_catalog_objects)
            if isinstance(outcome, ItemFailure):
                self._run_logger.error(f"Failed to fetch POS catalog page {pages + 1}: {outcome.message}")
                raise outcome.error
            page = outcome.result
            pages += 1
            objects.extend(page.objects)
            cursor = page.next_cursor
            if not cursor:
                break

        remote_items: List[RemoteItem] = []
        errors: List[SyncError] = []
        for catalog_object in objects:
            if catalog_object.get('type', 'ITEM') != 'ITEM' or catalog_object.get('is_deleted'):
                continue
            try:
                remote_items.append(remote_to_local(catalog_object))
            except ValidationError as e:
                item_data = catalog_object.get('item_data') or {}
                errors.append(SyncError(catalog_object.get('id'), item_data.get('name'), e.message, e.error_code))

        self._run_logger.info(f"Fetched {len(remote_items)} POS catalog items in {pages} page(s)")
        return remote_items, errors

    async def _run_phase(self, phase: str, remote_items: List[RemoteItem], executor: BatchExecutor,
                         options: SyncOptions, tally: _RunTally) -> None:
        await self._emit(SyncProgress(stage=SyncStage.TRANSFORMING, message=f"Planning {phase}"))
        if phase == SyncDirection.FROM_REMOTE.value:
            plans = self._plan_import(remote_items, options.dry_run, tally)
            operation = self._apply_import
        else:
            plans = self._plan_export(remote_items, options.dry_run, tally)
            operation = self._apply_export

        for plan in plans:
            tally.conflicts += len(plan.resolutions)
            tally.manual_reviews += sum(1 for r in plan.resolutions if r.needs_review)
            if plan.resolutions:
                self.resolver.log_resolutions(plan.resolutions, context=plan.item_id)

        if options.dry_run:
            for plan in plans:
                self._count_action(plan.action, plan.key, tally)
                if len(tally.preview) < PREVIEW_LIMIT:
                    tally.preview.append(plan.to_dict())
            self._run_logger.info(f"Dry run {phase}: {len(plans)} item(s) planned, nothing applied")
            return

        if not plans:
            return

        def forward(progress: BatchProgress):
            return self._emit(SyncProgress(
                stage=SyncStage.SYNCING,
                total=progress.total_items,
                processed=progress.processed_items,
                succeeded=progress.successful_items,
                failed=progress.failed_items,
                current_batch=progress.current_batch,
                total_batches=progress.total_batches,
                estimated_time_remaining=progress.estimated_time_remaining,
                message=f"Applying {phase} changes"
            ))

        await self._emit(SyncProgress(stage=SyncStage.SYNCING, total=len(plans), message=f"Applying {phase}"))
        # Each finished batch is durable before the next one starts
        result = await executor.process(plans, operation, on_progress=forward,
                                        on_batch_complete=lambda batch: self.session.commit())

        for success in result.succeeded:
            self._count_action(success.result, success.item.key, tally)
        for failure in result.failed:
            plan = failure.item
            tally.fail(plan.key, SyncError(plan.item_id, plan.item_name, failure.message, failure.error_code))
            if plan.mapping is not None and failure.error_code == 'REMOTE_OBJECT_MISSING':
                self.mappings.set_status(plan.mapping, MappingStatus.ERROR.value, failure.message)
        self.session.commit()

        if result.cancelled:
            tally.cancelled = True
        if result.aborted:
            tally.run_error = result.aborted_error

    @staticmethod
    def _count_action(action: PlanAction, key: Tuple[str, str], tally: _RunTally) -> None:
        tally.ok_keys.add(key)
        if action in (PlanAction.CREATE_LOCAL, PlanAction.CREATE_REMOTE):
            tally.created += 1
        elif action in (PlanAction.UPDATE_LOCAL, PlanAction.UPDATE_REMOTE):
            tally.updated += 1
        else:
            tally.unchanged += 1

    def _skip_mapping(self, mapping: IdentityMapping, phase: str) -> bool:
        return mapping.sync_status != MappingStatus.ACTIVE.value or not mapping.allows(phase)

    # Import (POS -> local)

    def _plan_import(self, remote_items: List[RemoteItem], dry_run: bool, tally: _RunTally) -> List[SyncPlan]:
        phase = SyncDirection.FROM_REMOTE.value
        plans: List[SyncPlan] = []

        for remote in remote_items:
            mapping = self.mappings.get_mapping_by_remote_id(self.integration.id, remote.remote_id)
            if mapping is None:
                plans.append(SyncPlan(PlanAction.CREATE_LOCAL, phase, remote.remote_id, remote.name,
                                      record=dict(remote.record), remote=remote))
                continue

            if self._skip_mapping(mapping, phase):
                tally.skipped_keys.add(_catalog_key(remote.remote_id, None))
                continue

            local_item = self.local_store.get(mapping.local_item_id)
            if local_item is None:
                message = f"Local item {mapping.local_item_id} no longer exists"
                tally.fail(_catalog_key(remote.remote_id, None),
                           SyncError(remote.remote_id, remote.name, message, 'LOCAL_ITEM_MISSING'))
                if not dry_run:
                    self.mappings.set_status(mapping, MappingStatus.ERROR.value, message)
                continue

            local_record = project_local(local_item)
            conflicts = self.resolver.detect_conflicts(
                remote.record, local_record, remote.updated_at, _item_attr(local_item, 'updated_at'))
            resolutions = self.resolver.resolve_multiple(
                conflicts, policy=mapping.conflict_policy, enqueue=not dry_run)
            merged = self.resolver.apply_resolutions(local_record, resolutions)
            changes = {k: v for k, v in merged.items() if not values_equal(v, local_record.get(k))}

            plans.append(SyncPlan(
                PlanAction.UPDATE_LOCAL if changes else PlanAction.UNCHANGED,
                phase, remote.remote_id, remote.name,
                record=changes, remote=remote, local_item=local_item,
                mapping=mapping, resolutions=resolutions
            ))

        return plans

    async def _apply_import(self, plan: SyncPlan) -> PlanAction:
        remote = plan.remote

        if plan.action == PlanAction.CREATE_LOCAL:
            item = self.local_store.create(dict(plan.record, tenant_id=self.tenant_id))
            self.mappings.create_mapping(
                tenant_id=self.tenant_id,
                integration_id=self.integration.id,
                local_item_id=_item_attr(item, 'id'),
                remote_object_id=remote.remote_id,
                remote_variation_id=remote.variation_id,
                remote_version=remote.version,
                last_local_update=_item_attr(item, 'updated_at'),
                last_remote_update=remote.updated_at
            )
            self._run_logger.info(f"Created local item for POS object {remote.remote_id} ({remote.name})")
            return plan.action

        local_item = plan.local_item
        if plan.action == PlanAction.UPDATE_LOCAL:
            local_item = self.local_store.update(_item_attr(local_item, 'id'), plan.record)
            self._run_logger.info(f"Updated local item {_item_attr(local_item, 'id')}: {sorted(plan.record)}")

        self._queue_reviews(plan)
        self.mappings.touch(
            plan.mapping,
            last_local_update=_item_attr(local_item, 'updated_at'),
            last_remote_update=remote.updated_at,
            remote_version=remote.version
        )
        return plan.action

    # Export (local -> POS)

    def _plan_export(self, remote_items: List[RemoteItem], dry_run: bool, tally: _RunTally) -> List[SyncPlan]:
        phase = SyncDirection.TO_REMOTE.value
        remote_index = {remote.remote_id: remote for remote in remote_items}
        plans: List[SyncPlan] = []

        for local_item in self.local_store.list_items(self.tenant_id):
            local_id = _item_attr(local_item, 'id')
            local_name = _item_attr(local_item, 'name') or local_id
            local_record = project_local(local_item)
            mapping = self.mappings.get_mapping_by_local_id(self.tenant_id, local_id, self.integration.id)

            try:
                if mapping is None:
                    payload = local_to_remote(local_record, local_id, currency=self.integration.currency)
                    plans.append(SyncPlan(PlanAction.CREATE_REMOTE, phase, local_id, local_name,
                                          record=payload, local_item=local_item))
                    continue

                if self._skip_mapping(mapping, phase):
                    tally.skipped_keys.add(_catalog_key(mapping.remote_object_id, None))
                    continue

                remote = remote_index.get(mapping.remote_object_id)
                if remote is None:
                    message = f"POS object {mapping.remote_object_id} no longer exists"
                    tally.fail(_catalog_key(mapping.remote_object_id, None),
                               SyncError(local_id, local_name, message, 'REMOTE_OBJECT_MISSING'))
                    if not dry_run:
                        self.mappings.set_status(mapping, MappingStatus.ERROR.value, message)
                    continue

                conflicts = self.resolver.detect_conflicts(
                    remote.record, local_record, remote.updated_at, _item_attr(local_item, 'updated_at'))
                resolutions = self.resolver.resolve_multiple(
                    conflicts, policy=mapping.conflict_policy, enqueue=not dry_run)
                merged = self.resolver.apply_resolutions(remote.record, resolutions)

                if values_equal(merged, remote.record):
                    plans.append(SyncPlan(PlanAction.UNCHANGED, phase, local_id, local_name, remote=remote,
                                          local_item=local_item, mapping=mapping, resolutions=resolutions))
                    continue

                payload = local_to_remote(
                    merged, local_id,
                    remote_id=remote.remote_id,
                    variation_id=remote.variation_id or mapping.remote_variation_id,
                    version=remote.version,
                    currency=self.integration.currency
                )
                plans.append(SyncPlan(PlanAction.UPDATE_REMOTE, phase, local_id, local_name, record=payload,
                                      remote=remote, local_item=local_item, mapping=mapping,
                                      resolutions=resolutions))

            except ValidationError as e:
                key = _catalog_key(mapping.remote_object_id if mapping else None, local_id)
                tally.fail(key, SyncError(local_id, local_name, e.message, e.error_code))

        return plans

    def _idempotency_key(self, local_id: str, payload: Dict[str, Any]) -> str:
        body = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(f"{self.integration.id}:{local_id}:{body}".encode()).hexdigest()

    async def _apply_export(self, plan: SyncPlan) -> PlanAction:
        local_item = plan.local_item

        if plan.action in (PlanAction.CREATE_REMOTE, PlanAction.UPDATE_REMOTE):
            saved = await self.client.upsert_catalog_object(
                plan.record, self._idempotency_key(plan.item_id, plan.record))
            variations = (saved.get('item_data') or {}).get('variations') or [{}]

            if plan.action == PlanAction.CREATE_REMOTE:
                self.mappings.create_mapping(
                    tenant_id=self.tenant_id,
                    integration_id=self.integration.id,
                    local_item_id=plan.item_id,
                    remote_object_id=saved['id'],
                    remote_variation_id=variations[0].get('id'),
                    remote_version=saved.get('version'),
                    last_local_update=_item_attr(local_item, 'updated_at'),
                    last_remote_update=parse_timestamp(saved.get('updated_at'))
                )
                self._run_logger.info(f"Created POS object {saved['id']} for local item {plan.item_id}")
                return plan.action

            self._queue_reviews(plan)
            self.mappings.touch(
                plan.mapping,
                last_local_update=_item_attr(local_item, 'updated_at'),
                last_remote_update=parse_timestamp(saved.get('updated_at')),
                remote_version=saved.get('version')
            )
            self._run_logger.info(f"Updated POS object {saved['id']} from local item {plan.item_id}")
            return plan.action

        self._queue_reviews(plan)
        self.mappings.touch(plan.mapping, last_local_update=_item_attr(local_item, 'updated_at'))
        return plan.action

    def _queue_reviews(self, plan: SyncPlan) -> None:
        for resolution in plan.resolutions:
            if not resolution.needs_review:
                continue
            self.reviews.enqueue(
                tenant_id=self.tenant_id,
                mapping_id=plan.mapping.id,
                field_name=resolution.field,
                remote_value=resolution.remote_value,
                local_value=resolution.local_value,
                interim_value=resolution.resolved_value,
                reason=resolution.reason,
                remote_updated_at=plan.remote.updated_at if plan.remote else None,
                local_updated_at=_item_attr(plan.local_item, 'updated_at')
            )

    # Deletes

    async def handle_local_item_deleted(self, local_item_id: str, delete_remote: bool = False) -> bool:
        """Drop the mapping of a deleted local item, optionally deleting the POS object too."""
        mapping = self.mappings.get_mapping_by_local_id(self.tenant_id, local_item_id, self.integration.id)
        if mapping is None:
            return False

        started = self._clock()
        log_entry = self.sync_logs.create_sync_log(
            tenant_id=self.tenant_id,
            integration_id=self.integration.id,
            direction=SyncDirection.TO_REMOTE.value if delete_remote else SyncDirection.FROM_REMOTE.value,
            sync_type=SyncType.CATALOG.value,
            operation=SyncOperation.DELETE.value,
            mapping_id=mapping.id,
            request_payload={'local_item_id': local_item_id, 'remote_object_id': mapping.remote_object_id,
                             'delete_remote': delete_remote}
        )
        self.sync_logs.commit()

        if delete_remote:
            executor = self._new_executor()
            async with AsyncExitStack() as stack:
                if hasattr(self.client, '__aenter__'):
                    await stack.enter_async_context(self.client)
                outcome = await executor.execute(mapping.remote_object_id, self.client.delete_catalog_object)

            if isinstance(outcome, ItemFailure):
                self.mappings.set_status(mapping, MappingStatus.ERROR.value, outcome.message)
                self.sync_logs.finalize_sync_log(
                    log_entry.id, SyncLogStatus.ERROR.value,
                    duration_ms=int((self._clock() - started) * 1000),
                    error_code=outcome.error_code, error_message=outcome.message
                )
                self.sync_logs.commit()
                return False

        self.mappings.delete_mapping(mapping.id)
        self.sync_logs.finalize_sync_log(
            log_entry.id, SyncLogStatus.SUCCESS.value, items_affected=1,
            duration_ms=int((self._clock() - started) * 1000)
        )
        self.sync_logs.commit()
        logger.info(f"Removed mapping for deleted local item {local_item_id}")
        return True

    # Finalization and progress

    def _finalize(self, log_entry, options: SyncOptions, tally: _RunTally, started: float, capture,
                  unexpected: Optional[BaseException] = None) -> SyncResult:
        duration = self._clock() - started
        run_error = unexpected or tally.run_error
        failed = tally.failed

        if run_error is not None:
            status = SyncLogStatus.ERROR.value
            error_code = error_code_for(run_error)
            error_message = str(run_error)
        elif tally.cancelled:
            status = SyncLogStatus.ERROR.value
            error_code = 'CANCELLED'
            error_message = "Sync run cancelled before all batches completed"
        elif options.dry_run:
            status = SyncLogStatus.SKIPPED.value
            error_code = 'PARTIAL_FAILURE' if failed else None
            error_message = f"{failed} item(s) would fail" if failed else None
        elif failed:
            status = SyncLogStatus.ERROR.value
            error_code = 'PARTIAL_FAILURE'
            error_message = f"{failed} item(s) failed"
        else:
            status = SyncLogStatus.SUCCESS.value
            error_code = None
            error_message = None

        if tally.cancelled:
            self._run_logger.warning("Sync run cancelled before all batches completed")
        self._run_logger.info(f"Sync finished with status {status}: {tally.created} created, "
                              f"{tally.updated} updated, {tally.unchanged} unchanged, "
                              f"{tally.skipped} skipped, {failed} failed")

        response_payload = {
            'errors': [e.to_dict() for e in tally.errors],
            'created': tally.created,
            'updated': tally.updated,
            'unchanged': tally.unchanged,
            'skipped': tally.skipped,
            'conflicts': tally.conflicts,
            'manual_reviews': tally.manual_reviews,
            'dry_run': options.dry_run,
            'cancelled': tally.cancelled,
            'log': capture.get_logs()
        }
        if options.dry_run:
            response_payload['preview'] = tally.preview

        if unexpected is not None:
            self.session.rollback()

        self.sync_logs.finalize_sync_log(
            log_entry.id,
            status=status,
            items_affected=tally.created + tally.updated,
            duration_ms=int(duration * 1000),
            response_payload=response_payload,
            error_code=error_code,
            error_message=error_message
        )
        if not options.dry_run:
            self.integrations.record_sync(
                self.integration,
                succeeded=status == SyncLogStatus.SUCCESS.value,
                error=error_message
            )
        self.sync_logs.commit()
        release_sync_logger(log_entry.id)

        errors = list(tally.errors)
        if run_error is not None:
            errors.append(SyncError(None, None, str(run_error), error_code_for(run_error)))

        return SyncResult(
            success=run_error is None and failed == 0 and not tally.cancelled,
            items_processed=tally.processed,
            items_succeeded=tally.succeeded,
            items_failed=failed,
            errors=errors,
            duration=duration,
            sync_log_id=log_entry.id,
            items_skipped=tally.skipped,
            items_created=tally.created,
            items_updated=tally.updated,
            conflicts=tally.conflicts,
            manual_reviews=tally.manual_reviews,
            dry_run=options.dry_run,
            cancelled=tally.cancelled,
            requires_reauthorization=isinstance(run_error, AuthError)
        )

    async def _emit(self, progress: SyncProgress) -> None:
        for callback in self._progress_callbacks:
            try:
                outcome = callback(progress)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Sync progress callback failed: {e}")


def create_catalog_sync(tenant_id: str, session: Session, config=Config,
                        token_manager: Optional[TokenManager] = None, client: Any = None,
                        local_store: Any = None, clock: Callable[[], float] = time.monotonic,
                        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> CatalogSyncOrchestrator:
    """Build a fresh orchestrator for the tenant's enabled integration.

    Each call gets its own executor, rate limiter and conflict resolver.
    Raises AuthError if the tenant has no enabled integration.
    """
    token_manager = token_manager or TokenManager.from_config(session, config)
    integration = token_manager.get_integration(tenant_id)

    if client is None:
        client = PosCatalogClient(
            base_url=config.pos_base_url(),
            token_provider=lambda: token_manager.get_valid_token(tenant_id),
            timeout=config.POS_REQUEST_TIMEOUT
        )

    batch_config = BatchConfig(
        batch_size=config.POS_BATCH_SIZE,
        max_concurrent=config.POS_MAX_CONCURRENT,
        retry_attempts=config.POS_RETRY_ATTEMPTS,
        retry_delay=config.POS_RETRY_DELAY,
        requests_per_minute=config.POS_REQUESTS_PER_MINUTE,
        requests_per_second=config.POS_REQUESTS_PER_SECOND
    )
    resolver = ConflictResolver(
        price_threshold=config.POS_PRICE_CONFLICT_THRESHOLD,
        review_queue_limit=config.POS_REVIEW_QUEUE_LIMIT
    )

    return CatalogSyncOrchestrator(
        tenant_id=tenant_id,
        integration=integration,
        session=session,
        client=client,
        local_store=local_store,
        resolver=resolver,
        batch_config=batch_config,
        clock=clock,
        sleep=sleep
    )
