"""
Offline-first sync engine.

Keeps the local replica eventually consistent with the remote authority:
- local mutations go to a durable change journal first
- a sync pass uploads the journal in batches, downloads remote changes
  since the cursor, then settles outstanding conflicts
- passes are triggered by local changes (debounced), connectivity coming
  back, a periodic safety-net timer, or an explicit force

Every step is idempotent: journal entries are removed only once
acknowledged and the cursor only advances after a page is fully applied,
so an interrupted pass is simply resumed by the next one.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from chatsync.api.client import RequestClient, RequestOptions
from chatsync.api.models import ChangesPage, RemoteChangeBody, UploadChangesRequest, UploadChangesResponse
from chatsync.errors import ApiError, ProtocolError, ValidationError
from chatsync.events import EventBus, EventHandler, Subscription
from chatsync.scheduling import Scheduler

from .merge import merge_records
from .models import (
    ChangeAction,
    Conflict,
    ConflictStatus,
    ConflictStrategy,
    EntityType,
    LocalChange,
    RemoteChange,
    Resolution,
    SyncErrorRecord,
    SyncEvent,
    SyncStatus,
)

if TYPE_CHECKING:
    from chatsync.auth.session import AuthSessionManager
    from chatsync.config import SyncConfig
    from chatsync.connectivity import ConnectivitySignal
    from chatsync.storage.base import LocalStore

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/sync/upload"
CHANGES_PATH = "/sync/changes"

CURSOR_KEY = "sync_cursor"
LAST_SYNC_KEY = "sync_last_completed_at"

DEBOUNCE_TIMER = "sync.debounce"
ONLINE_TIMER = "sync.online"
PERIODIC_TIMER = "sync.periodic"

EPOCH = "1970-01-01T00:00:00.000Z"


def generate_client_id() -> str:
    """Locally unique journal id: local_<ms>_<random>."""
    return f"local_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_cursor(cursor: str | None) -> datetime | None:
    if not cursor:
        return None
    try:
        return _as_utc(datetime.fromisoformat(cursor.replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Ignoring unparseable sync cursor %r", cursor)
        return None


def _conflict_entity_ids(conflict: Conflict) -> set[str]:
    ids = {str(conflict.local_payload.get("id") or conflict.client_id)}
    if conflict.remote_payload and conflict.remote_payload.get("id"):
        ids.add(str(conflict.remote_payload["id"]))
    return ids


class SyncEngine:
    """
    Reconciles the local change journal with the remote authority.

    One pass at a time: concurrent triggers are coalesced into a no-op
    unless forced, in which case the forced pass runs after the current one.
    """

    def __init__(
        self,
        client: RequestClient,
        auth: AuthSessionManager,
        store: LocalStore,
        connectivity: ConnectivitySignal,
        scheduler: Scheduler,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if config is None:
            from chatsync.config import SyncConfig

            config = SyncConfig()
        self.config = config
        self.events = EventBus("sync")
        self.status = SyncStatus(
            is_online=connectivity.is_online,
            recent_errors=deque(maxlen=config.max_recent_errors),
        )

        self._client = client
        self._auth = auth
        self._store = store
        self._connectivity = connectivity
        self._scheduler = scheduler
        self._sleep = sleep
        self._clock = clock

        self._pass_lock = asyncio.Lock()
        # Set when a change is recorded mid-pass; triggers a follow-up pass
        self._dirty = False
        self._connectivity_subscription: Subscription | None = None

    # Lifecycle

    async def start(self) -> None:
        """Load persisted state, subscribe to connectivity and arm the timers."""
        self.status.last_sync_cursor = await self._store.get_value(CURSOR_KEY)
        last_sync = await self._store.get_value(LAST_SYNC_KEY)
        self.status.last_sync_at = datetime.fromisoformat(last_sync) if last_sync else None
        await self._refresh_counts()

        self.status.is_online = self._connectivity.is_online
        self._connectivity_subscription = self._connectivity.subscribe(self._on_connectivity_changed)
        self._scheduler.schedule_periodic(PERIODIC_TIMER, self.config.sync_interval_seconds, self._periodic_sync)

        logger.info(
            "Sync engine started (%d pending changes, cursor %s)",
            self.status.pending_change_count,
            self.status.last_sync_cursor or "<none>",
        )
        if self.status.is_online:
            self._scheduler.schedule(ONLINE_TIMER, 0, self.start_sync)

    async def close(self) -> None:
        """Cancel timers and wait for a running pass to finish."""
        self._scheduler.cancel_group("sync.")
        if self._connectivity_subscription is not None:
            self._connectivity_subscription.unsubscribe()
            self._connectivity_subscription = None
        async with self._pass_lock:
            pass
        self.events.clear()

    def subscribe(self, event: SyncEvent, handler: EventHandler) -> Subscription:
        return self.events.subscribe(event, handler)

    def get_status(self) -> SyncStatus:
        return self.status.copy()

    def clear_errors(self) -> None:
        self.status.recent_errors.clear()

    # Recording

    async def record_local_change(
        self,
        entity_type: EntityType | str,
        action: ChangeAction | str,
        payload: dict[str, Any],
        id: str | None = None,
    ) -> str:
        """
        Journal a local mutation and apply it optimistically to local storage.

        The entry is durable before this returns.

        Returns:
            The generated client id.

        Raises:
            ValidationError: Unknown entity type or action, or a non-dict payload.
        """
        try:
            entity_type = entity_type if isinstance(entity_type, EntityType) else EntityType.parse(entity_type)
            action = action if isinstance(action, ChangeAction) else ChangeAction(action.lower())
        except ValueError as e:
            raise ValidationError(f"Invalid change: {e}") from e
        if not isinstance(payload, dict):
            raise ValidationError("Change payload must be an object")

        client_id = generate_client_id()
        record_id = str(id or payload.get("id") or client_id)
        change = LocalChange(
            client_id=client_id,
            entity_type=entity_type,
            action=action,
            payload={**payload, "id": record_id},
            created_at=self._clock(),
        )
        await self._store.append_change(change)

        if action == ChangeAction.DELETE:
            await self._store.delete_record(entity_type, record_id)
        else:
            await self._store.upsert_record(entity_type, record_id, change.payload, merge=True)

        self.status.pending_change_count += 1
        logger.debug("Recorded %s %s %s as %s", action.value, entity_type.value, record_id, client_id)
        self.events.publish(
            SyncEvent.DATA_CHANGED,
            {"entity_type": entity_type, "action": action, "id": record_id, "source": "local"},
        )

        if self.status.is_online:
            if self.status.is_syncing:
                self._dirty = True
            else:
                self._scheduler.schedule(DEBOUNCE_TIMER, self.config.debounce_seconds, self.start_sync)
        return client_id

    def notify_remote_hint(self, entity_type: EntityType, payload: Any = None) -> None:
        """Surface a realtime push as a data-changed event."""
        self.events.publish(
            SyncEvent.DATA_CHANGED,
            {"entity_type": entity_type, "action": ChangeAction.CREATE, "data": payload, "source": "realtime"},
        )

    # Sync pass

    async def force_sync(self) -> bool:
        return await self.start_sync(force=True)

    async def start_sync(self, force: bool = False) -> bool:
        """
        Run one sync pass: upload, download, resolve.

        Returns:
            True if the pass ran to completion, False if it was skipped or failed.
        """
        if self.status.is_syncing and not force:
            logger.debug("Sync already in progress, skipping")
            return False
        if not self._connectivity.is_online:
            logger.debug("Offline, skipping sync")
            return False
        if not self._auth.is_authenticated():
            if not self._auth.has_refresh_token or not await self._auth.refresh():
                logger.info("Not authenticated, skipping sync")
                return False

        async with self._pass_lock:
            return await self._run_pass()

    async def _run_pass(self) -> bool:
        self._scheduler.cancel(DEBOUNCE_TIMER)
        self._dirty = False
        self.status.is_syncing = True
        self.events.publish(SyncEvent.SYNC_STARTED)
        logger.info("Sync started")

        stage = "upload"
        try:
            await self._upload_changes()
            stage = "download"
            applied = await self._download_changes()
            stage = "resolve"
            await self._resolve_conflicts()
        except Exception as e:
            message = e.message if isinstance(e, ApiError) else str(e)
            code = e.to_dict()["code"] if isinstance(e, ApiError) else None
            self._record_error(stage, message, code=code)
            if isinstance(e, ApiError):
                logger.error("Sync failed during %s: %s", stage, message)
            else:
                logger.exception("Sync failed during %s", stage)
            self.events.publish(SyncEvent.SYNC_FAILED, {"stage": stage, "error": e})
            return False
        finally:
            self.status.is_syncing = False
            await self._refresh_counts()
            if self._dirty and self._connectivity.is_online:
                self._scheduler.schedule(DEBOUNCE_TIMER, self.config.debounce_seconds, self.start_sync)

        now = self._clock()
        self.status.last_sync_at = now
        await self._store.set_value(LAST_SYNC_KEY, now.isoformat())
        logger.info(
            "Sync completed: %d remote changes applied, %d pending, %d conflicts",
            applied,
            self.status.pending_change_count,
            self.status.conflict_count,
        )
        self.events.publish(
            SyncEvent.SYNC_COMPLETED,
            {
                "applied": applied,
                "pending_changes": self.status.pending_change_count,
                "conflicts": self.status.conflict_count,
            },
        )
        return True

    # Upload

    async def _upload_changes(self) -> None:
        """Upload the journal in creation order, in fixed-size batches."""
        changes = await self._store.list_changes()
        if not changes:
            return

        conflicted = {c.client_id for c in await self._store.list_conflicts()}
        # Entries behind a conflicted or rejected entry for the same entity wait their turn
        blocked: set[tuple[EntityType, str]] = set()
        uploadable: list[LocalChange] = []
        for change in changes:
            key = (change.entity_type, change.entity_id)
            if change.client_id in conflicted or key in blocked:
                blocked.add(key)
                continue
            uploadable.append(change)

        if not uploadable:
            return

        device_id = await self._auth.device_id()
        batch_size = max(1, self.config.batch_size)
        logger.info("Uploading %d changes in batches of %d", len(uploadable), batch_size)

        for start in range(0, len(uploadable), batch_size):
            batch: list[LocalChange] = []
            for queued in uploadable[start:start + batch_size]:
                # Re-read: an earlier batch may have moved this entry to a server id
                change = await self._store.get_change(queued.client_id)
                if change is not None and (change.entity_type, change.entity_id) not in blocked:
                    batch.append(change)
            if not batch:
                continue
            # Raises once retries are exhausted, which aborts the pass
            result = await self._upload_batch(batch, device_id)
            blocked |= await self._apply_upload_result(batch, result)

    async def _upload_batch(self, batch: list[LocalChange], device_id: str) -> UploadChangesResponse:
        """Upload one batch with linear-backoff retries for transient failures."""
        body = UploadChangesRequest(changes=[c.to_wire() for c in batch], device_id=device_id).to_wire()
        attempt = 0
        while True:
            attempt += 1
            try:
                # Batch-level retry policy replaces the request client's own
                response = await self._client.post(UPLOAD_PATH, body, RequestOptions(max_retries=0))
                try:
                    return UploadChangesResponse.parse(response.data)
                except PydanticValidationError as e:
                    raise ProtocolError(
                        "Upload response is malformed",
                        details=[err["msg"] for err in e.errors()],
                    ) from e
            except ApiError as e:
                if not e.retryable or attempt >= self.config.retry_attempts:
                    logger.error("Upload batch of %d failed after %d attempts: %s", len(batch), attempt, e.message)
                    raise
                delay = self.config.retry_delay_seconds * attempt
                logger.warning("Upload batch failed (%s), retrying in %.1fs", e.message, delay)
                await self._sleep(delay)

    async def _apply_upload_result(
        self,
        batch: list[LocalChange],
        result: UploadChangesResponse,
    ) -> set[tuple[EntityType, str]]:
        """Consume a batch response. Returns the entities now blocked for this pass."""
        by_client_id = {c.client_id: c for c in batch}
        blocked: set[tuple[EntityType, str]] = set()

        for processed in result.processed:
            change = by_client_id.pop(processed.client_id, None)
            if change is None:
                logger.warning("Server acknowledged unknown change %s", processed.client_id)
                continue
            await self._store.delete_change(change.client_id)
            if change.action == ChangeAction.DELETE:
                continue
            data = processed.data or {}
            server_id = str(processed.id or data.get("id") or change.entity_id)
            rekeyed = server_id != change.entity_id
            if rekeyed:
                await self._rekey(change.entity_type, change.entity_id, server_id)
            if data:
                # Server metadata overlays the local fields; nothing local is dropped
                await self._store.upsert_record(change.entity_type, server_id, data, merge=True)
            if data or rekeyed:
                self.events.publish(
                    SyncEvent.DATA_CHANGED,
                    {"entity_type": change.entity_type, "action": change.action, "id": server_id, "source": "upload"},
                )

        for server_conflict in result.conflicts:
            change = by_client_id.pop(server_conflict.client_id, None)
            if change is None:
                logger.warning("Server reported conflict for unknown change %s", server_conflict.client_id)
                continue
            remote = server_conflict.server_data if isinstance(server_conflict.server_data, dict) else None
            await self._store.save_conflict(
                Conflict(
                    client_id=change.client_id,
                    entity_type=change.entity_type,
                    local_payload=change.payload,
                    remote_payload=remote,
                    conflict_type=server_conflict.conflict_type,
                    created_at=self._clock(),
                )
            )
            blocked.add((change.entity_type, change.entity_id))
            logger.info("Conflict on %s %s (%s)", change.entity_type.value, change.entity_id, server_conflict.conflict_type)

        for failed in result.failed:
            change = by_client_id.pop(failed.client_id, None)
            if change is None:
                continue
            change.attempts += 1
            await self._store.update_change(change)
            blocked.add((change.entity_type, change.entity_id))
            self._record_error("upload", failed.message, client_id=change.client_id)

        for change in by_client_id.values():
            # Not acknowledged either way; stays journaled for the next pass
            blocked.add((change.entity_type, change.entity_id))
            logger.debug("Change %s not acknowledged by server", change.client_id)

        return blocked

    async def _rekey(self, entity_type: EntityType, local_id: str, server_id: str) -> None:
        """Move a record created under a local id to its server-assigned id, fields included."""
        local = await self._store.get_record(entity_type, local_id)
        await self._store.purge_record(entity_type, local_id)
        if local is not None:
            await self._store.upsert_record(entity_type, server_id, {**local, "id": server_id}, merge=True)
        for pending in await self._store.list_changes():
            if pending.entity_type == entity_type and pending.payload.get("id") == local_id:
                pending.payload["id"] = server_id
                await self._store.update_change(pending)

    # Download

    async def _download_changes(self) -> int:
        """Fetch and apply remote changes since the cursor, page by page."""
        since = self.status.last_sync_cursor or EPOCH
        cursor = _parse_cursor(self.status.last_sync_cursor)
        next_token: str | None = None
        applied = 0

        while True:
            params: dict[str, Any] = {
                "since": since,
                "types": ",".join(t.value for t in EntityType),
                "limit": self.config.page_limit,
            }
            if next_token:
                params["nextToken"] = next_token
            response = await self._client.get(CHANGES_PATH, RequestOptions(query_params=params))
            try:
                page = ChangesPage.model_validate(response.data or {})
            except PydanticValidationError as e:
                raise ProtocolError(
                    "Changes page is malformed",
                    details=[err["msg"] for err in e.errors()],
                ) from e

            page_max: datetime | None = None
            for item in page.changes:
                try:
                    change = self._parse_remote_change(item)
                    await self._apply_remote_change(change)
                except (ApiError, ValueError, KeyError, TypeError) as e:
                    message = e.message if isinstance(e, ApiError) else str(e)
                    self._record_error("download", f"Could not apply remote change: {message}")
                    continue
                applied += 1
                stamp = _as_utc(change.timestamp)
                if page_max is None or stamp > page_max:
                    page_max = stamp

            is_last = not page.has_more or not page.next_token
            candidates = [c for c in (cursor, page_max) if c is not None]
            if is_last and page.server_time is not None:
                candidates.append(_as_utc(page.server_time))
            if candidates:
                new_cursor = max(candidates)
                if cursor is None or new_cursor > cursor:
                    cursor = new_cursor
                    await self._save_cursor(cursor)

            if is_last:
                break
            next_token = page.next_token

        logger.debug("Downloaded and applied %d remote changes", applied)
        return applied

    def _parse_remote_change(self, item: dict[str, Any]) -> RemoteChange:
        try:
            body = RemoteChangeBody.model_validate(item)
        except PydanticValidationError as e:
            raise ProtocolError("Remote change is malformed", details=[err["msg"] for err in e.errors()]) from e

        action = ChangeAction(body.action.lower())
        payload = body.payload
        if payload is None and action == ChangeAction.DELETE:
            payload = {}
        if not isinstance(payload, dict):
            raise ProtocolError("Remote change payload must be an object")
        return RemoteChange(
            entity_type=EntityType.parse(body.entity_type),
            action=action,
            payload=payload,
            timestamp=body.timestamp,
            id=body.id,
            source_id=body.source_id,
            version=body.version,
        )

    async def _apply_remote_change(self, change: RemoteChange) -> None:
        entity_id = change.entity_id
        if not entity_id:
            raise ProtocolError("Remote change has no entity id")
        if change.action == ChangeAction.DELETE:
            await self._store.delete_record(change.entity_type, entity_id)
        else:
            await self._store.upsert_record(change.entity_type, entity_id, change.payload, merge=True)
        await self._track_remote_in_conflicts(change, entity_id)
        self.events.publish(
            SyncEvent.DATA_CHANGED,
            {"entity_type": change.entity_type, "action": change.action, "id": entity_id, "source": "remote"},
        )

    async def _track_remote_in_conflicts(self, change: RemoteChange, entity_id: str) -> None:
        """
        Keep unresolved conflicts on this entity pointed at the newest server copy.

        A conflict saved in an earlier pass holds the server's record as it was
        then; once a later version has been downloaded, resolving in the
        server's favour must not bring the old snapshot back.
        """
        for conflict in await self._store.list_conflicts():
            if conflict.entity_type != change.entity_type or entity_id not in _conflict_entity_ids(conflict):
                continue
            if change.action == ChangeAction.DELETE:
                conflict.remote_payload = None
            else:
                conflict.remote_payload = {**(conflict.remote_payload or {}), **change.payload, "id": entity_id}
            await self._store.save_conflict(conflict)
            logger.debug("Conflict %s now tracks the downloaded server copy", conflict.client_id)

    async def _save_cursor(self, cursor: datetime) -> None:
        value = cursor.isoformat()
        await self._store.set_value(CURSOR_KEY, value)
        self.status.last_sync_cursor = value

    # Conflicts

    async def _resolve_conflicts(self) -> None:
        """Apply the configured strategy to every conflict not yet handled."""
        strategy = self.config.conflict_resolution
        for conflict in await self._store.list_conflicts(ConflictStatus.PENDING):
            try:
                await self._apply_strategy(conflict, strategy)
            except ApiError as e:
                self._record_error("resolve", e.message, client_id=conflict.client_id)

    async def _apply_strategy(self, conflict: Conflict, strategy: ConflictStrategy) -> None:
        if strategy == ConflictStrategy.SERVER_WINS:
            await self._accept_server(conflict)
        elif strategy == ConflictStrategy.CLIENT_WINS:
            await self._accept_local(conflict, conflict.local_payload)
        elif strategy == ConflictStrategy.MERGE:
            change = await self._store.get_change(conflict.client_id)
            action = change.action if change else ChangeAction.UPDATE
            merged = merge_records(conflict.entity_type, action, conflict.local_payload, conflict.remote_payload)
            if merged is None:
                logger.info("No automatic merge for %s %s", conflict.entity_type.value, conflict.client_id)
                await self._mark_manual(conflict)
            else:
                await self._accept_local(conflict, merged)
        else:
            await self._mark_manual(conflict)

    async def _accept_server(self, conflict: Conflict) -> None:
        """Drop the journal entry; local storage takes the server's copy."""
        await self._store.delete_change(conflict.client_id)
        entity_id = str(conflict.local_payload.get("id") or conflict.client_id)
        if conflict.remote_payload is not None:
            entity_id = str(conflict.remote_payload.get("id") or entity_id)
            await self._store.upsert_record(conflict.entity_type, entity_id, conflict.remote_payload)
        await self._store.delete_conflict(conflict.client_id)
        self.events.publish(
            SyncEvent.DATA_CHANGED,
            {"entity_type": conflict.entity_type, "action": ChangeAction.UPDATE, "id": entity_id, "source": "conflict"},
        )

    async def _accept_local(self, conflict: Conflict, payload: dict[str, Any]) -> None:
        """Keep (or rewrite) the journal entry and force it through on the next upload."""
        change = await self._store.get_change(conflict.client_id)
        if change is None:
            change = LocalChange(
                client_id=conflict.client_id,
                entity_type=conflict.entity_type,
                action=ChangeAction.UPDATE,
                payload=dict(payload),
                created_at=self._clock(),
                force=True,
            )
            await self._store.append_change(change)
        else:
            change.payload = dict(payload)
            change.force = True
            await self._store.update_change(change)

        if change.action != ChangeAction.DELETE:
            await self._store.upsert_record(conflict.entity_type, change.entity_id, change.payload)
        await self._store.delete_conflict(conflict.client_id)
        # Re-upload on a follow-up pass
        self._dirty = True

    async def _mark_manual(self, conflict: Conflict) -> None:
        conflict.status = ConflictStatus.MANUAL
        await self._store.save_conflict(conflict)
        self.status.conflict_count = await self._store.count_conflicts(ConflictStatus.MANUAL)
        logger.warning("Conflict %s needs manual resolution", conflict.client_id)
        self.events.publish(SyncEvent.CONFLICT_DETECTED, {"conflict": conflict})

    async def list_conflicts(self) -> list[Conflict]:
        """Conflicts waiting for resolve_manual_conflict()."""
        return await self._store.list_conflicts(ConflictStatus.MANUAL)

    async def resolve_manual_conflict(
        self,
        conflict_id: str,
        resolution: Resolution | str,
        merged_data: dict[str, Any] | None = None,
    ) -> None:
        """
        Settle a conflict explicitly.

        Args:
            conflict_id: The conflicted journal entry's client id.
            resolution: "server", "client" or "merged".
            merged_data: The combined record, required for "merged".

        Raises:
            ValidationError: Unknown conflict, unknown resolution, or missing merged data.
        """
        conflict = await self._store.get_conflict(conflict_id)
        if conflict is None:
            raise ValidationError(f"No conflict with id {conflict_id}")
        try:
            resolution = Resolution(resolution)
        except ValueError as e:
            raise ValidationError(f"Unknown resolution {resolution!r}") from e

        if resolution == Resolution.SERVER:
            await self._accept_server(conflict)
        elif resolution == Resolution.CLIENT:
            await self._accept_local(conflict, conflict.local_payload)
        else:
            if not isinstance(merged_data, dict):
                raise ValidationError("Merged resolution requires merged data")
            await self._accept_local(conflict, merged_data)

        await self._refresh_counts()
        logger.info("Conflict %s resolved (%s)", conflict_id, resolution.value)
        if self.status.is_online and not self.status.is_syncing:
            self._scheduler.schedule(DEBOUNCE_TIMER, self.config.debounce_seconds, self.start_sync)

    # Triggers

    def _on_connectivity_changed(self, online: bool) -> None:
        was_online = self.status.is_online
        self.status.is_online = online
        self.events.publish(SyncEvent.ONLINE_STATUS_CHANGED, {"is_online": online})
        if online and not was_online:
            logger.info("Back online, syncing")
            self._scheduler.schedule(ONLINE_TIMER, 0, self.start_sync)
        elif not online:
            self._scheduler.cancel(DEBOUNCE_TIMER)
            self._scheduler.cancel(ONLINE_TIMER)

    async def _periodic_sync(self) -> None:
        if self.status.is_online and not self.status.is_syncing:
            await self.start_sync()

    # Bookkeeping

    async def _refresh_counts(self) -> None:
        self.status.pending_change_count = await self._store.count_changes()
        self.status.conflict_count = await self._store.count_conflicts(ConflictStatus.MANUAL)

    def _record_error(
        self,
        stage: str,
        message: str,
        code: str | None = None,
        client_id: str | None = None,
    ) -> None:
        logger.warning("Sync %s error: %s", stage, message)
        self.status.recent_errors.append(
            SyncErrorRecord(stage=stage, message=message, code=code, client_id=client_id, occurred_at=self._clock())
        )
