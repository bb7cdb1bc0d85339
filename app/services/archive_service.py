"""
Mio Backend — Message archival

Moves the oldest messages of long conversations out of the live batch
documents into a JSON blob in cold storage, keeping the newest
``KEEP_RECENT`` messages live.

Crash safety rests on batch generations.  Batches written by an archive run
carry a ``generation``; batches written by clients carry none and are always
live.  A batch is dead only when it is listed in the conversation's
``superseded_batch_ids`` or is stamped with a generation newer than the
conversation's ``batch_generation``.  A run at generation ``g``:

  1. uploads the archived slice to cold storage,
  2. writes the regrouped newer slice as generation ``g + 1`` batches,
  3. flips the conversation to ``g + 1`` (counts, pointer, manifest) and
     records the batches it consumed as superseded,
  4. deletes the superseded batches and clears the list.

Steps 2-4 are one ordered operation list cut into sequential commits of at
most ``ARCHIVE_COMMIT_BUDGET`` operations.  Before the flip commits, the old
batches are still live and the new ones are unreachable; after it, the new
set is complete.  A run that dies part way leaves dead batches behind; the
next run deletes them before doing anything else.

Runs on one conversation are serialised by an :class:`ArchiveLease`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from app.config import get_settings
from app.errors import InternalError, NotFoundError, PermissionDeniedError
from app.schemas.archive import (
    ArchivedMessage,
    ArchivedMessages,
    ArchiveManifest,
    ArchiveResult,
    SweepSummary,
)
from app.services.archive_lease import ArchiveLease
from app.store import (
    CONVERSATIONS,
    DELETE_FIELD,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Filter,
    Increment,
    StoreError,
    message_batches,
)
from app.store.base import WriteOp
from app.utils.storage import ArchiveStorage
from app.utils.timestamps import (
    EPOCH,
    TimestampError,
    isoformat,
    to_datetime,
    to_epoch_millis,
    utcnow,
)

logger = structlog.get_logger("mio.archive_service")

NOTHING_TO_ARCHIVE = "Nothing to archive"
ARCHIVE_IN_PROGRESS = "Archive already in progress"


@dataclass
class LiveMessage:
    timestamp: datetime
    data: dict[str, Any]

    def serialise(self) -> dict[str, Any]:
        return {**self.data, "timestamp": isoformat(self.timestamp)}


def _read_time(value: Any, fallback: datetime) -> datetime:
    if value is None:
        return fallback
    try:
        return to_datetime(value)
    except TimestampError:
        return fallback


def archive_path(prefix: str, conversation_id: str, now: datetime) -> str:
    stamp = to_datetime(now).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"{prefix}/{conversation_id}/{stamp.replace(':', '-').replace('.', '-')}.json"


def flatten_batches(batches: list[DocumentSnapshot]) -> list[LiveMessage]:
    """Flatten live batches into one stably time-sorted message sequence.

    Messages without an id get ``{batch_id}_{epoch_millis}_{position}``; an
    unreadable timestamp falls back to the batch start time.
    """
    messages: list[LiveMessage] = []
    for batch in batches:
        batch_start = _read_time(batch.data.get("start_time"), EPOCH)
        for position, raw in enumerate(batch.data.get("messages") or []):
            if not isinstance(raw, dict):
                logger.warning(
                    "archive_message_unreadable",
                    batch_id=batch.id,
                    position=position,
                    entry_type=type(raw).__name__,
                )
                continue
            ts = _read_time(raw.get("timestamp"), batch_start)
            data = dict(raw)
            if not data.get("id"):
                data["id"] = f"{batch.id}_{to_epoch_millis(ts)}_{position}"
            messages.append(LiveMessage(timestamp=ts, data=data))
    messages.sort(key=lambda m: m.timestamp)
    return messages


def _batch_order(batch: DocumentSnapshot) -> tuple[datetime, str]:
    return (_read_time(batch.data.get("start_time"), EPOCH), batch.id)


def partition_batches(
    conversation: dict[str, Any], batches: list[DocumentSnapshot]
) -> tuple[list[DocumentSnapshot], list[DocumentSnapshot]]:
    """Split ``batches`` into ``(live, dead)`` for the given conversation data.

    Dead batches were consumed by a flipped run (``superseded_batch_ids``)
    or written by a run that never flipped (generation ahead of the
    conversation).  Everything else, including unstamped batches, is live.
    """
    generation = int(conversation.get("batch_generation") or 0)
    superseded = set(conversation.get("superseded_batch_ids") or [])
    live: list[DocumentSnapshot] = []
    dead: list[DocumentSnapshot] = []
    for batch in batches:
        stamped = batch.data.get("generation")
        if batch.id in superseded or (stamped is not None and int(stamped) > generation):
            dead.append(batch)
        else:
            live.append(batch)
    live.sort(key=_batch_order)
    return live, dead


class ArchiveService:
    def __init__(
        self,
        store: DocumentStore,
        storage: ArchiveStorage,
        lease: ArchiveLease,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.storage = storage
        self.lease = lease
        self.clock = clock
        self.batch_size = settings.MESSAGE_BATCH_SIZE
        self.keep_recent = settings.KEEP_RECENT
        self.archive_threshold = settings.ARCHIVE_THRESHOLD
        self.commit_budget = settings.ARCHIVE_COMMIT_BUDGET
        self.prefix = settings.ARCHIVE_PREFIX

    # ── Public API ────────────────────────────────────────────────────────

    async def archive_conversation(
        self,
        conversation_id: str,
        caller_id: Optional[str] = None,
    ) -> ArchiveResult:
        """Archive one conversation.

        With ``caller_id`` the caller must be a participant.  Soft no-ops
        (nothing to archive, lease held elsewhere) come back as
        ``success=False`` results; storage failures raise InternalError.
        """
        log = logger.bind(conversation_id=conversation_id)
        if caller_id is not None:
            await self._load_for_participant(conversation_id, caller_id)

        token = await self.lease.acquire(conversation_id)
        if token is None:
            return ArchiveResult(success=False, message=ARCHIVE_IN_PROGRESS)
        try:
            return await self._archive(conversation_id, log)
        finally:
            await self.lease.release(conversation_id, token)

    async def sweep(self) -> SweepSummary:
        """Archive every conversation at or above ``ARCHIVE_THRESHOLD``; never raises."""
        summary = SweepSummary(scanned=0, archived=0, skipped=0, failed=0)
        try:
            due = await self.store.query(
                CONVERSATIONS,
                [Filter("message_count", ">=", self.archive_threshold)],
            )
        except Exception as exc:
            logger.error("archive_sweep_query_failed", error=str(exc))
            summary.details.append({"error": str(exc)})
            return summary

        logger.info("archive_sweep_start", due=len(due))
        for conversation in due:
            summary.scanned += 1
            try:
                result = await self.archive_conversation(conversation.id)
            except Exception as exc:
                summary.failed += 1
                summary.details.append({"conversation_id": conversation.id, "error": str(exc)})
                logger.error(
                    "archive_sweep_conversation_failed",
                    conversation_id=conversation.id,
                    error=str(exc),
                )
                continue
            if result.success:
                summary.archived += 1
            else:
                summary.skipped += 1
            summary.details.append({"conversation_id": conversation.id, **result.model_dump()})

        logger.info(
            "archive_sweep_complete",
            scanned=summary.scanned,
            archived=summary.archived,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary

    async def list_archives(
        self,
        conversation_id: str,
        caller_id: str,
        older_than: Optional[datetime] = None,
    ) -> list[ArchiveManifest]:
        """Manifests newest first, optionally only those ending before ``older_than``."""
        conversation = await self._load_for_participant(conversation_id, caller_id)
        manifests = []
        for raw in conversation.data.get("archives") or []:
            try:
                manifests.append(
                    ArchiveManifest(
                        path=raw["path"],
                        count=int(raw.get("count", 0)),
                        oldest_timestamp=to_datetime(raw.get("oldest_timestamp")),
                        newest_timestamp=to_datetime(raw.get("newest_timestamp")),
                        created_at=to_datetime(raw.get("created_at")),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("archive_manifest_unreadable", conversation_id=conversation_id)
        if older_than is not None:
            cutoff = to_datetime(older_than)
            manifests = [m for m in manifests if m.newest_timestamp < cutoff]
        manifests.sort(key=lambda m: m.newest_timestamp, reverse=True)
        return manifests

    async def load_archive(
        self,
        conversation_id: str,
        caller_id: str,
        path: str,
    ) -> ArchivedMessages:
        conversation = await self._load_for_participant(conversation_id, caller_id)
        known = {a.get("path") for a in conversation.data.get("archives") or [] if isinstance(a, dict)}
        if path not in known:
            raise NotFoundError("Archive not found for this conversation.")

        try:
            payload = await self.storage.download_json(path)
        except Exception as exc:
            logger.error("archive_download_failed", path=path, error=str(exc))
            raise InternalError(f"Could not load archive: {exc}") from exc

        # Older archives wrap messages in {"batches": [{"messages": [...]}]}
        if isinstance(payload, dict):
            raw_messages = [
                m for b in payload.get("batches") or [] for m in (b.get("messages") or [])
            ]
        else:
            raw_messages = list(payload or [])

        messages = []
        for position, raw in enumerate(raw_messages):
            ts = _read_time(raw.get("timestamp"), EPOCH)
            messages.append(
                ArchivedMessage.model_validate(
                    {**raw, "id": raw.get("id") or f"archived_{to_epoch_millis(ts)}_{position}", "timestamp": ts}
                )
            )
        messages.sort(key=lambda m: m.timestamp)
        return ArchivedMessages(path=path, messages=messages)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _load_for_participant(self, conversation_id: str, caller_id: str) -> DocumentSnapshot:
        try:
            conversation = await self.store.get(CONVERSATIONS, conversation_id)
        except StoreError as exc:
            raise InternalError(f"Could not load conversation: {exc}") from exc
        if conversation is None:
            raise NotFoundError("Conversation not found.")
        if caller_id not in (conversation.data.get("participants") or []):
            raise PermissionDeniedError("You are not a participant in this conversation.")
        return conversation

    async def _commit_in_chunks(self, ops: list[WriteOp]) -> int:
        commits = 0
        for start in range(0, len(ops), self.commit_budget):
            await self.store.commit(ops[start:start + self.commit_budget])
            commits += 1
        return commits

    async def _collect_garbage(
        self, conversation: DocumentSnapshot, dead: list[DocumentSnapshot], log
    ) -> bool:
        """Delete ``dead`` batches and clear the superseded list; True if anything was written."""
        pending = "superseded_batch_ids" in conversation.data
        if not dead and not pending:
            return False
        collection = message_batches(conversation.id)
        ops = [WriteOp("delete", collection, b.id) for b in dead]
        if pending:
            ops.append(
                WriteOp(
                    "update",
                    CONVERSATIONS,
                    conversation.id,
                    {"superseded_batch_ids": DELETE_FIELD},
                )
            )
        await self._commit_in_chunks(ops)
        log.info("archive_stale_batches_removed", count=len(dead))
        return True

    async def _archive(self, conversation_id: str, log) -> ArchiveResult:
        collection = message_batches(conversation_id)
        try:
            conversation = await self.store.get(CONVERSATIONS, conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation not found.")
            live, dead = partition_batches(
                conversation.data, await self.store.query(collection)
            )
            if await self._collect_garbage(conversation, dead, log):
                conversation = await self.store.get(CONVERSATIONS, conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversation not found.")
            generation = int(conversation.data.get("batch_generation") or 0)
        except StoreError as exc:
            log.error("archive_load_failed", error=str(exc))
            raise InternalError(f"Failed to load conversation batches: {exc}") from exc

        messages = flatten_batches(live)
        if len(messages) <= self.keep_recent:
            log.info("archive_nothing_to_do", live=len(messages))
            return ArchiveResult(success=False, message=NOTHING_TO_ARCHIVE)

        split = len(messages) - self.keep_recent
        older, newer = messages[:split], messages[split:]
        now = self.clock()
        path = archive_path(self.prefix, conversation_id, now)

        oldest, newest = older[0].timestamp, older[-1].timestamp
        try:
            await self.storage.upload_json(
                path,
                [m.serialise() for m in older],
                {
                    "count": len(older),
                    "oldest_timestamp": isoformat(oldest),
                    "newest_timestamp": isoformat(newest),
                },
            )
        except Exception as exc:
            log.error("archive_upload_failed", path=path, error=str(exc))
            raise InternalError(f"Failed to upload archive: {exc}") from exc

        next_generation = generation + 1
        ops: list[WriteOp] = []
        new_batch_ids: list[str] = []
        for index in range(0, len(newer), self.batch_size):
            chunk = newer[index:index + self.batch_size]
            batch_id = f"g{next_generation}-{index // self.batch_size:04d}"
            new_batch_ids.append(batch_id)
            ops.append(
                WriteOp(
                    "create",
                    collection,
                    batch_id,
                    {
                        "messages": [m.serialise() for m in chunk],
                        "start_time": isoformat(chunk[0].timestamp),
                        "end_time": isoformat(chunk[-1].timestamp),
                        "generation": next_generation,
                        "created_at": isoformat(now),
                    },
                )
            )

        manifest = {
            "path": path,
            "count": len(older),
            "oldest_timestamp": isoformat(oldest),
            "newest_timestamp": isoformat(newest),
            "created_at": isoformat(now),
        }
        ops.append(
            WriteOp(
                "update",
                CONVERSATIONS,
                conversation_id,
                {
                    "batch_generation": next_generation,
                    "current_batch_id": new_batch_ids[-1] if new_batch_ids else None,
                    "message_count": len(newer),
                    "archives": ArrayUnion(manifest),
                    "archived_message_count": Increment(len(older)),
                    "last_archived_at": isoformat(now),
                    "superseded_batch_ids": [b.id for b in live],
                },
                expected_version=conversation.version,
            )
        )
        ops.extend(WriteOp("delete", collection, b.id) for b in live)
        ops.append(
            WriteOp(
                "update",
                CONVERSATIONS,
                conversation_id,
                {"superseded_batch_ids": DELETE_FIELD},
            )
        )

        try:
            commits = await self._commit_in_chunks(ops)
        except StoreError as exc:
            log.error("archive_rewrite_failed", path=path, error=str(exc))
            raise InternalError(f"Archive rewrite failed part way: {exc}") from exc

        log.info(
            "archive_complete",
            path=path,
            archived=len(older),
            kept=len(newer),
            new_batches=len(new_batch_ids),
            old_batches=len(live),
            commits=commits,
            generation=next_generation,
        )
        return ArchiveResult(success=True, archived_count=len(older), archive_path=path)
