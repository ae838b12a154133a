from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Final, cast

from taskpilot.models import Item, ProcessedRecord
from taskpilot.observability import log_event, log_warning_event


LOGGER = logging.getLogger("taskpilot.state")
DEFAULT_STATE_FILENAME: Final[str] = "poll-state.json"

# Lifecycle transitions that mean "this item needs attention again". Only the
# left side is compared against the stored state; any listed current state counts.
_REOPEN_TRANSITIONS: Final[dict[str, frozenset[str]]] = {
    "closed": frozenset({"open", "opened", "reopened"}),
    "merged": frozenset({"open", "opened", "reopened"}),
    "done": frozenset({"todo", "backlog", "in progress", "started", "unstarted"}),
    "completed": frozenset({"todo", "backlog", "in progress", "started", "unstarted"}),
    "canceled": frozenset({"todo", "backlog", "in progress", "started", "unstarted"}),
    "cancelled": frozenset({"todo", "backlog", "in progress", "started", "unstarted"}),
}
_KNOWN_RECORD_KEYS: Final[frozenset[str]] = frozenset(
    {"processedAt", "source", "itemState", "itemUpdatedAt"}
)


class PollState:
    """Durable ledger of processed items, keyed by item id.

    The working copy is loaded once at construction. Every mutation rewrites
    the whole file before returning, so a later instance built against the
    same path observes it.
    """

    def __init__(
        self,
        state_path: Path,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._state_path = state_path
        self._now = now or _utc_now
        self._lock = threading.Lock()
        self._records: dict[str, ProcessedRecord] = self._load()

    @property
    def state_path(self) -> Path:
        return self._state_path

    def is_processed(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._records

    def get_record(self, item_id: str) -> ProcessedRecord | None:
        with self._lock:
            return self._records.get(item_id)

    def mark_processed(
        self,
        item_id: str,
        *,
        source: str,
        item_state: str | None = None,
        item_updated_at: str | None = None,
        **extra: object,
    ) -> ProcessedRecord:
        with self._lock:
            previous = self._records.get(item_id)
            merged_extra = dict(previous.extra) if previous is not None else {}
            merged_extra.update(extra)
            record = ProcessedRecord(
                item_id=item_id,
                source=source,
                processed_at=_format_timestamp(self._now()),
                item_state=item_state,
                item_updated_at=item_updated_at,
                extra=merged_extra,
            )
            self._records[item_id] = record
            self._save_locked()
        return record

    def should_reprocess(self, item: Item) -> bool:
        item_id = item.get("id")
        if not isinstance(item_id, str):
            return False
        record = self.get_record(item_id)
        if record is None or record.item_state is None:
            return False

        current_state = item_lifecycle_state(item)
        if current_state is not None and _is_reopened(record.item_state, current_state):
            return True

        current_updated_at = item.get("updated_at")
        if isinstance(current_updated_at, str) and record.item_updated_at is not None:
            current_ts = _parse_timestamp(current_updated_at)
            stored_ts = _parse_timestamp(record.item_updated_at)
            if current_ts is not None and stored_ts is not None and current_ts > stored_ts:
                return True
        return False

    def find_processed_by_dedup_key(
        self, keys: Iterable[str], *, exclude_id: str | None = None
    ) -> str | None:
        """Return the id of another processed item sharing any of ``keys``."""
        wanted = set(keys)
        if not wanted:
            return None
        with self._lock:
            for item_id, record in self._records.items():
                if item_id == exclude_id:
                    continue
                stored = record.extra.get("dedup_keys")
                if isinstance(stored, list) and wanted.intersection(
                    key for key in stored if isinstance(key, str)
                ):
                    return item_id
        return None

    def get_processed_ids(self, source: str | None = None) -> tuple[str, ...]:
        with self._lock:
            return tuple(
                item_id
                for item_id, record in self._records.items()
                if source is None or record.source == source
            )

    def get_processed_count(self, source: str | None = None) -> int:
        return len(self.get_processed_ids(source))

    def list_records(self, source: str | None = None) -> tuple[ProcessedRecord, ...]:
        with self._lock:
            records = [
                record
                for record in self._records.values()
                if source is None or record.source == source
            ]
        return tuple(sorted(records, key=lambda record: record.processed_at, reverse=True))

    def clear_processed(self, item_id: str) -> bool:
        with self._lock:
            removed = self._records.pop(item_id, None) is not None
            self._save_locked()
        return removed

    def clear_state(self) -> int:
        with self._lock:
            removed = len(self._records)
            self._records.clear()
            self._save_locked()
        return removed

    def clear_by_source(self, source: str) -> int:
        return self._remove_where(lambda record: record.source == source, reason="clear_source")

    def cleanup_expired(self, ttl_days: float = 30) -> int:
        cutoff = self._now() - timedelta(days=ttl_days)
        return self._remove_where(
            lambda record: _older_than(record.processed_at, cutoff),
            reason="expired",
        )

    def cleanup_missing_from_source(
        self,
        source: str,
        current_ids: Iterable[str],
        min_age_days: float = 1,
    ) -> int:
        present = frozenset(current_ids)
        cutoff = self._now() - timedelta(days=min_age_days)
        return self._remove_where(
            lambda record: (
                record.source == source
                and record.item_id not in present
                and _older_than(record.processed_at, cutoff)
            ),
            reason="missing_from_source",
        )

    def record_extra(self, item_id: str, **extra: object) -> None:
        with self._lock:
            record = self._records.get(item_id)
            if record is None:
                return
            self._records[item_id] = replace(record, extra={**record.extra, **extra})
            self._save_locked()

    def _remove_where(self, predicate: Callable[[ProcessedRecord], bool], *, reason: str) -> int:
        with self._lock:
            doomed = [item_id for item_id, record in self._records.items() if predicate(record)]
            for item_id in doomed:
                del self._records[item_id]
            self._save_locked()
        if doomed:
            log_event(LOGGER, "ledger_cleanup", reason=reason, removed_count=len(doomed))
        return len(doomed)

    def _load(self) -> dict[str, ProcessedRecord]:
        try:
            raw_text = self._state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            log_warning_event(
                LOGGER, "ledger_load_failed", path=self._state_path, error=str(exc)
            )
            return {}

        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            log_warning_event(
                LOGGER, "ledger_load_failed", path=self._state_path, error=str(exc)
            )
            return {}

        processed = payload.get("processed") if isinstance(payload, dict) else None
        if not isinstance(processed, dict):
            return {}

        records: dict[str, ProcessedRecord] = {}
        for item_id, raw_record in processed.items():
            record = _parse_record(item_id, raw_record)
            if record is not None:
                records[item_id] = record
        return records

    def _save_locked(self) -> None:
        payload = {
            "processed": {
                item_id: _serialize_record(record) for item_id, record in self._records.items()
            },
            "savedAt": _format_timestamp(self._now()),
        }
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._state_path.name}.", dir=self._state_path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
                fh.write("\n")
            os.replace(tmp_name, self._state_path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


def _parse_record(item_id: object, raw_record: object) -> ProcessedRecord | None:
    if not isinstance(item_id, str) or not isinstance(raw_record, dict):
        return None
    record = cast(dict[str, object], raw_record)
    processed_at = record.get("processedAt")
    source = record.get("source")
    return ProcessedRecord(
        item_id=item_id,
        source=source if isinstance(source, str) else "",
        processed_at=processed_at if isinstance(processed_at, str) else "",
        item_state=_optional_str(record.get("itemState")),
        item_updated_at=_optional_str(record.get("itemUpdatedAt")),
        extra={key: value for key, value in record.items() if key not in _KNOWN_RECORD_KEYS},
    )


def _serialize_record(record: ProcessedRecord) -> dict[str, object]:
    payload: dict[str, object] = dict(record.extra)
    payload["processedAt"] = record.processed_at
    payload["source"] = record.source
    if record.item_state is not None:
        payload["itemState"] = record.item_state
    if record.item_updated_at is not None:
        payload["itemUpdatedAt"] = record.item_updated_at
    return payload


def item_lifecycle_state(item: Item) -> str | None:
    for key in ("state", "status"):
        value = item.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _is_reopened(stored_state: str, current_state: str) -> bool:
    reopened_states = _REOPEN_TRANSITIONS.get(stored_state.strip().lower())
    if reopened_states is None:
        return False
    return current_state.strip().lower() in reopened_states


def _older_than(timestamp: str, cutoff: datetime) -> bool:
    parsed = _parse_timestamp(timestamp)
    return parsed is not None and parsed < cutoff


def _parse_timestamp(value: str) -> datetime | None:
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = f"{candidate[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
