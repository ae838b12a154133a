from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time

from taskpilot.config import AppConfig, ConfigError, SourceConfig
from taskpilot.dispatcher import Dispatcher
from taskpilot.enrichment import GitHubEnricher
from taskpilot.models import DispatchResult, Item
from taskpilot.observability import log_event, log_warning_event
from taskpilot.readiness import calculate_priority, compute_attention, evaluate_readiness
from taskpilot.shell import CommandError
from taskpilot.state import PollState, item_lifecycle_state
from taskpilot.tools import ToolInvoker
from taskpilot.transform import apply_mappings, compute_dedup_keys, transform_items


LOGGER = logging.getLogger("taskpilot.poll_service")


@dataclass(frozen=True)
class PollOutcome:
    item_id: str
    source: str
    result: DispatchResult
    reprocessed: bool = False


class PollService:
    def __init__(
        self,
        config: AppConfig,
        *,
        state: PollState,
        dispatcher: Dispatcher,
        tool_invoker: ToolInvoker,
        enricher: GitHubEnricher | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        for source in config.sources:
            tool_invoker.check_supported(source.tool, source_name=source.name)
        self._config = config
        self._state = state
        self._dispatcher = dispatcher
        self._tool_invoker = tool_invoker
        self._enricher = enricher if enricher is not None else GitHubEnricher()
        self._sleep = sleep
        self._now = now or _utc_now

    def run(self, *, once: bool) -> None:
        self._state.cleanup_expired(self._config.runtime.cleanup_ttl_days)
        try:
            while True:
                self.poll_once()
                if once:
                    break
                self._sleep(self._config.runtime.poll_interval_seconds)
        except KeyboardInterrupt:
            log_event(LOGGER, "poll_loop_stopped", reason="interrupted")

    def poll_once(self, *, dry_run: bool = False) -> list[PollOutcome]:
        log_event(
            LOGGER,
            "poll_cycle_started",
            source_count=len(self._config.sources),
            dry_run=dry_run,
        )
        outcomes: list[PollOutcome] = []
        for source in self._config.sources:
            outcomes.extend(self.poll_source(source, dry_run=dry_run))
        log_event(
            LOGGER,
            "poll_cycle_completed",
            outcome_count=len(outcomes),
            dispatched_count=sum(1 for outcome in outcomes if outcome.result.success),
            dry_run=dry_run,
        )
        return outcomes

    def poll_source(self, source: SourceConfig, *, dry_run: bool) -> list[PollOutcome]:
        items = self.fetch_items(source)
        if items is None:
            return []

        outcomes: list[PollOutcome] = []
        for item in self.ready_items(source, items):
            outcome = self._process_item(source, item, dry_run=dry_run)
            if outcome is not None:
                outcomes.append(outcome)

        if items and not dry_run:
            self._state.cleanup_missing_from_source(
                source.name,
                [str(item["id"]) for item in items],
                min_age_days=self._config.runtime.missing_item_min_age_days,
            )
        return outcomes

    def fetch_items(self, source: SourceConfig) -> list[Item] | None:
        """Fetch, map and identify a source's items; ``None`` when the fetch failed."""
        try:
            records = self._tool_invoker.invoke(source.tool, source.args, source_name=source.name)
        except (CommandError, ConfigError) as exc:
            log_warning_event(
                LOGGER,
                "source_fetch_failed",
                source=source.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        mapped = [apply_mappings(record, source.mappings) for record in records]
        items = transform_items(mapped, source.item_id)
        if source.filter_bot_comments or source.enrich_mergeable:
            items = [
                self._enricher.enrich(
                    item,
                    comments=source.filter_bot_comments,
                    mergeable=source.enrich_mergeable,
                    source_name=source.name,
                )
                for item in items
            ]
        if source.filter_bot_comments and source.enrich_mergeable:
            items = [compute_attention(item) for item in items]
        return items

    def ready_items(self, source: SourceConfig, items: list[Item]) -> list[Item]:
        """Return the items passing readiness, highest priority first."""
        now = self._now()
        scored: list[tuple[float, Item]] = []
        for item in items:
            config = self._config.readiness_for_item(source, item)
            readiness = evaluate_readiness(item, config)
            if not readiness.ready:
                log_event(
                    LOGGER,
                    "item_not_ready",
                    source=source.name,
                    item_id=str(item["id"]),
                    reason=readiness.reason,
                )
                continue
            scored.append((calculate_priority(item, config, now=now), item))
        scored.sort(key=lambda entry: entry[0], reverse=True)
        return [item for _, item in scored]

    def _process_item(self, source: SourceConfig, item: Item, *, dry_run: bool) -> PollOutcome | None:
        item_id = str(item["id"])
        dedup_keys = compute_dedup_keys(item)
        duplicate_of = self._state.find_processed_by_dedup_key(dedup_keys, exclude_id=item_id)
        if duplicate_of is not None:
            log_event(
                LOGGER,
                "item_duplicate_skipped",
                source=source.name,
                item_id=item_id,
                duplicate_of=duplicate_of,
            )
            return None

        reprocessing = False
        existing_directory: str | None = None
        if self._state.is_processed(item_id):
            if not self._state.should_reprocess(item):
                return None
            reprocessing = True
            previous = self._state.get_record(item_id)
            directory = previous.extra.get("directory") if previous is not None else None
            existing_directory = directory if isinstance(directory, str) and directory else None
            log_event(
                LOGGER,
                "item_reprocessing",
                source=source.name,
                item_id=item_id,
                existing_directory=existing_directory,
            )

        action, repo_key = self._config.action_for_item(source, item)
        if dry_run:
            result = self._dispatcher.describe(item, action)
            log_event(
                LOGGER,
                "item_dry_run",
                source=source.name,
                item_id=item_id,
                command=result.command,
            )
            return PollOutcome(item_id=item_id, source=source.name, result=result, reprocessed=reprocessing)

        result = self._dispatcher.dispatch(item, action, existing_directory=existing_directory)
        if result.success:
            updated_at = item.get("updated_at")
            self._state.mark_processed(
                item_id,
                source=source.name,
                item_state=item_lifecycle_state(item),
                item_updated_at=updated_at if isinstance(updated_at, str) else None,
                directory=result.directory,
                session_id=result.session_id,
                repo_key=repo_key,
                command=result.command,
                dedup_keys=dedup_keys,
            )
            log_event(
                LOGGER,
                "item_dispatched",
                source=source.name,
                item_id=item_id,
                session_id=result.session_id,
                session_reused=result.session_reused,
                directory=result.directory,
                warning=result.warning,
            )
        elif result.status == "skipped":
            log_event(
                LOGGER,
                "item_dispatch_skipped",
                source=source.name,
                item_id=item_id,
                reason=result.error,
            )
        else:
            log_warning_event(
                LOGGER,
                "item_dispatch_failed",
                source=source.name,
                item_id=item_id,
                error=result.error,
            )
        return PollOutcome(item_id=item_id, source=source.name, result=result, reprocessed=reprocessing)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
