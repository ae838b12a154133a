from __future__ import annotations

import argparse
from functools import partial
import json
from pathlib import Path

from taskpilot.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from taskpilot.discovery import discover_server
from taskpilot.dispatcher import Dispatcher
from taskpilot.enrichment import GitHubEnricher
from taskpilot.ledger_tui import run_ledger_tui
from taskpilot.models import ProcessedRecord
from taskpilot.observability import configure_logging
from taskpilot.poll_service import PollOutcome, PollService
from taskpilot.server_client import SessionServerClientPool
from taskpilot.state import PollState
from taskpilot.tools import ToolInvoker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskpilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Poll sources and dispatch ready items")
    _add_common_arguments(run_parser)
    run_parser.add_argument("--once", action="store_true", help="Run a single poll cycle")

    poll_parser = subparsers.add_parser("poll", help="Run one poll cycle and print outcomes")
    _add_common_arguments(poll_parser)
    poll_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be dispatched without contacting a session server",
    )
    poll_parser.add_argument("--json", action="store_true", help="Print outcomes as JSON")

    status_parser = subparsers.add_parser("status", help="Show processed-item ledger")
    _add_common_arguments(status_parser)
    status_parser.add_argument("--source", type=str, help="Only show records from this source")
    status_parser.add_argument("--json", action="store_true", help="Print records as JSON")

    clear_parser = subparsers.add_parser("clear", help="Remove records from the ledger")
    _add_common_arguments(clear_parser)
    clear_target = clear_parser.add_mutually_exclusive_group(required=True)
    clear_target.add_argument(
        "--id",
        type=str,
        action="append",
        help="Item id to clear (repeatable)",
    )
    clear_target.add_argument("--source", type=str, help="Clear every record from this source")
    clear_target.add_argument("--all", action="store_true", help="Clear the whole ledger")
    clear_parser.add_argument("--yes", action="store_true", help="Required with --all")

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove expired ledger records")
    _add_common_arguments(cleanup_parser)
    cleanup_parser.add_argument(
        "--ttl-days",
        type=int,
        help="Override runtime.cleanup_ttl_days",
    )

    top_parser = subparsers.add_parser("top", help="Browse the ledger in a terminal UI")
    _add_common_arguments(top_parser)
    top_parser.add_argument(
        "--refresh-seconds",
        type=int,
        default=5,
        help="Ledger reload interval",
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log key events to stderr; repeat for every event",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    state_dir = config.runtime.state_dir if args.command == "run" else None
    configure_logging(int(getattr(args, "verbose", 0) or 0), state_dir=state_dir)

    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "poll":
        _cmd_poll(config, dry_run=bool(args.dry_run), as_json=bool(args.json))
        return
    if args.command == "status":
        _cmd_status(config, source=args.source, as_json=bool(args.json))
        return
    if args.command == "clear":
        _cmd_clear(
            config,
            item_ids=tuple(args.id or ()),
            source=args.source,
            clear_all=bool(args.all),
            yes=bool(args.yes),
        )
        return
    if args.command == "cleanup":
        _cmd_cleanup(config, ttl_days=args.ttl_days)
        return
    if args.command == "top":
        run_ledger_tui(state_path=config.state_path, refresh_seconds=int(args.refresh_seconds))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def build_poll_service(config: AppConfig, *, clients: SessionServerClientPool) -> PollService:
    dispatcher = Dispatcher(
        discover=partial(
            discover_server,
            client_factory=clients,
            preferred_port=config.runtime.server_port,
        ),
        client_factory=clients,
        templates_dir=config.runtime.templates_dir,
    )
    return PollService(
        config,
        state=PollState(config.state_path),
        dispatcher=dispatcher,
        tool_invoker=ToolInvoker(timeout_seconds=float(config.runtime.tool_timeout_seconds)),
        enricher=GitHubEnricher(timeout_seconds=float(config.runtime.tool_timeout_seconds)),
    )


def _client_pool(config: AppConfig) -> SessionServerClientPool:
    timeout = float(config.runtime.request_timeout_seconds)
    return SessionServerClientPool(timeout_seconds=timeout, message_timeout_seconds=timeout)


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    config.runtime.state_dir.mkdir(parents=True, exist_ok=True)
    with _client_pool(config) as clients:
        build_poll_service(config, clients=clients).run(once=once)


def _cmd_poll(config: AppConfig, *, dry_run: bool, as_json: bool) -> None:
    with _client_pool(config) as clients:
        outcomes = build_poll_service(config, clients=clients).poll_once(dry_run=dry_run)
    if as_json:
        print(json.dumps([_outcome_payload(outcome) for outcome in outcomes], indent=2))
        return
    if not outcomes:
        print("No items to dispatch.")
        return
    for outcome in outcomes:
        result = outcome.result
        line = f"[{result.status}] source={outcome.source} item={outcome.item_id}"
        if result.directory:
            line += f" directory={result.directory}"
        if result.session_id:
            line += f" session={result.session_id}"
        print(line)
        if result.command and result.status == "dry_run":
            print(f"  {result.command}")
        if result.warning:
            print(f"  warning: {result.warning}")
        if result.error:
            print(f"  error: {result.error}")


def _cmd_status(config: AppConfig, *, source: str | None, as_json: bool) -> None:
    state = PollState(config.state_path)
    records = state.list_records(source)
    if as_json:
        print(json.dumps([_record_payload(record) for record in records], indent=2))
        return

    print(f"Ledger: {state.state_path}")
    print(f"Processed items: {len(records)}")
    for configured in config.sources:
        if source is None or configured.name == source:
            print(f"  {configured.name}: {state.get_processed_count(configured.name)}")
    for record in records:
        print(
            f"{record.processed_at} source={record.source} item={record.item_id} "
            f"state={record.item_state or '-'}"
        )


def _cmd_clear(
    config: AppConfig,
    *,
    item_ids: tuple[str, ...],
    source: str | None,
    clear_all: bool,
    yes: bool,
) -> None:
    if clear_all and not yes:
        raise RuntimeError("--all requires --yes")
    state = PollState(config.state_path)
    if clear_all:
        removed = state.clear_state()
    elif source is not None:
        removed = state.clear_by_source(source)
    else:
        removed = sum(1 for item_id in dict.fromkeys(item_ids) if state.clear_processed(item_id))
    print(f"Cleared {removed} record(s).")


def _cmd_cleanup(config: AppConfig, *, ttl_days: int | None) -> None:
    effective_ttl = ttl_days if ttl_days is not None else config.runtime.cleanup_ttl_days
    if effective_ttl < 1:
        raise RuntimeError("--ttl-days must be >= 1")
    removed = PollState(config.state_path).cleanup_expired(effective_ttl)
    print(f"Removed {removed} expired record(s) older than {effective_ttl} day(s).")


def _outcome_payload(outcome: PollOutcome) -> dict[str, object]:
    result = outcome.result
    return {
        "item_id": outcome.item_id,
        "source": outcome.source,
        "status": result.status,
        "reprocessed": outcome.reprocessed,
        "session_id": result.session_id,
        "session_reused": result.session_reused,
        "directory": result.directory,
        "server_url": result.server_url,
        "worktree_created": result.worktree_created,
        "command": result.command,
        "warning": result.warning,
        "error": result.error,
    }


def _record_payload(record: ProcessedRecord) -> dict[str, object]:
    return {
        "id": record.item_id,
        "source": record.source,
        "processed_at": record.processed_at,
        "item_state": record.item_state,
        "item_updated_at": record.item_updated_at,
        **record.extra,
    }
