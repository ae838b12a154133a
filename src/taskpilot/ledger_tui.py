from __future__ import annotations

from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from taskpilot.models import ProcessedRecord
from taskpilot.state import PollState


_EXTRA_MAX_CHARS = 48


class LedgerApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("s", "cycle_source_filter", "Source Filter"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(self, *, state_path: Path, refresh_seconds: int = 5) -> None:
        super().__init__()
        self._state_path = state_path
        self._refresh_seconds = refresh_seconds
        self._source_filter: str | None = None
        self._available_sources: tuple[str, ...] = ()
        self._records: tuple[ProcessedRecord, ...] = ()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield DataTable(id="ledger-table")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#ledger-table", DataTable)
        table.add_columns("Item", "Source", "Processed", "State", "Updated", "Directory", "Session")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    @property
    def source_filter(self) -> str | None:
        return self._source_filter

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_source_filter(self) -> None:
        self._source_filter = _next_source_filter(self._source_filter, self._available_sources)
        self.refresh_data()

    def refresh_data(self) -> None:
        # A fresh instance picks up writes made by a running poller.
        state = PollState(self._state_path)
        all_records = state.list_records()
        self._available_sources = tuple(sorted({record.source for record in all_records}))
        self._records = tuple(
            record
            for record in all_records
            if self._source_filter is None or record.source == self._source_filter
        )
        self.query_one("#summary", Static).update(
            _summary_text(
                total=len(all_records),
                shown=len(self._records),
                source_filter=self._source_filter,
                state_path=self._state_path,
            )
        )
        table = self.query_one("#ledger-table", DataTable)
        table.clear(columns=False)
        if not self._records:
            table.add_row("-", "-", "-", "-", "-", "-", "No processed items")
            return
        for record in self._records:
            table.add_row(
                record.item_id,
                record.source,
                record.processed_at,
                record.item_state or "-",
                record.item_updated_at or "-",
                _extra_text(record, "directory"),
                _extra_text(record, "session_id"),
            )


def run_ledger_tui(*, state_path: Path, refresh_seconds: int = 5) -> None:
    LedgerApp(state_path=state_path, refresh_seconds=refresh_seconds).run()


def _summary_text(*, total: int, shown: int, source_filter: str | None, state_path: Path) -> str:
    return (
        f"Ledger: {state_path}\n"
        f"Source: {source_filter or 'all'} | Showing {shown} of {total} processed items"
    )


def _next_source_filter(current: str | None, available: tuple[str, ...]) -> str | None:
    options: tuple[str | None, ...] = (None, *available)
    if current not in options:
        return options[0]
    idx = options.index(current)
    return options[(idx + 1) % len(options)]


def _extra_text(record: ProcessedRecord, key: str) -> str:
    value = record.extra.get(key)
    if value is None or value == "":
        return "-"
    text = str(value)
    if len(text) > _EXTRA_MAX_CHARS:
        return f"...{text[-(_EXTRA_MAX_CHARS - 3):]}"
    return text
