from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


Item = dict[str, object]
DispatchStatus = Literal["dispatched", "skipped", "failed", "dry_run"]
SessionStatus = Literal["idle", "busy", "retry"]


@dataclass(frozen=True)
class ReadinessResult:
    ready: bool
    reason: str | None = None


@dataclass(frozen=True)
class ProcessedRecord:
    item_id: str
    source: str
    processed_at: str
    item_state: str | None = None
    item_updated_at: str | None = None
    extra: dict[str, object] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ProjectInfo:
    project_id: str
    worktree: str
    sandboxes: tuple[str, ...]
    created: float


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    directory: str
    title: str
    updated: float
    archived: float | None
    status: SessionStatus = "idle"

    @property
    def is_archived(self) -> bool:
        return bool(self.archived)

    @property
    def is_busy(self) -> bool:
        return self.status in ("busy", "retry")


@dataclass(frozen=True)
class WorktreeInfo:
    name: str
    directory: str


@dataclass(frozen=True)
class WorkspaceResolution:
    directory: str
    worktree_created: bool = False
    worktree_reused: bool = False
    warning: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    session_id: str | None = None
    directory: str | None = None
    server_url: str | None = None
    session_reused: bool = False
    worktree_created: bool = False
    warning: str | None = None
    error: str | None = None
    command: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "dispatched"
