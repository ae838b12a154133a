from __future__ import annotations

from pathlib import Path
from typing import cast

from taskpilot.config import ActionConfig
from taskpilot.dispatcher import (
    Dispatcher,
    build_message_body,
    find_worktree,
    resolve_base_directory,
    select_session,
)
from taskpilot.models import ProjectInfo, SessionInfo, WorktreeInfo
from taskpilot.server_client import SessionServerClient


def _session(
    session_id: str,
    *,
    updated: float,
    status: str = "idle",
    archived: float | None = None,
    directory: str = "/code/backend",
) -> SessionInfo:
    return SessionInfo(
        session_id=session_id,
        directory=directory,
        title="",
        updated=updated,
        archived=archived,
        status=status,  # type: ignore[arg-type]
    )


class FakeClient:
    def __init__(
        self,
        *,
        sessions: list[SessionInfo] | None = None,
        project: ProjectInfo | None = None,
        worktrees: list[WorktreeInfo] | None = None,
        created_worktree: WorktreeInfo | None = None,
        create_session_id: str | None = "ses_new",
        post_ok: bool = True,
    ) -> None:
        self.sessions = sessions or []
        self.project = project
        self.worktrees = worktrees or []
        self.created_worktree = created_worktree
        self.create_session_id = create_session_id
        self.post_ok = post_ok
        self.created_sessions: list[str] = []
        self.created_worktrees: list[tuple[str, str | None]] = []
        self.titles: list[tuple[str, str, str]] = []
        self.messages: list[tuple[str, dict[str, object], str]] = []

    def project_for_directory(self, directory: str) -> ProjectInfo | None:
        _ = directory
        return self.project

    def list_worktrees(self, directory: str) -> list[WorktreeInfo]:
        _ = directory
        return list(self.worktrees)

    def create_worktree(self, directory: str, name: str | None) -> WorktreeInfo | None:
        self.created_worktrees.append((directory, name))
        return self.created_worktree

    def list_sessions(self, directory: str) -> list[SessionInfo]:
        return [session for session in self.sessions if session.directory == directory]

    def create_session(self, directory: str) -> SessionInfo | None:
        self.created_sessions.append(directory)
        if self.create_session_id is None:
            return None
        return _session(self.create_session_id, updated=1.0, directory=directory)

    def update_session_title(self, session_id: str, title: str, *, directory: str) -> bool:
        self.titles.append((session_id, title, directory))
        return True

    def post_message(self, session_id: str, body: dict[str, object], *, directory: str) -> bool:
        self.messages.append((session_id, body, directory))
        return self.post_ok


def _dispatcher(
    client: FakeClient, tmp_path: Path, *, server: str | None = "http://localhost:4096"
) -> Dispatcher:
    return Dispatcher(
        discover=lambda directory: server,
        client_factory=lambda url: cast(SessionServerClient, client),
        templates_dir=tmp_path,
    )


_ITEM: dict[str, object] = {
    "id": "https://github.com/acme/backend/issues/7",
    "number": 7,
    "title": "Fix login",
    "body": "It breaks.",
    "repository": {"nameWithOwner": "acme/backend"},
}


def test_idle_session_is_reused_over_busy_without_creating(tmp_path: Path) -> None:
    client = FakeClient(
        sessions=[
            _session("ses_busy", updated=200.0, status="busy"),
            _session("ses_idle", updated=100.0),
        ]
    )
    action = ActionConfig(working_dir="/code/backend", worktree="none")

    result = _dispatcher(client, tmp_path).dispatch(_ITEM, action)

    assert result.status == "dispatched"
    assert result.session_id == "ses_idle"
    assert result.session_reused is True
    assert client.created_sessions == []
    assert client.titles == []
    assert [message[0] for message in client.messages] == ["ses_idle"]


def test_busy_session_is_used_when_no_idle_session_exists(tmp_path: Path) -> None:
    client = FakeClient(
        sessions=[
            _session("ses_old", updated=10.0, status="busy"),
            _session("ses_recent", updated=20.0, status="retry"),
            _session("ses_archived", updated=30.0, archived=31.0),
        ]
    )
    action = ActionConfig(
        working_dir="/code/backend", worktree="none", session_name="Issue #{number}"
    )

    result = _dispatcher(client, tmp_path).dispatch(_ITEM, action)

    assert result.session_id == "ses_recent"
    assert client.titles == [("ses_recent", "Issue #7", "/code/backend")]


def test_new_session_is_created_titled_and_messaged(tmp_path: Path) -> None:
    (tmp_path / "default.md").write_text("Work on {title}\n\n{body}", encoding="utf-8")
    client = FakeClient()
    action = ActionConfig(
        working_dir="/code/backend",
        worktree="none",
        reuse_sessions=False,
        agent="build",
        model="openai/gpt-5",
    )

    result = _dispatcher(client, tmp_path).dispatch(_ITEM, action)

    assert result.status == "dispatched"
    assert result.session_id == "ses_new"
    assert result.session_reused is False
    assert result.server_url == "http://localhost:4096"
    assert result.command == "[API] POST http://localhost:4096/session?directory=/code/backend"
    assert client.titles == [("ses_new", "Fix login", "/code/backend")]
    session_id, body, directory = client.messages[0]
    assert (session_id, directory) == ("ses_new", "/code/backend")
    assert body == {
        "parts": [{"type": "text", "text": "Work on Fix login\n\nIt breaks."}],
        "agent": "build",
        "providerID": "openai",
        "modelID": "gpt-5",
    }


def test_undelivered_message_is_partial_success(tmp_path: Path) -> None:
    client = FakeClient(post_ok=False)
    action = ActionConfig(working_dir="/code/backend", worktree="none", reuse_sessions=False)

    result = _dispatcher(client, tmp_path).dispatch(_ITEM, action)

    assert result.success
    assert result.session_id == "ses_new"
    assert result.warning == "Session ses_new created but the message was not delivered"


def test_failed_message_to_reused_session_is_a_failure(tmp_path: Path) -> None:
    client = FakeClient(sessions=[_session("ses_idle", updated=1.0)], post_ok=False)
    action = ActionConfig(working_dir="/code/backend", worktree="none")

    result = _dispatcher(client, tmp_path).dispatch(_ITEM, action)

    assert result.status == "failed"
    assert result.session_reused is True
    assert result.error == "Failed to send message to session ses_idle"


def test_session_creation_failure(tmp_path: Path) -> None:
    client = FakeClient(create_session_id=None)
    action = ActionConfig(working_dir="/code/backend", worktree="none")

    result = _dispatcher(client, tmp_path).dispatch(_ITEM, action)

    assert result.status == "failed"
    assert result.error == "Failed to create session on http://localhost:4096"


def test_missing_local_path_is_skipped_and_missing_server_fails(tmp_path: Path) -> None:
    client = FakeClient()
    unresolved = ActionConfig(working_dir="/code/{repository.missing}")

    skipped = _dispatcher(client, tmp_path).dispatch(_ITEM, unresolved)
    assert skipped.status == "skipped"
    assert skipped.error == "No local path configured for this item's repository"
    assert _dispatcher(client, tmp_path).dispatch(_ITEM, ActionConfig()).status == "skipped"

    failed = _dispatcher(client, tmp_path, server=None).dispatch(
        _ITEM, ActionConfig(working_dir="/code/backend")
    )
    assert failed.status == "failed"
    assert failed.error == "No session server found for /code/backend"
    assert client.messages == []


def test_existing_directory_skips_workspace_resolution(tmp_path: Path) -> None:
    client = FakeClient(created_worktree=WorktreeInfo("x", "/never"))
    action = ActionConfig(working_dir="/code/backend", worktree="new", reuse_sessions=False)

    result = _dispatcher(client, tmp_path).dispatch(
        _ITEM, action, existing_directory="/code/backend-wt/issue-7"
    )

    assert result.directory == "/code/backend-wt/issue-7"
    assert client.created_worktrees == []
    assert client.created_sessions == ["/code/backend-wt/issue-7"]


def test_auto_mode_provisions_worktree_for_sandboxed_project(tmp_path: Path) -> None:
    client = FakeClient(
        project=ProjectInfo("p1", "/code/backend", ("/code/backend-wt/old",), 1.0),
        created_worktree=WorktreeInfo("issue-7", "/code/backend-wt/issue-7"),
    )
    action = ActionConfig(working_dir="/code/backend", worktree_name="issue-{number}")

    workspace = _dispatcher(client, tmp_path).resolve_workspace(
        cast(SessionServerClient, client), "/code/backend", _ITEM, action
    )

    assert workspace.directory == "/code/backend-wt/issue-7"
    assert workspace.worktree_created is True
    assert client.created_worktrees == [("/code/backend", "issue-7")]


def test_auto_mode_without_sandboxes_uses_base_directory(tmp_path: Path) -> None:
    client = FakeClient(project=ProjectInfo("p1", "/code/backend", (), 1.0))

    workspace = _dispatcher(client, tmp_path).resolve_workspace(
        cast(SessionServerClient, client), "/code/backend", _ITEM, ActionConfig()
    )

    assert workspace.directory == "/code/backend"
    assert workspace.worktree_created is False
    assert client.created_worktrees == []


def test_new_worktree_reuses_matching_existing_worktree(tmp_path: Path) -> None:
    client = FakeClient(worktrees=[WorktreeInfo("issue-7", "/code/backend-wt/issue-7")])
    action = ActionConfig(worktree="new", worktree_name="issue-{number}")

    workspace = _dispatcher(client, tmp_path).resolve_workspace(
        cast(SessionServerClient, client), "/code/backend", _ITEM, action
    )

    assert workspace.directory == "/code/backend-wt/issue-7"
    assert workspace.worktree_reused is True
    assert client.created_worktrees == []


def test_worktree_creation_failure_falls_back_with_warning(tmp_path: Path) -> None:
    client = FakeClient()
    action = ActionConfig(worktree="new")

    workspace = _dispatcher(client, tmp_path).resolve_workspace(
        cast(SessionServerClient, client), "/code/backend", _ITEM, action
    )

    assert workspace.directory == "/code/backend"
    assert workspace.warning == "Failed to create worktree; using /code/backend"
    assert client.created_worktrees == [("/code/backend", None)]


def test_named_worktree_lookup(tmp_path: Path) -> None:
    client = FakeClient(worktrees=[WorktreeInfo("feature", "/code/backend-wt/feature")])
    dispatcher = _dispatcher(client, tmp_path)

    found = dispatcher.resolve_workspace(
        cast(SessionServerClient, client), "/code/backend", _ITEM, ActionConfig(worktree="feature")
    )
    missing = dispatcher.resolve_workspace(
        cast(SessionServerClient, client), "/code/backend", _ITEM, ActionConfig(worktree="nope")
    )

    assert found.directory == "/code/backend-wt/feature"
    assert missing.directory == "/code/backend"
    assert missing.warning == "Worktree 'nope' not found; using /code/backend"


def test_describe_reports_dry_run(tmp_path: Path) -> None:
    dispatcher = _dispatcher(FakeClient(), tmp_path)

    result = dispatcher.describe(_ITEM, ActionConfig(working_dir="/code/{repository.nameWithOwner}"))

    assert result.status == "dry_run"
    assert result.directory == "/code/acme/backend"
    assert result.command == "[API] POST /session?directory=/code/acme/backend (title: 'Fix login')"


def test_helpers() -> None:
    assert select_session([]) is None
    assert select_session([_session("a", updated=1.0, archived=2.0)]) is None
    zero_archived = _session("b", updated=1.0, archived=0.0)
    assert zero_archived.is_archived is False
    assert select_session([zero_archived]) == zero_archived
    assert find_worktree([WorktreeInfo("a", "/x/wt/a/")], "wt/a") is not None
    assert find_worktree([WorktreeInfo("a", "/x/a")], "") is None
    assert resolve_base_directory(_ITEM, ActionConfig(working_dir="~/code")) == str(
        Path("~/code").expanduser()
    )
    assert build_message_body("hi", model="sonnet") == {
        "parts": [{"type": "text", "text": "hi"}],
        "providerID": "anthropic",
        "modelID": "sonnet",
    }
    assert build_message_body("hi") == {"parts": [{"type": "text", "text": "hi"}]}
