from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
import logging
import os
from pathlib import Path

from taskpilot.config import ActionConfig
from taskpilot.discovery import ClientFactory
from taskpilot.fields import expand_template, has_unresolved_placeholders
from taskpilot.models import DispatchResult, Item, SessionInfo, WorkspaceResolution, WorktreeInfo
from taskpilot.observability import log_event
from taskpilot.prompts import build_prompt, build_session_title
from taskpilot.server_client import SessionServerClient


LOGGER = logging.getLogger("taskpilot.dispatcher")
DEFAULT_PROVIDER = "anthropic"

ServerDiscovery = Callable[[str], str | None]


class Dispatcher:
    """Delivers one ready item to one agent session.

    Server discovery and client construction are injected so a dispatch is a
    plain function of the item and its resolved action configuration.
    """

    def __init__(
        self,
        *,
        discover: ServerDiscovery,
        client_factory: ClientFactory,
        templates_dir: Path,
    ) -> None:
        self._discover = discover
        self._client_factory = client_factory
        self._templates_dir = templates_dir

    def dispatch(
        self,
        item: Item,
        action: ActionConfig,
        *,
        existing_directory: str | None = None,
    ) -> DispatchResult:
        base_dir = resolve_base_directory(item, action)
        if base_dir is None:
            return DispatchResult(
                status="skipped",
                error="No local path configured for this item's repository",
            )

        server = self._discover(base_dir)
        if server is None:
            return DispatchResult(
                status="failed",
                directory=base_dir,
                error=f"No session server found for {base_dir}",
            )

        client = self._client_factory(server)
        if existing_directory:
            workspace = WorkspaceResolution(directory=existing_directory, worktree_reused=True)
        else:
            workspace = self.resolve_workspace(client, base_dir, item, action)
        directory = workspace.directory
        prompt = build_prompt(action.prompt, item, self._templates_dir)
        body = build_message_body(prompt, agent=action.agent, model=action.model)
        base_result = DispatchResult(
            status="dispatched",
            directory=directory,
            server_url=server,
            worktree_created=workspace.worktree_created,
            warning=workspace.warning,
            command=_api_command(server, directory),
        )

        if action.reuse_sessions:
            session = self.find_reusable_session(client, directory)
            if session is not None:
                return self._send_to_existing(client, session, item, action, body, base_result)

        session = client.create_session(directory)
        if session is None:
            return replace(
                base_result,
                status="failed",
                error=f"Failed to create session on {server}",
            )
        client.update_session_title(
            session.session_id,
            build_session_title(action.session_name, item),
            directory=directory,
        )
        if not client.post_message(session.session_id, body, directory=directory):
            return replace(
                base_result,
                session_id=session.session_id,
                warning=_join_warnings(
                    base_result.warning,
                    f"Session {session.session_id} created but the message was not delivered",
                ),
            )
        return replace(base_result, session_id=session.session_id)

    def describe(self, item: Item, action: ActionConfig) -> DispatchResult:
        base_dir = resolve_base_directory(item, action)
        if base_dir is None:
            return DispatchResult(
                status="skipped",
                error="No local path configured for this item's repository",
            )
        title = build_session_title(action.session_name, item)
        return DispatchResult(
            status="dry_run",
            directory=base_dir,
            command=f"[API] POST /session?directory={base_dir} (title: {title!r})",
        )

    def resolve_workspace(
        self,
        client: SessionServerClient,
        base_dir: str,
        item: Item,
        action: ActionConfig,
    ) -> WorkspaceResolution:
        mode = action.worktree
        if mode is None:
            project = client.project_for_directory(base_dir)
            if project is None or not project.sandboxes:
                return WorkspaceResolution(directory=base_dir)
            log_event(
                LOGGER,
                "worktree_auto_detected",
                directory=base_dir,
                sandbox_count=len(project.sandboxes),
            )
            mode = "new"

        if mode == "none":
            return WorkspaceResolution(directory=base_dir)

        if mode != "new":
            match = find_worktree(client.list_worktrees(base_dir), mode)
            if match is None:
                return WorkspaceResolution(
                    directory=base_dir,
                    warning=f"Worktree {mode!r} not found; using {base_dir}",
                )
            return WorkspaceResolution(directory=match.directory, worktree_reused=True)

        name = expand_template(action.worktree_name, item) if action.worktree_name else None
        if name:
            existing = find_worktree(client.list_worktrees(base_dir), name)
            if existing is not None:
                return WorkspaceResolution(directory=existing.directory, worktree_reused=True)

        created = client.create_worktree(base_dir, name)
        if created is None:
            return WorkspaceResolution(
                directory=base_dir,
                warning=f"Failed to create worktree; using {base_dir}",
            )
        return WorkspaceResolution(directory=created.directory, worktree_created=True)

    def find_reusable_session(
        self, client: SessionServerClient, directory: str
    ) -> SessionInfo | None:
        return select_session(client.list_sessions(directory))

    def _send_to_existing(
        self,
        client: SessionServerClient,
        session: SessionInfo,
        item: Item,
        action: ActionConfig,
        body: dict[str, object],
        base_result: DispatchResult,
    ) -> DispatchResult:
        log_event(
            LOGGER,
            "session_reused",
            session_id=session.session_id,
            status=session.status,
            directory=base_result.directory,
        )
        directory = base_result.directory or session.directory
        if action.session_name:
            client.update_session_title(
                session.session_id,
                build_session_title(action.session_name, item),
                directory=directory,
            )
        if not client.post_message(session.session_id, body, directory=directory):
            return replace(
                base_result,
                status="failed",
                session_id=session.session_id,
                session_reused=True,
                error=f"Failed to send message to session {session.session_id}",
            )
        return replace(base_result, session_id=session.session_id, session_reused=True)


def resolve_base_directory(item: Item, action: ActionConfig) -> str | None:
    if not action.working_dir:
        return None
    expanded = expand_template(action.working_dir, item)
    if has_unresolved_placeholders(expanded):
        return None
    return os.path.expanduser(expanded)


def select_session(sessions: Iterable[SessionInfo]) -> SessionInfo | None:
    """Pick the most recently updated idle session, else the most recent busy one."""
    live = [session for session in sessions if not session.is_archived]
    if not live:
        return None
    idle = [session for session in live if not session.is_busy]
    return max(idle or live, key=lambda session: session.updated)


def find_worktree(worktrees: Iterable[WorktreeInfo], suffix: str) -> WorktreeInfo | None:
    wanted = suffix.strip("/")
    if not wanted:
        return None
    for worktree in worktrees:
        directory = worktree.directory.rstrip("/")
        if worktree.name == wanted or directory == wanted or directory.endswith(f"/{wanted}"):
            return worktree
    return None


def build_message_body(
    prompt: str, *, agent: str | None = None, model: str | None = None
) -> dict[str, object]:
    body: dict[str, object] = {"parts": [{"type": "text", "text": prompt}]}
    if agent:
        body["agent"] = agent
    if model:
        provider, sep, model_id = model.partition("/")
        if sep:
            body["providerID"] = provider
            body["modelID"] = model_id
        else:
            body["providerID"] = DEFAULT_PROVIDER
            body["modelID"] = model
    return body


def _api_command(server: str, directory: str) -> str:
    return f"[API] POST {server}/session?directory={directory}"


def _join_warnings(*warnings: str | None) -> str | None:
    present = [warning for warning in warnings if warning]
    return "; ".join(present) if present else None
