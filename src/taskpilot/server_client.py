from __future__ import annotations

from collections.abc import Mapping
import logging
import os
from typing import cast

import requests

from taskpilot.models import ProjectInfo, SessionInfo, SessionStatus, WorktreeInfo
from taskpilot.observability import log_event, log_warning_event


LOGGER = logging.getLogger("taskpilot.server_client")
_SESSION_STATUSES: frozenset[str] = frozenset({"idle", "busy", "retry"})


class SessionServerClient:
    """Best-effort HTTP client for one running session server.

    Every call is a single attempt with a timeout. Transport errors, non-2xx
    responses and malformed JSON are logged and surface as ``None``, ``False``
    or an empty list so callers can move on to the next candidate.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout_seconds: float = 10.0,
        message_timeout_seconds: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session if session is not None else requests.Session()
        self._timeout_seconds = timeout_seconds
        self._message_timeout_seconds = message_timeout_seconds

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._session.close()

    def get_current_project(self) -> ProjectInfo | None:
        payload = self._request_json("GET", "/project/current")
        return parse_project(payload)

    def list_projects(self) -> list[ProjectInfo]:
        payload = self._request_json("GET", "/project")
        if not isinstance(payload, list):
            return []
        projects: list[ProjectInfo] = []
        for entry in payload:
            project = parse_project(entry)
            if project is not None:
                projects.append(project)
        return projects

    def project_for_directory(self, directory: str) -> ProjectInfo | None:
        matches = [project for project in self.list_projects() if project.worktree == directory]
        if not matches:
            return None
        with_sandboxes = [project for project in matches if project.sandboxes]
        return (with_sandboxes or matches)[0]

    def session_statuses(self) -> dict[str, SessionStatus]:
        payload = self._request_json("GET", "/session/status")
        if not isinstance(payload, dict):
            return {}
        statuses: dict[str, SessionStatus] = {}
        for session_id, raw_status in payload.items():
            status_type = raw_status.get("type") if isinstance(raw_status, dict) else raw_status
            if isinstance(session_id, str) and status_type in _SESSION_STATUSES:
                statuses[session_id] = cast(SessionStatus, status_type)
        return statuses

    def list_sessions(self, directory: str) -> list[SessionInfo]:
        payload = self._request_json(
            "GET", "/session", params={"directory": directory, "roots": "true"}
        )
        if not isinstance(payload, list):
            return []
        statuses = self.session_statuses()
        sessions: list[SessionInfo] = []
        for entry in payload:
            session = parse_session(entry, statuses=statuses)
            if session is None:
                continue
            if session.directory and session.directory != directory:
                continue
            sessions.append(session)
        return sessions

    def create_session(self, directory: str) -> SessionInfo | None:
        payload = self._request_json("POST", "/session", params={"directory": directory}, json={})
        session = parse_session(payload, statuses={})
        if session is not None:
            log_event(
                LOGGER,
                "session_created",
                server_url=self._base_url,
                session_id=session.session_id,
                directory=directory,
            )
        return session

    def update_session_title(self, session_id: str, title: str, *, directory: str) -> bool:
        payload = self._request_json(
            "PATCH",
            f"/session/{session_id}",
            params={"directory": directory},
            json={"title": title},
        )
        return payload is not None

    def post_message(
        self, session_id: str, body: Mapping[str, object], *, directory: str
    ) -> bool:
        """Submit a message and return once the server has accepted it.

        The message endpoint streams until the agent finishes, so a read
        timeout after the request was sent counts as accepted.
        """
        url = f"{self._base_url}/session/{session_id}/message"
        try:
            response = self._session.post(
                url,
                params={"directory": directory},
                json=dict(body),
                timeout=(self._timeout_seconds, self._message_timeout_seconds),
                stream=True,
            )
        except requests.ReadTimeout:
            log_event(
                LOGGER,
                "message_post_assumed_accepted",
                server_url=self._base_url,
                session_id=session_id,
            )
            return True
        except requests.RequestException as exc:
            self._log_failure("POST", url, exc)
            return False

        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            self._log_failure("POST", url, exc)
            return False
        finally:
            response.close()
        log_event(LOGGER, "message_posted", server_url=self._base_url, session_id=session_id)
        return True

    def list_worktrees(self, directory: str) -> list[WorktreeInfo]:
        payload = self._request_json(
            "GET", "/experimental/worktree", params={"directory": directory}
        )
        if not isinstance(payload, list):
            return []
        worktrees: list[WorktreeInfo] = []
        for entry in payload:
            worktree = parse_worktree(entry)
            if worktree is not None:
                worktrees.append(worktree)
        return worktrees

    def create_worktree(self, directory: str, name: str | None) -> WorktreeInfo | None:
        body: dict[str, object] = {"name": name} if name else {}
        payload = self._request_json(
            "POST", "/experimental/worktree", params={"directory": directory}, json=body
        )
        worktree = parse_worktree(payload)
        if worktree is not None:
            log_event(
                LOGGER,
                "worktree_created",
                server_url=self._base_url,
                name=worktree.name,
                directory=worktree.directory,
            )
        return worktree

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: object | None = None,
    ) -> object | None:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json,
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
            if not response.content:
                return {}
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            self._log_failure(method, url, exc)
            return None

    def _log_failure(self, method: str, url: str, exc: Exception) -> None:
        log_warning_event(
            LOGGER,
            "server_request_failed",
            method=method,
            url=url,
            error_type=type(exc).__name__,
            error=str(exc),
        )


class SessionServerClientPool:
    """Hands out one ``SessionServerClient`` per base URL and closes them together."""

    def __init__(
        self, *, timeout_seconds: float = 10.0, message_timeout_seconds: float = 10.0
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._message_timeout_seconds = message_timeout_seconds
        self._clients: dict[str, SessionServerClient] = {}

    def __call__(self, base_url: str) -> SessionServerClient:
        key = base_url.rstrip("/")
        client = self._clients.get(key)
        if client is None:
            client = SessionServerClient(
                key,
                timeout_seconds=self._timeout_seconds,
                message_timeout_seconds=self._message_timeout_seconds,
            )
            self._clients[key] = client
        return client

    def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            client.close()

    def __enter__(self) -> SessionServerClientPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

def parse_project(payload: object) -> ProjectInfo | None:
    """Return the project, or ``None`` when identity or creation time is missing."""
    if not isinstance(payload, dict):
        return None
    project_id = payload.get("id")
    created = _time_field(payload, "created")
    if not isinstance(project_id, str) or not project_id or created is None:
        return None
    worktree = payload.get("worktree")
    raw_sandboxes = payload.get("sandboxes")
    sandboxes = (
        tuple(entry for entry in raw_sandboxes if isinstance(entry, str))
        if isinstance(raw_sandboxes, list)
        else ()
    )
    return ProjectInfo(
        project_id=project_id,
        worktree=worktree if isinstance(worktree, str) else "",
        sandboxes=sandboxes,
        created=created,
    )


def parse_session(
    payload: object, *, statuses: Mapping[str, SessionStatus]
) -> SessionInfo | None:
    if not isinstance(payload, dict):
        return None
    session_id = payload.get("id")
    if not isinstance(session_id, str) or not session_id:
        return None
    directory = payload.get("directory")
    title = payload.get("title")
    updated = _time_field(payload, "updated")
    if updated is None:
        updated = _time_field(payload, "created") or 0.0
    return SessionInfo(
        session_id=session_id,
        directory=directory if isinstance(directory, str) else "",
        title=title if isinstance(title, str) else "",
        updated=updated,
        archived=_time_field(payload, "archived"),
        status=statuses.get(session_id, "idle"),
    )


def parse_worktree(payload: object) -> WorktreeInfo | None:
    if isinstance(payload, str) and payload:
        return WorktreeInfo(name=os.path.basename(payload.rstrip("/")), directory=payload)
    if not isinstance(payload, dict):
        return None
    directory = payload.get("directory")
    if not isinstance(directory, str) or not directory:
        return None
    name = payload.get("name")
    return WorktreeInfo(
        name=name if isinstance(name, str) and name else os.path.basename(directory.rstrip("/")),
        directory=directory,
    )


def _time_field(payload: Mapping[str, object], key: str) -> float | None:
    times = payload.get("time")
    if not isinstance(times, dict):
        return None
    value = times.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)
