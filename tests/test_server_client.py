from __future__ import annotations

import json as jsonlib
from typing import cast

import pytest
import requests

from taskpilot.server_client import (
    SessionServerClient,
    SessionServerClientPool,
    parse_project,
    parse_session,
    parse_worktree,
)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: object = None, *, body: str | None = None) -> None:
        self.status_code = status_code
        if body is not None:
            self.content = body.encode("utf-8")
        elif payload is None:
            self.content = b""
        else:
            self.content = jsonlib.dumps(payload).encode("utf-8")
        self.closed = False

    def json(self) -> object:
        return jsonlib.loads(self.content.decode("utf-8"))

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, routes: dict[tuple[str, str], object]) -> None:
        self.routes = routes
        self.calls: list[dict[str, object]] = []
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def request(self, method: str, url: str, **kwargs: object) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        return self._respond(method, url)

    def post(self, url: str, **kwargs: object) -> FakeResponse:
        self.calls.append({"method": "POST", "url": url, **kwargs})
        return self._respond("POST", url)

    def _respond(self, method: str, url: str) -> FakeResponse:
        path = url.removeprefix("http://localhost:4096")
        outcome = self.routes.get((method, path))
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, FakeResponse):
            return outcome
        if outcome is None:
            return FakeResponse(404, {"error": "not found"})
        return FakeResponse(200, outcome)


def _client(routes: dict[tuple[str, str], object]) -> tuple[SessionServerClient, FakeSession]:
    session = FakeSession(routes)
    client = SessionServerClient(
        "http://localhost:4096/",
        session=cast(requests.Session, session),
        timeout_seconds=3,
        message_timeout_seconds=1,
    )
    return client, session


_PROJECT = {
    "id": "proj_1",
    "worktree": "/code/backend",
    "sandboxes": ["/code/backend-wt/issue-1"],
    "time": {"created": 1700000000000},
}


def test_get_current_project_parses_healthy_project() -> None:
    client, session = _client({("GET", "/project/current"): _PROJECT})

    project = client.get_current_project()

    assert project is not None
    assert project.project_id == "proj_1"
    assert project.worktree == "/code/backend"
    assert project.sandboxes == ("/code/backend-wt/issue-1",)
    assert session.calls[0]["timeout"] == 3
    assert client.base_url == "http://localhost:4096"


@pytest.mark.parametrize(
    "payload",
    [
        {"worktree": "/code", "time": {"created": 1}},
        {"id": "p", "worktree": "/code"},
        {"id": "p", "time": {"created": "yesterday"}},
        ["not", "an", "object"],
    ],
)
def test_parse_project_rejects_incomplete_payloads(payload: object) -> None:
    assert parse_project(payload) is None


def test_unreachable_and_malformed_responses_become_none() -> None:
    client, _ = _client({("GET", "/project/current"): requests.ConnectionError("refused")})
    assert client.get_current_project() is None

    html_client, _ = _client(
        {("GET", "/project/current"): FakeResponse(200, body="<html>stale</html>")}
    )
    assert html_client.get_current_project() is None

    error_client, _ = _client({("GET", "/project/current"): FakeResponse(500, {"error": "x"})})
    assert error_client.get_current_project() is None


def test_project_for_directory_prefers_project_with_sandboxes() -> None:
    bare = {**_PROJECT, "id": "proj_bare", "sandboxes": []}
    client, _ = _client({("GET", "/project"): [bare, _PROJECT, {"id": "broken"}]})

    project = client.project_for_directory("/code/backend")

    assert project is not None
    assert project.project_id == "proj_1"
    assert client.project_for_directory("/elsewhere") is None


def test_list_sessions_applies_statuses_and_directory_filter() -> None:
    client, session = _client(
        {
            ("GET", "/session"): [
                {"id": "s1", "directory": "/code/backend", "title": "One", "time": {"updated": 10}},
                {"id": "s2", "directory": "/code/backend", "time": {"updated": 20, "archived": 30}},
                {"id": "s3", "directory": "/code/other", "time": {"updated": 40}},
                {"id": "s4", "directory": "/code/backend", "time": {"updated": 50, "archived": 0}},
                {"title": "no id"},
            ],
            ("GET", "/session/status"): {"s1": {"type": "busy"}, "s2": {"type": "idle"}},
        }
    )

    sessions = client.list_sessions("/code/backend")

    assert [item.session_id for item in sessions] == ["s1", "s2", "s4"]
    assert sessions[0].status == "busy"
    assert sessions[0].is_busy
    assert sessions[1].is_archived
    assert not sessions[2].is_archived
    assert session.calls[0]["params"] == {"directory": "/code/backend", "roots": "true"}


def test_create_session_and_update_title() -> None:
    client, session = _client(
        {
            ("POST", "/session"): {"id": "ses_new", "directory": "/code/backend", "time": {"created": 5}},
            ("PATCH", "/session/ses_new"): {"id": "ses_new"},
        }
    )

    created = client.create_session("/code/backend")
    assert created is not None
    assert created.session_id == "ses_new"
    assert created.updated == 5.0
    assert client.update_session_title("ses_new", "Fix bug", directory="/code/backend") is True

    patch_call = session.calls[1]
    assert patch_call["json"] == {"title": "Fix bug"}
    assert patch_call["params"] == {"directory": "/code/backend"}


def test_post_message_success_and_failure() -> None:
    ok = FakeResponse(200, {"info": {}})
    client, session = _client({("POST", "/session/s1/message"): ok})

    assert client.post_message("s1", {"parts": []}, directory="/code") is True
    assert ok.closed is True
    assert session.calls[0]["stream"] is True
    assert session.calls[0]["timeout"] == (3, 1)

    failing, _ = _client({("POST", "/session/s1/message"): FakeResponse(500, {"error": "boom"})})
    assert failing.post_message("s1", {"parts": []}, directory="/code") is False

    down, _ = _client({("POST", "/session/s1/message"): requests.ConnectionError("refused")})
    assert down.post_message("s1", {"parts": []}, directory="/code") is False


def test_post_message_read_timeout_counts_as_accepted() -> None:
    client, _ = _client({("POST", "/session/s1/message"): requests.ReadTimeout("slow")})

    assert client.post_message("s1", {"parts": []}, directory="/code") is True


def test_worktree_listing_and_creation() -> None:
    client, session = _client(
        {
            ("GET", "/experimental/worktree"): ["/code/backend-wt/issue-1", {"directory": "/x/y"}, 3],
            ("POST", "/experimental/worktree"): {"name": "issue-2", "directory": "/code/backend-wt/issue-2"},
        }
    )

    worktrees = client.list_worktrees("/code/backend")
    created = client.create_worktree("/code/backend", "issue-2")

    assert [(w.name, w.directory) for w in worktrees] == [
        ("issue-1", "/code/backend-wt/issue-1"),
        ("y", "/x/y"),
    ]
    assert created is not None
    assert created.directory == "/code/backend-wt/issue-2"
    assert session.calls[1]["json"] == {"name": "issue-2"}
    assert session.calls[1]["params"] == {"directory": "/code/backend"}


def test_parse_helpers_handle_garbage() -> None:
    assert parse_session("nope", statuses={}) is None
    assert parse_worktree({"name": "x"}) is None
    assert parse_worktree("") is None


def test_close_releases_underlying_session() -> None:
    client, session = _client({})

    client.close()

    assert session.closed


def test_client_pool_reuses_one_client_per_url_and_closes_all(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sessions: list[FakeSession] = []

    def fake_session() -> FakeSession:
        sessions.append(FakeSession({}))
        return sessions[-1]

    monkeypatch.setattr(requests, "Session", fake_session)

    with SessionServerClientPool(timeout_seconds=2, message_timeout_seconds=4) as pool:
        first = pool("http://localhost:4096/")
        assert pool("http://localhost:4096") is first
        second = pool("http://localhost:4097")
        assert second is not first
        assert first.base_url == "http://localhost:4096"

    assert len(sessions) == 2
    assert all(session.closed for session in sessions)
