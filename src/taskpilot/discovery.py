from __future__ import annotations

from collections.abc import Callable, Sequence
import logging
import os
import re
import shutil

from taskpilot.models import ProjectInfo
from taskpilot.observability import log_event
from taskpilot.server_client import SessionServerClient
from taskpilot.shell import CommandError, run


LOGGER = logging.getLogger("taskpilot.discovery")

_LISTEN_PORT = re.compile(r":(\d+)\s+\(LISTEN\)")
_SANDBOX_BONUS = 1000
_EXACT_ROOT_BONUS = 500
_GLOBAL_ROOT = "/"

PortLister = Callable[[], Sequence[int]]
ClientFactory = Callable[[str], SessionServerClient]


def list_server_ports(*, process_name: str = "opencode", timeout_seconds: float = 30.0) -> list[int]:
    """Return ports that a session server process is listening on, per ``lsof``."""
    lsof = shutil.which("lsof") or "/usr/sbin/lsof"
    try:
        output = run([lsof, "-i", "-P"], check=False, timeout_seconds=timeout_seconds)
    except CommandError as exc:
        log_event(LOGGER, "port_scan_failed", error=str(exc))
        return []

    listener = re.compile(rf"{re.escape(process_name)}.*LISTEN")
    ports: list[int] = []
    for line in output.splitlines():
        if not listener.search(line):
            continue
        match = _LISTEN_PORT.search(line)
        if match:
            port = int(match.group(1))
            if port not in ports:
                ports.append(port)
    return ports


def server_url(port: int) -> str:
    return f"http://localhost:{port}"


def path_match_score(target_dir: str, project: ProjectInfo) -> int:
    """Score how specifically ``project`` covers ``target_dir``; 0 means no match."""
    target = os.path.abspath(target_dir)
    for sandbox in project.sandboxes:
        normalized = os.path.abspath(sandbox)
        if _is_within(target, normalized):
            return len(normalized) + _SANDBOX_BONUS

    root = os.path.abspath(project.worktree or _GLOBAL_ROOT)
    if target == root:
        return len(root) + _EXACT_ROOT_BONUS
    if _is_within(target, root):
        return len(root)
    return 0


def discover_server(
    target_dir: str,
    *,
    get_ports: PortLister = list_server_ports,
    client_factory: ClientFactory = SessionServerClient,
    preferred_port: int | None = None,
) -> str | None:
    ports = list(get_ports())
    if not ports:
        log_event(LOGGER, "server_discovery_empty", target_dir=target_dir)
        return None

    if preferred_port is not None and preferred_port in ports:
        url = server_url(preferred_port)
        if client_factory(url).get_current_project() is not None:
            log_event(LOGGER, "server_discovered", url=url, reason="preferred_port")
            return url

    best_url: str | None = None
    best_score = 0
    global_url: str | None = None
    for port in ports:
        url = server_url(port)
        project = client_factory(url).get_current_project()
        if project is None:
            log_event(LOGGER, "server_skipped_unhealthy", url=url)
            continue
        if (project.worktree or _GLOBAL_ROOT) == _GLOBAL_ROOT:
            global_url = global_url or url
            continue
        score = path_match_score(target_dir, project)
        if score > best_score:
            best_score = score
            best_url = url

    chosen = best_url or global_url
    log_event(
        LOGGER,
        "server_discovered",
        target_dir=target_dir,
        url=chosen,
        score=best_score,
        global_fallback=best_url is None and chosen is not None,
    )
    return chosen


def _is_within(target: str, root: str) -> bool:
    if target == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return target.startswith(prefix)
