"""GitHub enrichments that readiness gates and attention depend on.

``_comments`` holds the issue comments (plus review comments for pull
requests) and ``_mergeable`` holds ``gh pr view``'s mergeable state. A failed
lookup leaves the item without that key.
"""

from __future__ import annotations

import json
import logging
import re

from taskpilot.fields import get_nested_value
from taskpilot.models import Item
from taskpilot.observability import log_event, log_warning_event
from taskpilot.shell import CommandError, run


LOGGER = logging.getLogger("taskpilot.enrichment")
_GITHUB_URL = re.compile(r"github\.com/([\w.-]+/[\w.-]+)/(issues|pull)/(\d+)")


class GitHubEnricher:
    def __init__(self, *, timeout_seconds: float | None = 60.0) -> None:
        self._timeout_seconds = timeout_seconds

    def enrich(
        self, item: Item, *, comments: bool, mergeable: bool, source_name: str = ""
    ) -> Item:
        target = github_target(item)
        if target is None:
            return item
        repo, number, is_pull = target

        enriched = dict(item)
        if comments:
            found = self._comments(repo, number, is_pull=is_pull, source_name=source_name)
            if found is not None:
                enriched["_comments"] = found
        if mergeable and is_pull:
            state = self._mergeable(repo, number, source_name=source_name)
            if state is not None:
                enriched["_mergeable"] = state
        log_event(
            LOGGER,
            "item_enriched",
            source=source_name,
            repo=repo,
            number=number,
            has_comments="_comments" in enriched,
            mergeable=enriched.get("_mergeable"),
        )
        return enriched

    def _comments(
        self, repo: str, number: int, *, is_pull: bool, source_name: str
    ) -> list[object] | None:
        paths = [f"repos/{repo}/issues/{number}/comments?per_page=100"]
        if is_pull:
            paths.append(f"repos/{repo}/pulls/{number}/comments?per_page=100")
        comments: list[object] = []
        for path in paths:
            payload = self._gh_json(
                ["gh", "api", path], source_name=source_name, repo=repo, number=number
            )
            if not isinstance(payload, list):
                return None
            comments.extend(entry for entry in payload if isinstance(entry, dict))
        return comments

    def _mergeable(self, repo: str, number: int, *, source_name: str) -> str | None:
        payload = self._gh_json(
            ["gh", "pr", "view", str(number), "--repo", repo, "--json", "mergeable"],
            source_name=source_name,
            repo=repo,
            number=number,
        )
        state = payload.get("mergeable") if isinstance(payload, dict) else None
        return state if isinstance(state, str) else None

    def _gh_json(
        self, argv: list[str], *, source_name: str, repo: str, number: int
    ) -> object | None:
        try:
            return json.loads(run(argv, timeout_seconds=self._timeout_seconds))
        except (CommandError, ValueError) as exc:
            log_warning_event(
                LOGGER,
                "item_enrichment_failed",
                source=source_name,
                repo=repo,
                number=number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None


def github_target(item: Item) -> tuple[str, int, bool] | None:
    """Return ``(owner/repo, number, is_pull_request)`` for a GitHub item."""
    url = item.get("html_url") or item.get("url")
    if isinstance(url, str):
        match = _GITHUB_URL.search(url)
        if match is not None:
            return match.group(1), int(match.group(3)), match.group(2) == "pull"

    repo = get_nested_value(item, "repository.nameWithOwner") or item.get("repository_full_name")
    number = item.get("number")
    if isinstance(repo, str) and repo and isinstance(number, int) and not isinstance(number, bool):
        return repo, number, "isDraft" in item or "pull_request" in item
    return None
