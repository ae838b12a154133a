"""Built-in source presets.

A preset is a partial ``[[sources]]`` table. User settings are layered on top
of it with ``merge_preset``.
"""

from __future__ import annotations

import copy
from typing import Final


_GH_ISSUE_FIELDS: Final[str] = (
    "number,title,body,url,labels,state,updatedAt,createdAt,repository,author"
)
_GH_PR_FIELDS: Final[str] = (
    "number,title,body,url,labels,state,updatedAt,createdAt,repository,author,isDraft"
)
_GH_MAPPINGS: Final[dict[str, str]] = {
    "html_url": "url",
    "updated_at": "updatedAt",
    "created_at": "createdAt",
    "repository_full_name": "repository.nameWithOwner",
    "user": "author",
}

_PRESETS: Final[dict[str, dict[str, object]]] = {
    "github/my-issues": {
        "tool": {
            "command": [
                "gh", "search", "issues", "--assignee=@me", "--state=open",
                "--limit", "{limit}", "--json", _GH_ISSUE_FIELDS,
            ],
        },
        "args": {"limit": 50},
        "mappings": _GH_MAPPINGS,
        "item_id": "{html_url}",
        "repo": "{repository.nameWithOwner}",
        "session_name": "{title}",
    },
    "github/review-requests": {
        "tool": {
            "command": [
                "gh", "search", "prs", "--review-requested=@me", "--state=open",
                "--limit", "{limit}", "--json", _GH_PR_FIELDS,
            ],
        },
        "args": {"limit": 50},
        "mappings": _GH_MAPPINGS,
        "item_id": "{html_url}",
        "repo": "{repository.nameWithOwner}",
        "prompt": "review",
        "session_name": "Review: {title}",
    },
    "github/my-prs-attention": {
        "tool": {
            "command": [
                "gh", "search", "prs", "--author=@me", "--state=open",
                "--limit", "{limit}", "--json", _GH_PR_FIELDS,
            ],
        },
        "args": {"limit": 50},
        "mappings": _GH_MAPPINGS,
        "item_id": "{html_url}",
        "repo": "{repository.nameWithOwner}",
        "filter_bot_comments": True,
        "enrich_mergeable": True,
        "readiness": {"require_attention": True},
    },
}


def get_preset(name: str) -> dict[str, object] | None:
    preset = _PRESETS.get(name)
    if preset is None:
        return None
    return copy.deepcopy(preset)


def list_presets() -> tuple[str, ...]:
    return tuple(sorted(_PRESETS))


def merge_preset(preset: dict[str, object], user: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = {**preset, **user}
    merged.pop("preset", None)
    for nested_key in ("args", "mappings", "readiness"):
        preset_value = preset.get(nested_key)
        user_value = user.get(nested_key)
        if isinstance(preset_value, dict) and isinstance(user_value, dict):
            merged[nested_key] = {**preset_value, **user_value}
    return merged


def expand_github_shorthand(query: str, user: dict[str, object]) -> dict[str, object]:
    expanded: dict[str, object] = {
        "tool": {
            "command": [
                "gh", "search", "issues", "{q}", "--limit", "{limit}",
                "--json", _GH_ISSUE_FIELDS,
            ],
        },
        "args": {"q": query, "limit": 50},
        "mappings": dict(_GH_MAPPINGS),
        "item_id": "{html_url}",
        "repo": "{repository.nameWithOwner}",
    }
    merged = merge_preset(expanded, user)
    merged.pop("github", None)
    return merged
