"""Readiness gates deciding whether an item should be acted on now.

Gates run in a fixed order (labels, dependencies, bot comments, fields,
mergeable, attention) and the first failing gate decides the outcome. A gate
without configuration passes. Only the attention gate requires its enrichment:
when asked for, an item without a computed ``_has_attention`` is not ready.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
import re
from typing import TypeVar

from taskpilot.fields import get_nested_value
from taskpilot.models import Item, ReadinessResult


_T = TypeVar("_T")
_CONFLICT_STATES = frozenset({"conflicting", "dirty"})
_READY = ReadinessResult(ready=True)
_DEPENDENCY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"blocked by (?:[\w-]+/[\w.-]+)?#\d+",
        r"depends on (?:[\w-]+/[\w.-]+)?#\d+",
        r"requires #\d+",
        r"waiting (?:on|for) #\d+",
        r"after #\d+",
    )
)
_UNCHECKED_TASK = re.compile(r"^\s*[-*]\s*\[ \]", re.MULTILINE)
_CHECKED_TASK = re.compile(r"^\s*[-*]\s*\[x\]", re.MULTILINE | re.IGNORECASE)
_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class ReadinessConfig:
    exclude_labels: tuple[str, ...] | None = None
    required_labels: tuple[str, ...] | None = None
    any_of_labels: tuple[str, ...] | None = None
    fields: dict[str, object] | None = field(default=None, compare=False)
    require_conflicts: bool | None = None
    require_attention: bool | None = None
    check_dependencies: bool | None = None
    priority_labels: tuple[tuple[str, float], ...] | None = None
    priority_age_weight: float | None = None

    def overlay(self, override: ReadinessConfig | None) -> ReadinessConfig:
        """Return a copy where every setting configured on ``override`` wins."""
        if override is None:
            return self
        return ReadinessConfig(
            exclude_labels=_pick(override.exclude_labels, self.exclude_labels),
            required_labels=_pick(override.required_labels, self.required_labels),
            any_of_labels=_pick(override.any_of_labels, self.any_of_labels),
            fields=_pick(override.fields, self.fields),
            require_conflicts=_pick(override.require_conflicts, self.require_conflicts),
            require_attention=_pick(override.require_attention, self.require_attention),
            check_dependencies=_pick(override.check_dependencies, self.check_dependencies),
            priority_labels=_pick(override.priority_labels, self.priority_labels),
            priority_age_weight=_pick(override.priority_age_weight, self.priority_age_weight),
        )


def check_labels(item: Item, config: ReadinessConfig) -> ReadinessResult:
    labels = label_names(item)

    for blocked in config.exclude_labels or ():
        if blocked.lower() in labels:
            return ReadinessResult(ready=False, reason=f"Has blocking label: {blocked}")

    for required in config.required_labels or ():
        if required.lower() not in labels:
            return ReadinessResult(ready=False, reason=f"Missing required label: {required}")

    any_of = config.any_of_labels or ()
    if any_of and not any(label.lower() in labels for label in any_of):
        return ReadinessResult(
            ready=False,
            reason=f"Missing one of required labels: {', '.join(any_of)}",
        )
    return _READY


def check_dependencies(item: Item, config: ReadinessConfig) -> ReadinessResult:
    """Block items whose body references other work or has open subtasks."""
    if not config.check_dependencies:
        return _READY
    body = item.get("body")
    if not isinstance(body, str) or not body:
        return _READY

    references = [
        match.group(0).lower()
        for match in (pattern.search(body) for pattern in _DEPENDENCY_PATTERNS)
        if match is not None
    ]
    if references:
        return ReadinessResult(
            ready=False,
            reason=f"Has dependency references: {', '.join(references)}",
        )

    unchecked = len(_UNCHECKED_TASK.findall(body))
    checked = len(_CHECKED_TASK.findall(body))
    # A single checkbox is a todo, not a tracking list.
    if unchecked and unchecked + checked > 1:
        return ReadinessResult(ready=False, reason=f"Has {unchecked} unchecked subtasks")
    return _READY


def check_bot_comments(item: Item, config: ReadinessConfig) -> ReadinessResult:
    _ = config
    comments = item.get("_comments")
    if not isinstance(comments, list) or not comments:
        return _READY

    author = _normalize_login(get_nested_value(item, "user.login"))
    for comment in comments:
        if is_bot_comment(comment):
            continue
        login = _normalize_login(get_nested_value(comment, "user.login"))
        if author and login == author:
            continue
        return _READY
    return ReadinessResult(
        ready=False,
        reason="Only bot or author comments, no human feedback to act on",
    )


def check_fields(item: Item, config: ReadinessConfig) -> ReadinessResult:
    for key, expected in (config.fields or {}).items():
        if key not in item:
            return ReadinessResult(ready=False, reason=f"Field {key} is missing")
        actual = item[key]
        if type(actual) is not type(expected) or actual != expected:
            return ReadinessResult(
                ready=False,
                reason=f"Field {key} is {actual!r}, expected {expected!r}",
            )
    return _READY


def check_mergeable(item: Item, config: ReadinessConfig) -> ReadinessResult:
    if not config.require_conflicts:
        return _READY
    mergeable = item.get("_mergeable")
    if not isinstance(mergeable, str):
        return _READY
    if mergeable.lower() in _CONFLICT_STATES:
        return _READY
    return ReadinessResult(
        ready=False,
        reason=f"PR has no merge conflicts (mergeable: {mergeable})",
    )


def check_attention(item: Item, config: ReadinessConfig) -> ReadinessResult:
    if not config.require_attention:
        return _READY
    has_attention = item.get("_has_attention")
    if has_attention is True:
        return _READY
    if not isinstance(has_attention, bool):
        return ReadinessResult(
            ready=False,
            reason="Attention not computed (needs comment and mergeable enrichment)",
        )
    return ReadinessResult(
        ready=False,
        reason="PR has no attention needed (no conflicts or human feedback)",
    )


_GATES: tuple[Callable[[Item, ReadinessConfig], ReadinessResult], ...] = (
    check_labels,
    check_dependencies,
    check_bot_comments,
    check_fields,
    check_mergeable,
    check_attention,
)


def evaluate_readiness(item: Item, config: ReadinessConfig | None) -> ReadinessResult:
    effective = config if config is not None else ReadinessConfig()
    for gate in _GATES:
        result = gate(item, effective)
        if not result.ready:
            return result
    return _READY


def calculate_priority(item: Item, config: ReadinessConfig | None, *, now: datetime) -> float:
    """Score an item for dispatch order: label weights plus age in days times ``age_weight``."""
    if config is None:
        return 0.0
    labels = label_names(item)
    score = sum(weight for label, weight in config.priority_labels or () if label.lower() in labels)

    age_weight = config.priority_age_weight or 0.0
    created_at = item.get("created_at")
    if age_weight > 0 and isinstance(created_at, str):
        created = _parse_created_at(created_at)
        if created is not None:
            age_days = max((now - created).total_seconds(), 0.0) / _SECONDS_PER_DAY
            score += age_days * age_weight
    return round(score, 2)


def compute_attention(item: Item) -> Item:
    """Derive ``_has_attention`` from mergeable and comment enrichments.

    Items missing either enrichment are returned unchanged, and the attention
    gate then reports them as not ready.
    """
    mergeable = item.get("_mergeable")
    comments = item.get("_comments")
    if not isinstance(mergeable, str) or not isinstance(comments, list):
        return item

    has_conflicts = mergeable.lower() in _CONFLICT_STATES
    has_feedback = bool(comments) and check_bot_comments(item, ReadinessConfig()).ready
    reasons = [
        name for name, flag in (("Conflicts", has_conflicts), ("Feedback", has_feedback)) if flag
    ]
    return {
        **item,
        "_has_attention": bool(reasons),
        "_attention_label": "+".join(reasons) if reasons else "PR",
    }


def label_names(item: Item) -> set[str]:
    raw_labels = item.get("labels")
    if not isinstance(raw_labels, list | tuple):
        return set()
    names: set[str] = set()
    for entry in raw_labels:
        if isinstance(entry, str):
            names.add(entry.lower())
        elif isinstance(entry, dict):
            name = entry.get("name")
            if isinstance(name, str):
                names.add(name.lower())
    return names


def is_bot_login(login: str) -> bool:
    normalized = login.strip().lower()
    return normalized.endswith("[bot]")


def is_bot_comment(comment: object) -> bool:
    login = get_nested_value(comment, "user.login")
    if isinstance(login, str) and is_bot_login(login):
        return True
    return get_nested_value(comment, "user.type") == "Bot"


def _normalize_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _parse_created_at(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else None


def _pick(preferred: _T | None, fallback: _T | None) -> _T | None:
    return preferred if preferred is not None else fallback
