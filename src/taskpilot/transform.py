from __future__ import annotations

from collections.abc import Iterable, Mapping
import hashlib
import json
import logging
import re

from taskpilot.fields import expand_template, resolve
from taskpilot.models import Item
from taskpilot.observability import log_event


LOGGER = logging.getLogger("taskpilot.transform")
_GITHUB_ITEM_URL = re.compile(r"github\.com/([\w.-]+/[\w.-]+)/(?:issues|pull)/(\d+)")
_LINEAR_IDENTIFIER = re.compile(r"\b([A-Z][A-Z0-9]+-\d+)\b")


def apply_mappings(record: Item, mappings: Mapping[str, str] | None) -> Item:
    if not mappings:
        return record
    mapped: Item = dict(record)
    for dest_key, source_ref in mappings.items():
        mapped[dest_key] = resolve(record, source_ref)
    return mapped


def expand_item_id(template: str, record: Item) -> str:
    return expand_template(template, record)


def fallback_item_id(record: Item) -> str:
    # Same record, same id. Sources polled more than once should set item_id.
    canonical = json.dumps(record, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"item-{digest}"


def transform_items(records: Iterable[Item], id_template: str | None) -> list[Item]:
    items: list[Item] = []
    for record in records:
        existing_id = record.get("id")
        if id_template:
            item_id = expand_item_id(id_template, record)
        elif existing_id is not None and existing_id != "":
            item_id = str(existing_id)
        else:
            item_id = fallback_item_id(record)
        items.append({**record, "id": item_id})
    return items


def parse_tool_output(text: str, *, response_key: str | None = None, source: str = "") -> list[Item]:
    if not text or not text.strip():
        return []
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        log_event(
            LOGGER,
            "tool_output_invalid_json",
            source=source,
            error=str(exc),
        )
        return []

    if isinstance(payload, list):
        return [entry for entry in payload if isinstance(entry, dict)]
    if not isinstance(payload, dict):
        return []
    if response_key is not None:
        nested = resolve(payload, response_key)
        if isinstance(nested, list):
            return [entry for entry in nested if isinstance(entry, dict)]
    return [payload]


def compute_dedup_keys(item: Item) -> list[str]:
    """Keys identifying the same work across sources.

    A GitHub URL yields ``github:owner/repo#N``. A Linear identifier, either
    the item's own or one mentioned in a PR title or branch name, yields
    ``linear:ID``.
    """
    keys: list[str] = []
    for url_key in ("html_url", "url"):
        url = item.get(url_key)
        match = _GITHUB_ITEM_URL.search(url) if isinstance(url, str) else None
        if match is not None:
            keys.append(f"github:{match.group(1).lower()}#{match.group(2)}")
            break

    identifier = item.get("identifier")
    if isinstance(identifier, str) and _LINEAR_IDENTIFIER.fullmatch(identifier):
        keys.append(f"linear:{identifier}")
    title = item.get("title")
    if isinstance(title, str):
        keys.extend(f"linear:{found}" for found in _LINEAR_IDENTIFIER.findall(title))
    # Branch names are usually lowercased, e.g. eng-12-fix-login.
    branch = item.get("headRefName")
    if isinstance(branch, str):
        keys.extend(f"linear:{found}" for found in _LINEAR_IDENTIFIER.findall(branch.upper()))
    return list(dict.fromkeys(keys))
