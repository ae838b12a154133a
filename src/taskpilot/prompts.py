from __future__ import annotations

import logging
from pathlib import Path

from taskpilot.fields import expand_template, render_value
from taskpilot.models import Item
from taskpilot.observability import log_event


LOGGER = logging.getLogger("taskpilot.prompts")


def build_prompt(template_name: str, item: Item, templates_dir: Path) -> str:
    template_path = templates_dir / f"{template_name}.md"
    try:
        template = template_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log_event(
            LOGGER,
            "prompt_template_missing",
            template=template_name,
            templates_dir=templates_dir,
        )
        return _fallback_prompt(item)
    return expand_template(template, item)


def build_session_title(template: str | None, item: Item) -> str:
    if template:
        return expand_template(template, item)
    title = item.get("title")
    if isinstance(title, str) and title:
        return title
    return f"session-{render_value(item.get('id', 'unknown'))}"


def _fallback_prompt(item: Item) -> str:
    parts = [
        render_value(item[key]) for key in ("title", "body") if item.get(key)
    ]
    return "\n\n".join(parts)
