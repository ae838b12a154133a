from __future__ import annotations

import pytest

from taskpilot.observability import configure_logging
from taskpilot.transform import (
    apply_mappings,
    compute_dedup_keys,
    expand_item_id,
    fallback_item_id,
    parse_tool_output,
    transform_items,
)


def test_apply_mappings_adds_mapped_keys_and_keeps_originals() -> None:
    record = {
        "number": 5,
        "url": "https://github.com/myorg/backend/issues/5",
        "author": {"login": "alice"},
    }

    mapped = apply_mappings(
        record,
        {"html_url": "url", "user": "author", "repo_name": r"url:/github\.com\/([^/]+\/[^/]+)/"},
    )

    assert mapped["number"] == 5
    assert mapped["html_url"] == record["url"]
    assert mapped["user"] == {"login": "alice"}
    assert mapped["repo_name"] == "myorg/backend"
    assert "html_url" not in record


def test_apply_mappings_can_shadow_original_fields() -> None:
    mapped = apply_mappings({"state": "OPEN", "status": "open"}, {"state": "status"})
    assert mapped["state"] == "open"


def test_apply_mappings_without_table_returns_record_unchanged() -> None:
    record = {"id": "x"}
    assert apply_mappings(record, None) is record
    assert apply_mappings(record, {}) is record


def test_expand_item_id_leaves_unresolved_placeholder() -> None:
    record = {"repository": {"full_name": "myorg/backend"}, "number": 123}

    assert expand_item_id("github:{repository.full_name}#{number}", record) == (
        "github:myorg/backend#123"
    )
    assert expand_item_id("github:{repository.full_name}#{number}", {"number": 123}) == (
        "github:{repository.full_name}#123"
    )


def test_transform_items_prefers_template_then_existing_id_then_fallback() -> None:
    records = [
        {"id": 7, "number": 1},
        {"number": 2},
    ]

    templated = transform_items(records, "issue-{number}")
    assert [item["id"] for item in templated] == ["issue-1", "issue-2"]

    untemplated = transform_items(records, None)
    assert untemplated[0]["id"] == "7"
    assert str(untemplated[1]["id"]).startswith("item-")
    assert untemplated[1]["number"] == 2


def test_fallback_item_id_is_stable_and_key_order_independent() -> None:
    first = fallback_item_id({"title": "Fix", "number": 3})
    second = fallback_item_id({"number": 3, "title": "Fix"})
    other = fallback_item_id({"number": 4, "title": "Fix"})

    assert first == second
    assert first != other
    assert len(first) == len("item-") + 16


def test_parse_tool_output_shapes() -> None:
    assert parse_tool_output('[{"id": "a"}, {"id": "b"}, 3]') == [{"id": "a"}, {"id": "b"}]
    assert parse_tool_output('{"issues": [{"id": "a"}]}', response_key="issues") == [{"id": "a"}]
    assert parse_tool_output('{"data": {"nodes": [{"id": "n"}]}}', response_key="data.nodes") == [
        {"id": "n"}
    ]
    assert parse_tool_output('{"id": "single"}') == [{"id": "single"}]
    assert parse_tool_output('{"id": "single"}', response_key="issues") == [{"id": "single"}]
    assert parse_tool_output("42") == []


@pytest.mark.parametrize("text", ["", "   \n", "not json", "{broken"])
def test_parse_tool_output_invalid_or_empty_yields_empty_list(text: str) -> None:
    assert parse_tool_output(text, source="my-issues") == []


def test_parse_tool_output_logs_invalid_json(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(2)

    assert parse_tool_output("<html>", source="my-issues") == []

    stderr = capsys.readouterr().err
    assert "event=tool_output_invalid_json" in stderr
    assert "source=my-issues" in stderr
    configure_logging(0)


def test_compute_dedup_keys_links_github_and_linear_items() -> None:
    pull_request = {
        "html_url": "https://github.com/MyOrg/Backend/pull/42",
        "title": "ENG-12: fix login redirect",
        "headRefName": "eng-12-fix-login",
    }
    linear_issue = {"identifier": "ENG-12", "url": "https://linear.app/acme/issue/ENG-12"}

    assert compute_dedup_keys(pull_request) == ["github:myorg/backend#42", "linear:ENG-12"]
    assert compute_dedup_keys(linear_issue) == ["linear:ENG-12"]
    assert compute_dedup_keys({"title": "no references here"}) == []
