import json

import pytest

from websets.application.services.prompt_builder import (
    build_messages,
    build_search_query,
    parse_extraction,
    row_context,
)
from websets.domain.errors import PermanentProviderError
from websets.domain.webset import Citation, ColumnDefinition, ColumnType, Webset, WebsetCell


def _webset() -> Webset:
    return Webset(
        id="ws1",
        name="Leads",
        description="B2B prospects",
        columns=[
            ColumnDefinition(id="company", name="Company"),
            ColumnDefinition(id="email", name="Email", type=ColumnType.EMAIL),
        ],
        row_count=2,
    )


def _cell(row, column, value):
    return WebsetCell(id=f"{row}-{column}", webset_id="ws1", row=row, column=column, value=value)


def test_parse_plain_json():
    extraction = parse_extraction('{"value": " info@acme.example ", "confidence": 0.8, "explanation": "site"}')
    assert extraction.value == "info@acme.example"
    assert extraction.confidence == 0.8
    assert extraction.explanation == "site"


def test_parse_json_inside_code_fence():
    raw = 'Here you go:\n```json\n{"value": "42", "confidence": "0.5"}\n```'
    extraction = parse_extraction(raw)
    assert extraction.value == "42"
    assert extraction.confidence == 0.5


def test_plain_text_answer_becomes_value():
    extraction = parse_extraction("  Acme Corporation  ")
    assert extraction.value == "Acme Corporation"
    assert extraction.confidence is None


def test_empty_answer_is_permanent_failure():
    with pytest.raises(PermanentProviderError):
        parse_extraction("   ")


@pytest.mark.parametrize("raw,expected", [(1.7, 1.0), (-0.2, 0.0), ("oops", None)])
def test_confidence_is_clamped(raw, expected):
    extraction = parse_extraction(json.dumps({"value": "x", "confidence": raw}))
    assert extraction.confidence == expected


def test_row_context_skips_target_and_empty_cells():
    cells = [
        _cell(0, "company", "Acme"),
        _cell(0, "email", "old@acme.example"),
        _cell(1, "company", "Globex"),
        _cell(0, "ghost", "orphan"),
    ]
    assert row_context(_webset(), cells, 0, exclude="email") == {"Company": "Acme"}
    assert row_context(_webset(), cells, 1) == {"Company": "Globex"}


def test_messages_carry_context_type_hint_and_sources():
    webset = _webset()
    column = webset.columns[1]
    citations = [Citation(url="https://acme.example/contact", title="Contact", content_snippet="mail us")]

    messages = build_messages(
        webset=webset,
        column=column,
        context={"Company": "Acme"},
        citations=citations,
        prompt="Find the sales inbox",
    )

    assert [m["role"] for m in messages] == ["system", "user"]
    user = messages[1]["content"]
    assert "Target column: Email (a single email address)" in user
    assert "- Company: Acme" in user
    assert "Task: Find the sales inbox" in user
    assert "[1] Contact (https://acme.example/contact)" in user


def test_search_query_prefers_prompt():
    column = ColumnDefinition(id="email", name="Email")
    assert build_search_query(column, {"Company": "Acme"}) == "Email Acme"
    assert build_search_query(column, {"Company": "Acme"}, "contact email for") == "contact email for Acme"
