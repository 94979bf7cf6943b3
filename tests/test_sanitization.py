from __future__ import annotations

import allure

from taskweave.orchestrator.sanitization import sanitize_summary, summarize_exception

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("Failure Classification"),
]


def test_sanitize_redacts_secrets_and_emails() -> None:
    text = "call failed: Authorization Bearer abcdefghijkl api_key=XYZ123 owner=ops@example.com"

    sanitized = sanitize_summary(text)

    assert "abcdefghijkl" not in sanitized
    assert "XYZ123" not in sanitized
    assert "ops@example.com" not in sanitized
    assert "[redacted-email]" in sanitized


def test_sanitize_redacts_url_query_tokens() -> None:
    sanitized = sanitize_summary("GET https://api.example.com/v1?signature=s3cr3t&page=2 failed")

    assert "s3cr3t" not in sanitized
    assert "page=2" in sanitized


def test_sanitize_keeps_first_line_and_clamps() -> None:
    sanitized = sanitize_summary("first line\nTraceback (most recent call last):\n  File x", max_chars=8)

    assert sanitized == "first..."


def test_summarize_exception_includes_type_name() -> None:
    assert summarize_exception(KeyError()) == "KeyError"
    assert summarize_exception(RuntimeError("  boom  \nmore")) == "RuntimeError: boom"
