from __future__ import annotations

from datetime import datetime, timezone

from taxcalendar.services.audit import RequestContext, clean_metadata


def test_credentials_are_redacted_and_free_text_summarized() -> None:
    cleaned = clean_metadata(
        {
            "Authorization": "Bearer txck_abc",
            "note": "paid via bank transfer",
            "fields": ("due_offset_days", "title"),
            "nested": {"refresh_token": "x", "document_id": "doc-1"},
            "from": datetime(2025, 1, 1, tzinfo=timezone.utc),
        }
    )
    assert cleaned == {
        "Authorization": "[REDACTED]",
        "note_length": 22,
        "fields": ["due_offset_days", "title"],
        "nested": {"refresh_token": "[REDACTED]", "document_id": "doc-1"},
        "from": "2025-01-01T00:00:00+00:00",
    }


def test_non_string_free_text_values_are_kept() -> None:
    assert clean_metadata({"note": None, "templates": 4}) == {"note": None, "templates": 4}


def test_request_context_without_request_is_empty() -> None:
    assert RequestContext.from_request(None) == RequestContext()
