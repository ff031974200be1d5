from __future__ import annotations

import pytest

from app.ticketing.errors import (
    QuotationDispatchError,
    Severity,
    classified_error,
    classify,
    http_status_for,
    is_retryable,
    validation_error,
)


@pytest.mark.parametrize(
    ("code", "severity"),
    [
        ("OPPORTUNITY_NOT_FOUND", Severity.CONFLICT),
        ("INVALID_STATUS_TRANSITION", Severity.CONFLICT),
        ("CONFLICT_AMBIGUOUS_OPPORTUNITY", Severity.CONFLICT),
        ("CONFLICT_ANYTHING", Severity.CONFLICT),
        ("NO_OPPORTUNITY_FOUND", Severity.VALIDATION),
        ("INSUFFICIENT_DATA", Severity.VALIDATION),
        ("QUOTATION_NOT_FOUND", Severity.INTERNAL),
        ("SOMETHING_NEW", Severity.INTERNAL),
        (None, Severity.INTERNAL),
        ("", Severity.INTERNAL),
    ],
)
def test_classify(code: str | None, severity: Severity) -> None:
    assert classify(code) is severity


def test_http_status_mapping() -> None:
    assert http_status_for(Severity.VALIDATION) == 422
    assert http_status_for(Severity.CONFLICT) == 409
    assert http_status_for(Severity.NOT_FOUND) == 404
    assert http_status_for(Severity.TRANSPORT) == 500
    assert http_status_for(Severity.INTERNAL) == 500


def test_only_transport_is_retryable() -> None:
    assert [severity for severity in Severity if is_retryable(severity)] == [Severity.TRANSPORT]


def test_classified_error_keeps_code_verbatim() -> None:
    error = classified_error("OPPORTUNITY_NOT_FOUND", "gone", correlation_id="corr-1", message_sent=True)

    assert error.code == "OPPORTUNITY_NOT_FOUND"
    assert error.status_code == 409
    payload = error.to_payload()
    assert payload == {
        "success": False,
        "error": "gone",
        "error_code": "OPPORTUNITY_NOT_FOUND",
        "severity": "conflict",
        "retryable": False,
        "message_sent": True,
        "details": {},
        "correlation_id": "corr-1",
    }


def test_classified_error_without_code_is_internal() -> None:
    error = classified_error(None, "boom")
    assert error.code == "INTERNAL_ERROR"
    assert error.severity is Severity.INTERNAL
    assert error.status_code == 500


def test_explicit_status_overrides_severity_default() -> None:
    error = QuotationDispatchError("EMAIL_SEND_FAILED", "smtp down", severity=Severity.TRANSPORT, status_code=502)
    assert error.status_code == 502
    assert error.retryable is True


def test_validation_error_carries_details() -> None:
    error = validation_error("INVALID_CHANNEL", "nope", allowed=["email", "whatsapp"])
    assert error.status_code == 422
    assert error.details == {"allowed": ["email", "whatsapp"]}
