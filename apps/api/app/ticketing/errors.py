from __future__ import annotations

from enum import StrEnum
from typing import Any


class Severity(StrEnum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    INTERNAL = "internal"


CONFLICT_CODES = frozenset({"OPPORTUNITY_NOT_FOUND", "INVALID_STATUS_TRANSITION"})
CONFLICT_PREFIX = "CONFLICT_"
VALIDATION_CODES = frozenset({"NO_OPPORTUNITY_FOUND", "INSUFFICIENT_DATA"})

_HTTP_STATUS: dict[Severity, int] = {
    Severity.VALIDATION: 422,
    Severity.CONFLICT: 409,
    Severity.NOT_FOUND: 404,
    Severity.TRANSPORT: 500,
    Severity.INTERNAL: 500,
}


def classify(code: str | None) -> Severity:
    """Map a Mark-Sent / Preflight failure code to its retry severity.

    Unknown codes are internal failures: logged and flagged, never retried
    automatically.
    """
    if not code:
        return Severity.INTERNAL
    if code in CONFLICT_CODES or code.startswith(CONFLICT_PREFIX):
        return Severity.CONFLICT
    if code in VALIDATION_CODES:
        return Severity.VALIDATION
    return Severity.INTERNAL


def http_status_for(severity: Severity) -> int:
    return _HTTP_STATUS[severity]


def is_retryable(severity: Severity) -> bool:
    return severity is Severity.TRANSPORT


class QuotationDispatchError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        *,
        severity: Severity,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        message_sent: bool = False,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.severity = severity
        self.status_code = status_code if status_code is not None else http_status_for(severity)
        self.details = details or {}
        self.message_sent = message_sent
        self.correlation_id = correlation_id

    @property
    def retryable(self) -> bool:
        return is_retryable(self.severity)

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "error_code": self.code,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "message_sent": self.message_sent,
            "details": self.details,
            "correlation_id": self.correlation_id,
        }


def validation_error(code: str, message: str, **details: Any) -> QuotationDispatchError:
    return QuotationDispatchError(code, message, severity=Severity.VALIDATION, details=details or None)


def classified_error(
    code: str | None,
    message: str,
    *,
    correlation_id: str | None = None,
    details: dict[str, Any] | None = None,
    message_sent: bool = False,
) -> QuotationDispatchError:
    severity = classify(code)
    return QuotationDispatchError(
        code or "INTERNAL_ERROR",
        message,
        severity=severity,
        details=details,
        message_sent=message_sent,
        correlation_id=correlation_id,
    )
