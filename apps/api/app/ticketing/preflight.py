from __future__ import annotations

import logging
import uuid

from app.metrics import observe_quotation_preflight
from app.ticketing.errors import QuotationDispatchError, Severity
from app.ticketing.gateway import QuotationSendGateway
from app.ticketing.schemas import PreflightVerdict


logger = logging.getLogger("app.ticketing.dispatch")


class PreflightChecker:
    """Verify a quotation's opportunity reference before anything is sent.

    Preflight never repairs. A single unambiguous candidate is logged and left
    for Mark-Sent to relink inside its own transaction; ambiguous or missing
    candidates stop the dispatch so nobody guesses which opportunity was meant.
    """

    def __init__(self, gateway: QuotationSendGateway):
        self.gateway = gateway

    def check(
        self,
        quotation_id: uuid.UUID,
        opportunity_id: uuid.UUID | None,
        correlation_id: str,
    ) -> PreflightVerdict | None:
        if opportunity_id is None:
            return None

        try:
            verdict = self.gateway.preflight(quotation_id)
        except Exception as exc:
            observe_quotation_preflight("transport_error")
            logger.exception(
                "quotation.preflight_failed",
                extra={"quotation_id": str(quotation_id)},
            )
            raise QuotationDispatchError(
                "PREFLIGHT_TRANSPORT_ERROR",
                "Preflight check could not be completed",
                severity=Severity.TRANSPORT,
                details={"error": str(exc)},
                correlation_id=correlation_id,
            ) from exc

        details = {
            "quotation_id": str(quotation_id),
            "orphan_opportunity_id": str(verdict.orphan_opportunity_id or opportunity_id),
            "resolution_source": verdict.resolution_source,
        }

        if verdict.can_proceed:
            if verdict.needs_repair:
                observe_quotation_preflight("repair_pending")
                logger.warning(
                    "quotation.preflight_repair_pending",
                    extra={
                        "quotation_id": str(quotation_id),
                        "opportunity_id": str(verdict.resolved_opportunity_id),
                        "resolution_source": verdict.resolution_source,
                    },
                )
            else:
                observe_quotation_preflight("ok")
            return verdict

        if verdict.repair_failed and verdict.error_code == "AMBIGUOUS_OPPORTUNITY":
            observe_quotation_preflight("ambiguous")
            self._log_block(quotation_id, verdict, Severity.CONFLICT)
            raise QuotationDispatchError(
                "AMBIGUOUS_OPPORTUNITY",
                verdict.error or "Multiple opportunities match this quotation; resolve the link manually",
                severity=Severity.CONFLICT,
                details=details,
                correlation_id=correlation_id,
            )

        if verdict.repair_failed:
            observe_quotation_preflight("repair_failed")
            self._log_block(quotation_id, verdict, Severity.NOT_FOUND)
            raise QuotationDispatchError(
                verdict.error_code or "DATA_INTEGRITY_ERROR",
                verdict.error or "Quotation references an opportunity that no longer exists",
                severity=Severity.NOT_FOUND,
                details=details,
                correlation_id=correlation_id,
            )

        observe_quotation_preflight("orphan")
        self._log_block(quotation_id, verdict, Severity.CONFLICT)
        raise QuotationDispatchError(
            verdict.error_code or "ORPHAN_OPPORTUNITY_REFERENCE",
            verdict.error or "Quotation references an opportunity that does not exist",
            severity=Severity.CONFLICT,
            details=details,
            correlation_id=correlation_id,
        )

    def _log_block(
        self,
        quotation_id: uuid.UUID,
        verdict: PreflightVerdict,
        severity: Severity,
    ) -> None:
        logger.warning(
            "quotation.preflight_blocked",
            extra={
                "quotation_id": str(quotation_id),
                "error_code": verdict.error_code,
                "severity": severity.value,
                "resolution_source": verdict.resolution_source,
            },
        )
