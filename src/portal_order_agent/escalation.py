from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from .insurance import bill_method, member_id
from .models import EscalationPayload, EscalationTarget, OrderRequest, RetryDecision
from .portals import KNOWN_PORTALS
from .util.dates import format_us_date


logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def _safe_name(value: str) -> str:
    return _SAFE_NAME_RE.sub("_", value).strip("_") or "order"


class HumanNotifier(Protocol):
    def notify(self, payload: EscalationPayload) -> str:
        """Hand the payload to a person; return a delivery reference."""


class DocumentFallback(Protocol):
    def generate(self, order: OrderRequest, *, reason: str) -> str:
        """Produce an offline requisition; return its reference."""


class OutboxNotifier:
    """Drop each escalation as a JSON file; delivery (email/SMS/queue) is someone else's job."""

    def __init__(self, outbox_dir: str) -> None:
        self.outbox_dir = Path(outbox_dir)

    def notify(self, payload: EscalationPayload) -> str:
        self.outbox_dir.mkdir(parents=True, exist_ok=True)
        stamp = payload.timestamp.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.outbox_dir / f"{stamp}_{_safe_name(payload.order.correlation_id)}.json"
        path.write_text(payload.model_dump_json(indent=2), encoding="utf-8")
        logger.info("Escalation for order %s written to %s", payload.order.correlation_id, path)
        return str(path)


class RequisitionDocumentWriter:
    """Plain-text requisition for manual submission (fax or walk-in) when the portal cannot be driven."""

    def __init__(self, documents_dir: str) -> None:
        self.documents_dir = Path(documents_dir)

    def render(self, order: OrderRequest, *, reason: str = "") -> str:
        p = order.patient
        info = KNOWN_PORTALS.get(order.portal)
        title = f"{info.display_name if info else order.portal.upper()} LABORATORY REQUISITION"
        lines = [
            title,
            "=" * len(title),
            f"Requisition #: {order.correlation_id}",
            f"Date: {format_us_date(datetime.now(timezone.utc).date())}",
            "",
            "ORDERING PROVIDER",
            f"  {order.provider.name}" + (f" | NPI: {order.provider.npi}" if order.provider.npi else ""),
            "",
            "PATIENT",
            f"  Name: {p.last_name}, {p.first_name}" + (f" | Sex: {p.sex}" if p.sex else ""),
            f"  DOB: {format_us_date(p.date_of_birth)}" + (f" | Phone: {p.phone}" if p.phone else ""),
        ]
        if not p.address.is_empty():
            a = p.address
            street = ", ".join(s for s in (a.line1, a.line2) if s)
            lines.append(f"  Address: {street}, {a.city}, {a.state} {a.zip_code}".rstrip())
        lines.append(f"  Bill method: {bill_method(p)}")
        if p.insurance_provider or member_id(p):
            lines.append(f"  Insurance: {p.insurance_provider or 'N/A'} | Member ID: {member_id(p) or 'N/A'}")

        lines += ["", "DIAGNOSIS"]
        lines += [f"  {code}" for code in order.diagnosis_codes] or ["  (none)"]

        lines += ["", "TESTS ORDERED"]
        lines += [f"  [x] {t.code}" + (f" - {t.name}" if t.name else "") for t in order.tests]

        if order.collection_date:
            lines += ["", f"Collection date: {format_us_date(order.collection_date)}"]
        if order.special_instructions:
            lines += ["", "SPECIAL INSTRUCTIONS", f"  {order.special_instructions}"]
        if reason:
            lines += ["", f"Portal submission failed: {reason}"]

        lines += ["", "Provider signature: ______________________    Date: __________", ""]
        return "\n".join(lines)

    def generate(self, order: OrderRequest, *, reason: str) -> str:
        self.documents_dir.mkdir(parents=True, exist_ok=True)
        path = self.documents_dir / f"requisition_{_safe_name(order.correlation_id)}.txt"
        path.write_text(self.render(order, reason=reason), encoding="utf-8")
        logger.info("Offline requisition for order %s written to %s", order.correlation_id, path)
        return str(path)


class Escalator:
    """Build the escalation payload, generate the fallback document when asked for, and notify a human."""

    def __init__(self, notifier: HumanNotifier, documents: Optional[DocumentFallback] = None) -> None:
        self.notifier = notifier
        self.documents = documents

    def escalate(
        self,
        order: OrderRequest,
        exc: BaseException,
        decision: RetryDecision,
        *,
        screenshot_reference: Optional[str] = None,
    ) -> EscalationPayload:
        target = decision.escalation or EscalationTarget.HUMAN

        document_reference: Optional[str] = None
        if target is EscalationTarget.DOCUMENT_FALLBACK and self.documents is not None:
            try:
                document_reference = self.documents.generate(order, reason=str(exc))
            except Exception:
                # The human still gets the notification; they can write the requisition by hand.
                logger.exception("Failed to generate fallback requisition for order %s", order.correlation_id)

        payload = EscalationPayload(
            order=order,
            tests=order.tests,
            diagnosis_codes=order.diagnosis_codes,
            failure_type=decision.error_type,
            failure_description=decision.reason or str(exc),
            failure_class=decision.failure_class,
            escalation_target=target,
            stage=decision.stage,
            screenshot_reference=screenshot_reference,
            document_reference=document_reference,
        )
        self.notifier.notify(payload)
        return payload
