from __future__ import annotations

import json
from pathlib import Path

from fakes import make_order
from portal_order_agent.escalation import Escalator, OutboxNotifier, RequisitionDocumentWriter
from portal_order_agent.models import EscalationPayload, EscalationTarget, FailureClass, RetryDecision


def _decision(target: EscalationTarget) -> RetryDecision:
    return RetryDecision(
        failure_class=FailureClass.STRUCTURAL,
        error_type="ElementNotFound",
        retry=False,
        escalation=target,
        stage="order_details",
        reason="Required element not found: order.test_search",
    )


class _Recorder:
    def __init__(self) -> None:
        self.payloads: list[EscalationPayload] = []

    def notify(self, payload: EscalationPayload) -> str:
        self.payloads.append(payload)
        return "recorded"


def test_requisition_document_lists_everything_needed_to_fax_the_order(tmp_path: Path) -> None:
    order = make_order(medicaid_id="0123456789", tests=("005009", "322000"))
    text = RequisitionDocumentWriter(str(tmp_path)).render(order, reason="portal down")

    assert text.startswith("Labcorp Link LABORATORY REQUISITION")
    assert "Requisition #: ORD-1" in text
    assert "Dr. Alice Smith | NPI: 1234567890" in text
    assert "Name: Doe, Jane | Sex: F" in text
    assert "DOB: 01/02/1980" in text
    assert "Address: 1 Main St, Salt Lake City, UT 84101" in text
    assert "Bill method: Medicaid" in text
    assert "Member ID: 0123456789" in text
    assert "[x] 005009" in text and "[x] 322000" in text
    assert "Portal submission failed: portal down" in text


def test_document_fallback_generates_requisition_and_notifies(tmp_path: Path) -> None:
    notifier = _Recorder()
    escalator = Escalator(notifier, RequisitionDocumentWriter(str(tmp_path / "docs")))
    order = make_order()

    payload = escalator.escalate(
        order,
        RuntimeError("boom"),
        _decision(EscalationTarget.DOCUMENT_FALLBACK),
        screenshot_reference="ORD-1/05_failed.png",
    )

    assert payload.escalation_target is EscalationTarget.DOCUMENT_FALLBACK
    assert payload.document_reference is not None
    assert Path(payload.document_reference).name == "requisition_ORD-1.txt"
    assert payload.tests == order.tests
    assert payload.stage == "order_details"
    assert payload.failure_description == "Required element not found: order.test_search"
    assert notifier.payloads == [payload]


def test_human_target_skips_the_document(tmp_path: Path) -> None:
    notifier = _Recorder()
    escalator = Escalator(notifier, RequisitionDocumentWriter(str(tmp_path / "docs")))

    payload = escalator.escalate(make_order(), RuntimeError("bad npi"), _decision(EscalationTarget.HUMAN))

    assert payload.document_reference is None
    assert not (tmp_path / "docs").exists()
    assert len(notifier.payloads) == 1


def test_failing_document_writer_still_notifies() -> None:
    class _Broken:
        def generate(self, order, *, reason: str) -> str:
            raise OSError("disk full")

    notifier = _Recorder()
    payload = Escalator(notifier, _Broken()).escalate(
        make_order(), RuntimeError("x"), _decision(EscalationTarget.DOCUMENT_FALLBACK)
    )
    assert payload.document_reference is None
    assert len(notifier.payloads) == 1


def test_outbox_notifier_writes_one_json_file_per_escalation(tmp_path: Path) -> None:
    notifier = OutboxNotifier(str(tmp_path / "outbox"))
    payload = Escalator(_Recorder()).escalate(make_order(), RuntimeError("x"), _decision(EscalationTarget.HUMAN))

    ref = notifier.notify(payload)

    data = json.loads(Path(ref).read_text(encoding="utf-8"))
    assert data["order"]["correlation_id"] == "ORD-1"
    assert data["escalation_target"] == "human"
    assert data["failure_type"] == "ElementNotFound"
    assert Path(ref).name.endswith("_ORD-1.json")
