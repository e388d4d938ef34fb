from __future__ import annotations

import json
from pathlib import Path

import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from fakes import FakeBrowserSession, ScriptedPortal, make_order
from portal_order_agent.config import AppConfig
from portal_order_agent.eligibility import CanonicalDemographics, DemographicReconciler, EligibilityRequest, EligibilityResponse
from portal_order_agent.engine import OrderEngine
from portal_order_agent.errors import PortalBusy, PreviewNotPending
from portal_order_agent.escalation import Escalator
from portal_order_agent.models import Address, EscalationTarget, OrderStatus, Verification
from portal_order_agent.state import StateStore


def _config(tmp_path: Path, **engine) -> AppConfig:
    return AppConfig.model_validate(
        {
            "portals": {"labcorp": {"username": "clinic", "password": "pw-123"}},
            "engine": {
                "element_timeout_ms": 1_000,
                "auth_verify_timeout_ms": 1_000,
                "confirmation_timeout_ms": 1_000,
                **engine,
            },
            "audit": {"dir": str(tmp_path / "audit")},
            "outbox": {
                "notifications_dir": str(tmp_path / "outbox" / "notifications"),
                "documents_dir": str(tmp_path / "outbox" / "requisitions"),
            },
        }
    )


class _Rig:
    """An engine whose browser sessions come from ScriptedPortals handed out in order."""

    def __init__(self, tmp_path: Path, *portals: ScriptedPortal, escalator=None, reconciler=None, **engine) -> None:
        self.state = StateStore(str(tmp_path / "state.db"))
        self.portals = list(portals) or [ScriptedPortal()]
        self.browsers: list[FakeBrowserSession] = []
        self.sleeps: list[float] = []
        self.engine = OrderEngine(
            _config(tmp_path, **engine),
            self.state,
            escalator=escalator,
            reconciler=reconciler,
            browser_factory=self._next_browser,
            sleep=self.sleeps.append,
        )

    def _next_browser(self) -> FakeBrowserSession:
        browser = FakeBrowserSession(self.portals[len(self.browsers)].page)
        self.browsers.append(browser)
        return browser

    def close(self) -> None:
        self.state.close()


@pytest.fixture()
def rig_factory(tmp_path: Path):
    rigs: list[_Rig] = []

    def _make(*portals: ScriptedPortal, **kw) -> _Rig:
        rig = _Rig(tmp_path, *portals, **kw)
        rigs.append(rig)
        return rig

    yield _make
    for rig in rigs:
        rig.close()


def test_preview_halts_after_validation_until_confirmed(rig_factory) -> None:
    rig = rig_factory()
    engine, portal = rig.engine, rig.portals[0]

    outcome = engine.process(make_order())

    assert outcome.status is OrderStatus.PREVIEW
    assert outcome.verification is Verification.NOT_APPLICABLE
    assert outcome.audit[-1].stage == "preview"
    assert engine.previews == ["ORD-1"]
    assert portal.submit_button.clicks == 0
    assert rig.browsers[0].closed == 0
    assert rig.state.get_order("ORD-1").status is OrderStatus.PREVIEW

    # The browser session for the portal stays claimed while the preview is open.
    with pytest.raises(PortalBusy):
        engine.process(make_order("ORD-2"))

    done = engine.confirm("ORD-1")

    assert done.status is OrderStatus.COMPLETED
    assert done.confirmation_number == "L7731029"
    assert portal.submit_button.clicks == 1
    assert rig.browsers[0].closed == 1
    assert engine.previews == []
    stored = rig.state.get_order("ORD-1")
    assert stored.status is OrderStatus.COMPLETED
    assert stored.confirmation_number == "L7731029"

    with pytest.raises(PreviewNotPending):
        engine.confirm("ORD-1")


def test_rejected_preview_is_never_submitted(rig_factory) -> None:
    rig = rig_factory()
    engine, portal = rig.engine, rig.portals[0]
    engine.process(make_order())

    outcome = engine.reject("ORD-1")

    assert outcome.status is OrderStatus.NEEDS_MANUAL_REVIEW
    assert outcome.error == "rejected during preview"
    assert outcome.audit[-1].stage == "rejected"
    assert portal.submit_button.clicks == 0
    assert rig.browsers[0].closed == 1
    assert rig.state.get_order("ORD-1").status is OrderStatus.NEEDS_MANUAL_REVIEW


def test_direct_submission_completes_and_next_order_reuses_session(rig_factory) -> None:
    rig = rig_factory(ScriptedPortal(), ScriptedPortal(authenticated_on_arrival=True), preview_mode=False)
    engine = rig.engine

    first = engine.process(make_order("ORD-1"))
    second = engine.process(make_order("ORD-2"))

    assert first.status is OrderStatus.COMPLETED
    assert [e.stage for e in first.audit] == [
        "authenticated",
        "patient_created",
        "order_details",
        "validated",
        "submitted",
        "confirmed",
    ]
    assert second.status is OrderStatus.COMPLETED
    assert rig.browsers[0].opened_with == [None]
    assert rig.browsers[1].opened_with[0] is not None
    assert json.loads(rig.browsers[1].opened_with[0])["cookies"][0]["name"] == "sid"
    assert rig.portals[1].fields.get("username") is None
    assert all(b.closed == 1 for b in rig.browsers)
    # Finished orders are not kept in memory.
    assert engine.audit._records == {}


def test_exhausted_transient_failure_escalates_with_offline_requisition(tmp_path: Path, rig_factory) -> None:
    portal = ScriptedPortal()
    show_order_form = portal._order_form

    def _order_form_with_flaky_validate() -> None:
        show_order_form()
        validate = next(el for el in portal.page.elements if el.name == "Validate")
        validate.click_errors = [PlaywrightTimeoutError("Timeout 1000ms exceeded.") for _ in range(3)]

    portal._order_form = _order_form_with_flaky_validate
    rig = rig_factory(portal, preview_mode=False)

    outcome = rig.engine.process(make_order())

    assert outcome.status is OrderStatus.NEEDS_MANUAL_REVIEW
    assert outcome.escalation is EscalationTarget.DOCUMENT_FALLBACK
    assert outcome.error.startswith("TimeoutError")
    assert rig.sleeps == [2.0, 4.0]
    assert outcome.audit[-1].stage == "failed"

    document = Path(outcome.document_reference)
    assert document.exists()
    text = document.read_text(encoding="utf-8")
    assert "Requisition #: ORD-1" in text
    assert "[x] 005009 - CBC With Differential" in text
    assert "Z00.00" in text

    notes = list((tmp_path / "outbox" / "notifications").glob("*.json"))
    assert len(notes) == 1
    payload = json.loads(notes[0].read_text(encoding="utf-8"))
    assert payload["failure_type"] == "TimeoutError"
    assert payload["failure_class"] == "transient"
    assert payload["stage"] == "validate"
    assert payload["diagnosis_codes"] == ["Z00.00"]
    assert payload["screenshot_reference"] == outcome.last_screenshot

    stored = rig.state.get_order("ORD-1")
    assert stored.status is OrderStatus.NEEDS_MANUAL_REVIEW
    assert stored.escalation == "document_fallback"
    assert stored.document_reference == outcome.document_reference


def test_portal_validation_error_goes_to_a_human_without_document(rig_factory) -> None:
    rig = rig_factory(ScriptedPortal(validation_errors=("NPI not enrolled",)))

    outcome = rig.engine.process(make_order())

    assert outcome.status is OrderStatus.NEEDS_MANUAL_REVIEW
    assert outcome.escalation is EscalationTarget.HUMAN
    assert outcome.document_reference is None
    assert "NPI not enrolled" in outcome.error
    assert rig.engine.previews == []
    assert rig.browsers[0].closed == 1


def test_unknown_portal_fails_outside_the_browser(rig_factory) -> None:
    rig = rig_factory()

    outcome = rig.engine.process(make_order(portal="acme"))

    assert outcome.status is OrderStatus.NEEDS_MANUAL_REVIEW
    assert outcome.escalation is EscalationTarget.DOCUMENT_FALLBACK
    assert outcome.error.startswith("KeyError")
    assert rig.browsers == []
    assert "ACME LABORATORY REQUISITION" in Path(outcome.document_reference).read_text(encoding="utf-8")


def test_failed_escalation_marks_order_failed(rig_factory) -> None:
    class _DeadNotifier:
        def notify(self, payload) -> str:
            raise OSError("outbox volume is read-only")

    rig = rig_factory(ScriptedPortal(validation_errors=("bad",)), escalator=Escalator(_DeadNotifier()))

    outcome = rig.engine.process(make_order())

    assert outcome.status is OrderStatus.FAILED
    assert rig.state.get_order("ORD-1").status is OrderStatus.FAILED


def test_cancel_running_order_stops_at_next_stage(rig_factory) -> None:
    portal = ScriptedPortal()
    rig = rig_factory(portal, preview_mode=False)
    show_search = portal._patient_search

    def _search_then_cancel() -> None:
        show_search()
        assert rig.engine.cancel("ORD-1") is True

    portal._patient_search = _search_then_cancel

    outcome = rig.engine.process(make_order())

    assert outcome.status is OrderStatus.CANCELLED
    assert outcome.audit[-1].stage == "cancelled"
    assert portal.added_tests == []
    assert rig.browsers[0].closed == 1
    assert rig.state.get_order("ORD-1").status is OrderStatus.CANCELLED


def test_cancel_queued_and_previewed_orders(rig_factory) -> None:
    rig = rig_factory()
    engine = rig.engine

    engine.enqueue(make_order("ORD-9"))
    assert engine.cancel("ORD-9") is True
    assert rig.state.get_order("ORD-9").status is OrderStatus.CANCELLED
    assert engine.process_pending() == []

    engine.process(make_order("ORD-1"))
    assert engine.cancel("ORD-1") is True
    assert engine.previews == []
    assert rig.browsers[0].closed == 1
    assert rig.state.get_order("ORD-1").status is OrderStatus.CANCELLED

    assert engine.cancel("nope") is False


def test_process_pending_asks_operator_for_each_preview(rig_factory) -> None:
    rig = rig_factory(ScriptedPortal(), ScriptedPortal(authenticated_on_arrival=True))
    engine = rig.engine
    engine.enqueue(make_order("ORD-1"))
    engine.enqueue(make_order("ORD-2"))
    asked: list[str] = []

    def _approve_first_only(outcome) -> bool:
        asked.append(outcome.correlation_id)
        return outcome.correlation_id == "ORD-1"

    outcomes = engine.process_pending(on_preview=_approve_first_only)

    assert asked == ["ORD-1", "ORD-2"]
    assert [o.status for o in outcomes] == [OrderStatus.COMPLETED, OrderStatus.NEEDS_MANUAL_REVIEW]
    assert rig.portals[0].submit_button.clicks == 1
    assert rig.portals[1].submit_button.clicks == 0


def test_submitted_order_without_confirmation_goes_to_a_human_not_a_requisition(tmp_path: Path, rig_factory) -> None:
    portal = ScriptedPortal(confirmation_text="Thank you, your order was submitted.")
    rig = rig_factory(portal, preview_mode=False)

    outcome = rig.engine.process(make_order())

    assert portal.submit_button.clicks == 1
    assert outcome.status is OrderStatus.NEEDS_MANUAL_REVIEW
    assert outcome.escalation is EscalationTarget.HUMAN
    assert outcome.error.startswith("ConfirmationNotFound")
    assert outcome.document_reference is None
    assert list((tmp_path / "outbox" / "requisitions").glob("*")) == []
    assert len(list((tmp_path / "outbox" / "notifications").glob("*.json"))) == 1
    assert rig.state.get_order("ORD-1").escalation == "human"


class _EligibleOracle:
    def __init__(self) -> None:
        self.requests: list[EligibilityRequest] = []

    def check(self, request: EligibilityRequest) -> EligibilityResponse:
        self.requests.append(request)
        return EligibilityResponse(
            is_eligible=True,
            demographics=CanonicalDemographics(
                first_name="Janet",
                last_name="Doe",
                address=Address(line1="12 N Temple", city="Salt Lake City", state="UT", zip_code="84103"),
            ),
        )


def test_new_patient_form_uses_the_oracle_address(rig_factory) -> None:
    oracle = _EligibleOracle()
    portal = ScriptedPortal()
    rig = rig_factory(portal, reconciler=DemographicReconciler(oracle))
    order = make_order(medicaid_id="0123456789")

    outcome = rig.engine.process(order)

    assert outcome.status is OrderStatus.PREVIEW
    assert outcome.verification is Verification.VERIFIED
    assert [r.payer_id for r in oracle.requests] == ["0123456789"]
    assert portal.created_patient
    f = portal.fields
    assert f["address"].value == "12 N Temple"
    assert f["zip"].value == "84103"
    assert f["first_name"].value == "Janet"
    assert f["bill_method"].selected == "M"
    assert f["insurance_id"].value == "0123456789"
    # The caller's order is left as it was.
    assert order.patient.address.line1 == "1 Main St"
