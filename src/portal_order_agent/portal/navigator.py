from __future__ import annotations

import logging
import threading
import time
from datetime import date
from typing import Callable, Iterable, Optional, TypeVar

from playwright.sync_api import BrowserContext, Page

from ..config import PortalConfig
from ..errors import ConfirmationNotFound, ElementNotFound, OrderCancelled, PortalValidationError
from ..insurance import bill_method, member_id, patient_payer_code
from ..models import NavigationStage, NavigationState, OrderRequest, Patient, RetryDecision
from ..policy import RetryPolicy
from ..util.dates import format_us_date
from .audit import AuditRecorder
from .auth import AUTH_STAGE, AuthenticationFlow
from .confirmation import extract_confirmation_number
from .interactions import (
    body_text,
    click_first_by_texts,
    find_clickable_by_texts,
    poll,
    usable_matches,
    wait_for_settle,
)
from .popups import PopupSweeper
from .resolver import ElementResolver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)

T = TypeVar("T")

PATIENT_STAGE = "patient"
ORDER_DETAILS_STAGE = "order_details"
VALIDATE_STAGE = "validate"
SUBMIT_STAGE = "submit"
CONFIRM_STAGE = "confirm"

# Portals refuse an empty search; this never matches a real patient, which is the point.
DUMMY_SEARCH_LAST_NAME = "ZZZNOMATCH"

_OPTIONS_JS = """
(el) => el.options
  ? Array.from(el.options).map(o => ({ value: o.value, label: (o.label || o.textContent || '').trim() }))
  : null
"""


def _dob_variants(dob: date) -> tuple[str, ...]:
    return (format_us_date(dob), f"{dob.month}/{dob.day}/{dob.year}", dob.isoformat())


def patient_row_matches(text: str, patient: Patient) -> bool:
    """A search-result row is the patient only when last name, first name and DOB all appear in it."""
    folded = (text or "").casefold()
    if not patient.last_name or patient.last_name.casefold() not in folded:
        return False
    if patient.first_name and patient.first_name.casefold() not in folded:
        return False
    return any(v in text for v in _dob_variants(patient.date_of_birth))


def choose_option(options: Iterable[dict], wanted: str) -> Optional[str]:
    """
    Pick the option value for `wanted`: exact label/value first, then prefix, case-insensitive.
    """
    want = (wanted or "").strip().casefold()
    if not want:
        return None
    opts = [(str(o.get("value") or ""), str(o.get("label") or "").strip()) for o in options]
    for value, label in opts:
        if want in (value.casefold(), label.casefold()):
            return value
    for value, label in opts:
        if label.casefold().startswith(want) and value:
            return value
    return None


class OrderNavigator:
    """
    Drive one order through the portal: authenticate, find or create the patient, fill order
    details, validate, submit and read back the confirmation identifier.

    Every stage runs inside the retry loop; every NavigationState transition is preceded by a
    popup sweep and followed by an audit capture. One navigator per order.
    """

    def __init__(
        self,
        portal: PortalConfig,
        order: OrderRequest,
        *,
        selectors: PortalSelectors,
        resolver: ElementResolver,
        sweeper: PopupSweeper,
        auth: AuthenticationFlow,
        audit: AuditRecorder,
        policy: RetryPolicy,
        element_timeout_ms: int = 5_000,
        confirmation_timeout_ms: int = 15_000,
        step_delay_ms: int = 0,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.portal = portal
        self.order = order
        self.selectors = selectors
        self.resolver = resolver
        self.sweeper = sweeper
        self.auth = auth
        self.audit = audit
        self.policy = policy
        self.element_timeout_ms = element_timeout_ms
        self.confirmation_timeout_ms = confirmation_timeout_ms
        self.step_delay_ms = step_delay_ms
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep

        self.state = NavigationState()
        self.trace: list[tuple[str, str]] = []
        self.attempts: dict[str, int] = {}
        self.last_decision: Optional[RetryDecision] = None
        self.last_exception: Optional[BaseException] = None
        self.reused_session = False
        self.confirmation_number: Optional[str] = None

        self._added_tests: set[str] = set()
        self._added_diagnoses: set[str] = set()
        self._provider_selected = False
        self._submit_started = False
        self._context: Optional[BrowserContext] = None

    @property
    def order_id(self) -> str:
        return self.order.correlation_id

    @property
    def submit_attempted(self) -> bool:
        """True once the submit control has been clicked, whether or not the click completed."""
        return self._submit_started

    # --- public flow ---

    def prepare(self, page: Page, context: BrowserContext) -> None:
        """Run every stage up to and including portal validation. Nothing is submitted."""
        self._context = context
        self._run_stage(AUTH_STAGE, lambda: self._authenticate(page, context))
        self._run_stage(PATIENT_STAGE, lambda: self._patient(page))
        self._run_stage(ORDER_DETAILS_STAGE, lambda: self._order_details(page))
        self._run_stage(VALIDATE_STAGE, lambda: self._validate(page))

    def submit(self, page: Page) -> str:
        if self.state.stage is not NavigationStage.VALIDATED:
            raise RuntimeError(f"cannot submit from stage {self.state.stage.value}")
        self._run_stage(SUBMIT_STAGE, lambda: self._submit(page))
        return self._run_stage(CONFIRM_STAGE, lambda: self._confirm(page))

    def capture_preview(self, page: Page) -> Optional[str]:
        """Screenshot of the filled, validated form for the operator; no state change."""
        self.sweeper.sweep(page)
        self.trace.append(("sweep", "preview"))
        ref = self.audit.capture(page, self.order_id, "preview")
        self.trace.append(("capture", "preview"))
        return ref

    def abandon(self, page: Optional[Page], label: str) -> Optional[str]:
        """
        Move to FAILED (unless already terminal) and capture a final `label` screenshot.
        Never raises: this runs on the failure path.
        """
        if page is not None:
            try:
                self.sweeper.sweep(page)
            except Exception:
                logger.debug("Sweep before %s capture failed.", label, exc_info=True)
            self.trace.append(("sweep", NavigationStage.FAILED.value))
        if self.state.can_advance(NavigationStage.FAILED):
            self.state.advance(NavigationStage.FAILED)
            self.trace.append(("advance", NavigationStage.FAILED.value))
        if page is None:
            return None
        ref = self.audit.capture(page, self.order_id, label)
        self.trace.append(("capture", label))
        return ref

    def fail(self, page: Optional[Page]) -> Optional[str]:
        return self.abandon(page, "failed")

    # --- stage loop ---

    def _run_stage(self, name: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            if self.cancel_event.is_set():
                raise OrderCancelled(f"Order {self.order_id} cancelled before stage {name}", stage=name)
            attempt += 1
            self.attempts[name] = attempt
            try:
                return fn()
            except OrderCancelled:
                raise
            except Exception as e:
                decision = self.policy.decide(e, attempt=attempt, stage=name, submitted=self._submit_started)
                self.last_decision = decision
                self.last_exception = e
                if not decision.retry:
                    raise
                if name == AUTH_STAGE:
                    self.auth.reset_session(self._context)
                self._sleep(decision.backoff_seconds)

    def _transition(self, page: Page, to: NavigationStage) -> Optional[str]:
        self.sweeper.sweep(page)
        self.trace.append(("sweep", to.value))
        self.state.advance(to)
        self.trace.append(("advance", to.value))
        ref = self.audit.capture(page, self.order_id, to.value)
        self.trace.append(("capture", to.value))
        logger.info("Order %s: %s", self.order_id, to.value)
        if self.step_delay_ms > 0:
            page.wait_for_timeout(self.step_delay_ms)
        return ref

    # --- stages ---

    def _authenticate(self, page: Page, context: BrowserContext) -> None:
        self.reused_session = self.auth.ensure_authenticated(page, context)
        self._transition(page, NavigationStage.AUTHENTICATED)

    def _patient(self, page: Page) -> None:
        self._open_order_entry(page)
        self._search_patient(page)

        outcome = poll(page, lambda: self._search_outcome(page), timeout_ms=self.element_timeout_ms)
        if outcome and outcome[0] == "found":
            self._select_existing_patient(page, outcome[1])
            target = NavigationStage.PATIENT_LOCATED
        else:
            self._create_patient(page)
            target = NavigationStage.PATIENT_CREATED

        self._absorb_address_confirmation(page)
        self._transition(page, target)

    def _order_details(self, page: Page) -> None:
        self._select_provider(page)

        for test in self.order.tests:
            if test.code in self._added_tests:
                continue
            self._search_and_pick(page, "order.test_search", test.search_text, needles=(test.code, test.name))
            self._added_tests.add(test.code)

        for code in self.order.diagnosis_codes:
            if code in self._added_diagnoses:
                continue
            self._search_and_pick(page, "order.diagnosis_search", code, needles=(code,))
            self._added_diagnoses.add(code)

        self._fill(page, "order.user_initials", self.order.provider.effective_initials, stage=ORDER_DETAILS_STAGE)
        self._fill(page, "order.collection_date", format_us_date(self.order.collection_date), stage=ORDER_DETAILS_STAGE)
        self._fill(page, "order.special_instructions", self.order.special_instructions, stage=ORDER_DETAILS_STAGE)
        self._transition(page, NavigationStage.ORDER_DETAILS)

    def _validate(self, page: Page) -> None:
        if not click_first_by_texts(page, self.selectors.validate_texts, timeout_ms=self.element_timeout_ms):
            raise ElementNotFound("order.validate", "No validation control on the order form", stage=VALIDATE_STAGE)
        wait_for_settle(page)

        # Read errors before the transition sweep: some portals render them as dismissable alerts.
        messages = self.validation_messages(page)
        if messages:
            raise PortalValidationError(messages, stage=VALIDATE_STAGE)
        self._transition(page, NavigationStage.VALIDATED)

    def _submit(self, page: Page) -> None:
        if self.state.stage is NavigationStage.SUBMITTED:
            return

        # A timed-out click may still have gone through; never submit twice.
        already = extract_confirmation_number(body_text(page)) if self._submit_started else None
        if already is None:
            control = find_clickable_by_texts(page, self.selectors.submit_texts)
            if control is None:
                raise ElementNotFound("order.submit", "No submit control on the order form", stage=SUBMIT_STAGE)
            self._submit_started = True
            control.click(timeout=self.element_timeout_ms)
            wait_for_settle(page)
        else:
            logger.info("Order %s: confirmation %s already on page; not clicking submit again.", self.order_id, already)
        self._transition(page, NavigationStage.SUBMITTED)

    def _confirm(self, page: Page) -> str:
        number = poll(
            page,
            lambda: extract_confirmation_number(body_text(page)),
            timeout_ms=self.confirmation_timeout_ms,
        )
        if not number:
            messages = self.validation_messages(page)
            if messages:
                raise PortalValidationError(messages, stage=CONFIRM_STAGE)
            raise ConfirmationNotFound(
                f"No confirmation identifier on the page after submitting order {self.order_id}",
                stage=CONFIRM_STAGE,
            )
        self.confirmation_number = number
        self._transition(page, NavigationStage.CONFIRMED)
        logger.info("Order %s confirmed by %s: %s", self.order_id, self.portal.name, number)
        return number

    # --- patient helpers ---

    def _open_order_entry(self, page: Page) -> None:
        if self.resolver.resolve(self.selectors.query("patient_search.last_name"), page, allow_adaptive=False):
            return
        if not click_first_by_texts(page, self.selectors.new_order_texts, timeout_ms=self.element_timeout_ms):
            raise ElementNotFound("navigation.new_order", "No control to open order entry", stage=PATIENT_STAGE)
        wait_for_settle(page)
        self.sweeper.sweep(page)

    def _search_patient(self, page: Page) -> None:
        patient = self.order.patient
        searchable = bool(patient.last_name.strip())
        last = self._fill(
            page,
            "patient_search.last_name",
            patient.last_name if searchable else DUMMY_SEARCH_LAST_NAME,
            stage=PATIENT_STAGE,
        )
        if searchable:
            self._fill(page, "patient_search.first_name", patient.first_name, stage=PATIENT_STAGE)
            self._fill(page, "patient_search.dob", format_us_date(patient.date_of_birth), stage=PATIENT_STAGE)

        if not click_first_by_texts(page, self.selectors.patient_search_texts, exact=True, timeout_ms=self.element_timeout_ms):
            if last is None:
                raise ElementNotFound("patient_search.submit", "No way to run the patient search", stage=PATIENT_STAGE)
            last.press("Enter")
        wait_for_settle(page)
        self.sweeper.sweep(page)

    def _search_outcome(self, page: Page) -> Optional[tuple]:
        row = self._matching_patient_row(page)
        if row is not None:
            return ("found", row)
        if self._create_control(page) is not None:
            return ("create", None)
        return None

    def _matching_patient_row(self, page: Page):
        for row in usable_matches(page, self.selectors.patient_result_row, require_enabled=False):
            try:
                text = row.inner_text()
            except Exception:
                continue
            if patient_row_matches(text, self.order.patient):
                return row
        return None

    def _create_control(self, page: Page):
        control = find_clickable_by_texts(page, self.selectors.create_patient_texts)
        if control is None:
            return None
        try:
            return control if control.is_enabled() else None
        except Exception:
            return None

    def _select_existing_patient(self, page: Page, row) -> None:
        logger.info("Order %s: existing patient found.", self.order_id)
        row.click(timeout=self.element_timeout_ms)
        wait_for_settle(page)
        # Some portals select on row click, others want an explicit confirmation.
        if click_first_by_texts(page, self.selectors.confirm_patient_texts, timeout_ms=self.element_timeout_ms):
            wait_for_settle(page)

    def _create_patient(self, page: Page) -> None:
        control = poll(page, lambda: self._create_control(page), timeout_ms=self.element_timeout_ms)
        if control is None:
            raise ElementNotFound(
                "patient.create",
                "Create-patient control did not become enabled after the search",
                stage=PATIENT_STAGE,
            )
        logger.info("Order %s: no matching patient; creating one.", self.order_id)
        control.click(timeout=self.element_timeout_ms)
        wait_for_settle(page)
        self.sweeper.sweep(page)

        self._fill_patient_form(page, self.order.patient)

        if not click_first_by_texts(page, self.selectors.save_patient_texts, timeout_ms=self.element_timeout_ms):
            raise ElementNotFound("patient.save", "No control to save the new patient", stage=PATIENT_STAGE)
        wait_for_settle(page)

        messages = self.validation_messages(page)
        if messages:
            raise PortalValidationError(messages, stage=PATIENT_STAGE)

    def _fill_patient_form(self, page: Page, patient: Patient) -> None:
        a = patient.address
        values = (
            ("patient.first_name", patient.first_name),
            ("patient.last_name", patient.last_name),
            ("patient.dob", format_us_date(patient.date_of_birth)),
            ("patient.sex", patient.sex),
            ("patient.address_line1", a.line1),
            ("patient.address_line2", a.line2),
            ("patient.city", a.city),
            ("patient.state", a.state),
            ("patient.zip", a.zip_code),
            ("patient.phone", patient.phone),
            ("patient.phone_type", "Mobile" if patient.phone else ""),
            ("patient.bill_method", bill_method(patient)),
            ("patient.insurance_id", member_id(patient)),
            ("patient.payer_code", patient_payer_code(patient)),
        )
        for name, value in values:
            self._fill(page, name, value, stage=PATIENT_STAGE)

    def _absorb_address_confirmation(self, page: Page) -> None:
        # Optional sub-state: entered when the prompt is visible, left once it is gone.
        if not click_first_by_texts(page, self.selectors.address_confirm_texts, timeout_ms=self.element_timeout_ms):
            return
        logger.info("Order %s: confirmed address prompt.", self.order_id)
        wait_for_settle(page)
        poll(
            page,
            lambda: find_clickable_by_texts(page, self.selectors.address_confirm_texts) is None,
            timeout_ms=self.element_timeout_ms,
        )

    # --- order-detail helpers ---

    def _select_provider(self, page: Page) -> None:
        if self._provider_selected:
            return
        provider = self.order.provider

        query = self.selectors.query("order.provider")
        found = self.resolver.resolve(query, page, value_hint=provider.name, allow_adaptive=False)
        if found and self._select_option(found.locator, provider.name):
            self._provider_selected = True
            return

        # Optional sub-state: search by NPI when the dropdown has no usable entry.
        if not provider.npi:
            if query.required:
                raise ElementNotFound("order.provider", f"Provider {provider.name!r} not selectable and no NPI given", stage=ORDER_DETAILS_STAGE)
            logger.warning("Order %s: provider %r not in dropdown and no NPI to search by; leaving default.", self.order_id, provider.name)
            return

        if click_first_by_texts(page, self.selectors.npi_search_texts, timeout_ms=self.element_timeout_ms):
            wait_for_settle(page)
        last_word = provider.name.split()[-1] if provider.name.split() else ""
        self._search_and_pick(page, "order.provider_npi_search", provider.npi, needles=(provider.npi, last_word))
        self._provider_selected = True

    def _search_and_pick(self, page: Page, field: str, text: str, *, needles: tuple[str, ...]) -> None:
        box = self._fill(page, field, text, stage=ORDER_DETAILS_STAGE)
        if box is None:
            return
        option = poll(page, lambda: self._autocomplete_option(page, needles), timeout_ms=self.element_timeout_ms)
        if option is None:
            try:
                box.press("Enter")
            except Exception:
                logger.debug("Enter on %s failed.", field, exc_info=True)
            option = poll(page, lambda: self._autocomplete_option(page, needles), timeout_ms=self.element_timeout_ms)
        if option is None:
            raise ElementNotFound(field, f"No search result matching {text!r}", stage=ORDER_DETAILS_STAGE)
        option.click(timeout=self.element_timeout_ms)
        page.wait_for_timeout(250)

    def _autocomplete_option(self, page: Page, needles: tuple[str, ...]):
        wanted = [n.casefold() for n in needles if n]
        for option in usable_matches(page, self.selectors.autocomplete_option, require_enabled=False):
            try:
                text = (option.inner_text() or "").casefold()
            except Exception:
                continue
            if any(n in text for n in wanted):
                return option
        return None

    # --- field helpers ---

    def _fill(self, page: Page, name: str, value: str, *, stage: str):
        """
        Resolve `name` and enter `value`. Returns the locator, or None when an optional field is
        skipped. Empty values are never typed.
        """
        query = self.selectors.query(name)
        if not value:
            logger.debug("No value for %s; skipping.", name)
            return None

        found = self.resolver.resolve(query, page, value_hint=value)
        if not found:
            if query.required:
                raise ElementNotFound(name, stage=stage)
            logger.warning("Optional field %s not found on %s; continuing without it.", name, self.portal.name)
            return None

        loc = found.locator
        try:
            enabled = loc.is_enabled()
        except Exception:
            enabled = True
        if not enabled:
            if query.required:
                raise ElementNotFound(name, f"Required element is disabled: {name}", stage=stage)
            logger.warning("Optional field %s is disabled; skipping.", name)
            return None

        if query.kind == "select":
            if not self._select_option(loc, value):
                if query.required:
                    raise ElementNotFound(name, f"No option matching {value!r} for {name}", stage=stage)
                logger.warning("No option matching %r for optional %s.", value, name)
        elif query.kind == "checkbox":
            loc.check()
        else:
            loc.fill(value)
        return loc

    def _select_option(self, loc, wanted: str) -> bool:
        try:
            options = loc.evaluate(_OPTIONS_JS)
        except Exception:
            logger.debug("Could not read options.", exc_info=True)
            options = None
        if options is None:
            # Some "dropdowns" are typeahead inputs.
            loc.fill(wanted)
            return True
        value = choose_option(options, wanted)
        if value is None:
            return False
        loc.select_option(value=value)
        return True

    def validation_messages(self, page: Page) -> list[str]:
        out: list[str] = []
        for el in usable_matches(page, self.selectors.validation_message, require_enabled=False):
            try:
                text = " ".join((el.inner_text() or "").split())
            except Exception:
                continue
            if text and text not in out:
                out.append(text)
        return out
