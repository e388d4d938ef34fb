from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from playwright.sync_api import Page

from .config import AppConfig, PortalConfig
from .eligibility import DemographicReconciler, HttpEligibilityOracle
from .errors import OrderCancelled, PortalBusy, PreviewNotPending
from .escalation import Escalator, OutboxNotifier, RequisitionDocumentWriter
from .models import EnrichedPatient, EscalationTarget, OrderOutcome, OrderRequest, OrderStatus
from .policy import RetryPolicy
from .portal.adaptive import AdaptiveLocator, OpenAIAdaptiveLocator
from .portal.audit import AuditRecorder
from .portal.auth import AuthenticationFlow
from .portal.browser import BrowserSession
from .portal.navigator import OrderNavigator
from .portal.popups import PopupSweeper
from .portal.resolver import ElementResolver
from .portal.selectors import catalog_for
from .session import SessionStore
from .state import StateStore


logger = logging.getLogger(__name__)


@dataclass
class _Run:
    order: OrderRequest
    enriched: EnrichedPatient
    navigator: OrderNavigator
    browser: BrowserSession
    page: Page
    lock: threading.Lock


class OrderEngine:
    """
    Serial order processor: one browser session per order, at most one active run per portal.

    In preview mode a run halts after portal validation with the browser still open; `confirm`
    submits it and `reject` tears it down. Every path ends in a persisted order status.
    """

    def __init__(
        self,
        config: AppConfig,
        state: StateStore,
        *,
        reconciler: Optional[DemographicReconciler] = None,
        escalator: Optional[Escalator] = None,
        adaptive: Optional[AdaptiveLocator] = None,
        browser_factory: Optional[Callable[[], BrowserSession]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.state = state
        self.sessions = SessionStore(state)
        self.audit = AuditRecorder(config.audit.dir, state)
        self.policy = RetryPolicy(
            max_attempts=config.engine.max_attempts,
            backoff_base_seconds=config.engine.backoff_base_seconds,
            backoff_max_seconds=config.engine.backoff_max_seconds,
        )
        self.sweeper = PopupSweeper(max_iterations=config.engine.popup_sweep_limit)

        if reconciler is None:
            oracle = None
            if config.eligibility.enabled:
                oracle = HttpEligibilityOracle(
                    config.eligibility.endpoint,
                    api_key=config.eligibility.api_key,
                    timeout_seconds=config.eligibility.timeout_seconds,
                )
            reconciler = DemographicReconciler(oracle)
        self.reconciler = reconciler

        if escalator is None:
            escalator = Escalator(
                OutboxNotifier(config.outbox.notifications_dir),
                RequisitionDocumentWriter(config.outbox.documents_dir),
            )
        self.escalator = escalator

        if adaptive is None and config.adaptive.active:
            adaptive = OpenAIAdaptiveLocator(config.adaptive.api_key, model=config.adaptive.model)
        self.adaptive = adaptive

        self._browser_factory = browser_factory or self._default_browser
        self._sleep = sleep

        self._guard = threading.Lock()
        self._portal_locks: dict[str, threading.Lock] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._previews: dict[str, _Run] = {}

    def _default_browser(self) -> BrowserSession:
        e = self.config.engine
        return BrowserSession(
            headless=e.headless,
            slow_mo_ms=e.slow_mo_ms,
            navigation_timeout_ms=e.navigation_timeout_ms,
            element_timeout_ms=e.element_timeout_ms,
        )

    def _lock_for(self, portal: str) -> threading.Lock:
        with self._guard:
            lock = self._portal_locks.get(portal)
            if lock is None:
                lock = threading.Lock()
                self._portal_locks[portal] = lock
            return lock

    # --- queue ---

    def enqueue(self, order: OrderRequest) -> None:
        self.state.enqueue_order(order)
        logger.info("Queued order %s for %s", order.correlation_id, order.portal)

    def process_pending(
        self,
        *,
        portal: Optional[str] = None,
        on_preview: Optional[Callable[[OrderOutcome], bool]] = None,
    ) -> list[OrderOutcome]:
        """
        Work the queue oldest-first, one order at a time.

        `on_preview` is asked to approve each order halted in preview; without it, halted orders
        stay in preview for a later `confirm`/`reject`.
        """
        outcomes: list[OrderOutcome] = []
        while True:
            stored = self.state.claim_next_pending(portal)
            if stored is None:
                break
            try:
                outcome = self.process(stored.request)
            except PortalBusy as e:
                logger.info("%s; leaving order %s queued.", e, stored.correlation_id)
                self.state.set_order_status(stored.correlation_id, OrderStatus.PENDING, message="portal busy")
                break

            if outcome.status is OrderStatus.PREVIEW and on_preview is not None:
                if on_preview(outcome):
                    outcome = self.confirm(outcome.correlation_id)
                else:
                    outcome = self.reject(outcome.correlation_id, reason="rejected by operator")
            outcomes.append(outcome)
        return outcomes

    # --- single order ---

    def process(self, order: OrderRequest) -> OrderOutcome:
        lock = self._lock_for(order.portal)
        if not lock.acquire(blocking=False):
            raise PortalBusy(f"Another order is already running against {order.portal}")

        cid = order.correlation_id
        cancel_event = threading.Event()
        with self._guard:
            self._cancel_events[cid] = cancel_event

        held = False
        browser: Optional[BrowserSession] = None
        navigator: Optional[OrderNavigator] = None
        page: Optional[Page] = None
        enriched: Optional[EnrichedPatient] = None
        try:
            self._mark_in_progress(order)
            order, enriched = self.reconciler.reconcile_order(order)
            portal = self.config.get_portal(order.portal)
            navigator = self._navigator_for(portal, order, cancel_event)

            stored = self.sessions.get(portal.name)
            browser = self._browser_factory()
            page = browser.open(stored.state if stored else None)
            navigator.prepare(page, browser.context)

            if self.config.engine.preview_mode:
                ref = navigator.capture_preview(page)
                self._previews[cid] = _Run(order, enriched, navigator, browser, page, lock)
                held = True
                self.state.set_order_status(cid, OrderStatus.PREVIEW, message="awaiting confirmation", last_screenshot=ref)
                logger.info("Order %s halted in preview; confirm or reject it to continue.", cid)
                return self._outcome(cid, OrderStatus.PREVIEW, enriched=enriched)

            return self._submit(order, enriched, navigator, page)
        except Exception as e:
            return self._handle_failure(order, e, navigator=navigator, page=page, enriched=enriched)
        finally:
            with self._guard:
                self._cancel_events.pop(cid, None)
            if not held:
                if browser is not None:
                    browser.close()
                lock.release()

    def confirm(self, correlation_id: str) -> OrderOutcome:
        run = self._previews.pop(correlation_id, None)
        if run is None:
            raise PreviewNotPending(f"Order {correlation_id} is not waiting in preview")
        logger.info("Order %s approved; submitting.", correlation_id)
        try:
            return self._submit(run.order, run.enriched, run.navigator, run.page)
        except Exception as e:
            return self._handle_failure(run.order, e, navigator=run.navigator, page=run.page, enriched=run.enriched)
        finally:
            run.browser.close()
            run.lock.release()

    def reject(self, correlation_id: str, *, reason: str = "rejected during preview") -> OrderOutcome:
        run = self._previews.pop(correlation_id, None)
        if run is None:
            raise PreviewNotPending(f"Order {correlation_id} is not waiting in preview")
        try:
            ref = run.navigator.abandon(run.page, "rejected")
            self.state.set_order_status(
                correlation_id,
                OrderStatus.NEEDS_MANUAL_REVIEW,
                message=reason,
                error=reason,
                last_screenshot=ref,
            )
            logger.info("Order %s rejected in preview: %s", correlation_id, reason)
            return self._outcome(correlation_id, OrderStatus.NEEDS_MANUAL_REVIEW, error=reason, enriched=run.enriched)
        finally:
            run.browser.close()
            run.lock.release()

    def cancel(self, correlation_id: str) -> bool:
        """
        Request cancellation. A running order stops at its next stage boundary; an order in
        preview or still queued is cancelled immediately. Returns False when there is nothing to cancel.
        """
        with self._guard:
            event = self._cancel_events.get(correlation_id)
        if event is not None:
            event.set()
            logger.info("Cancellation requested for running order %s", correlation_id)
            return True

        run = self._previews.pop(correlation_id, None)
        if run is not None:
            try:
                ref = run.navigator.abandon(run.page, "cancelled")
                self.state.set_order_status(correlation_id, OrderStatus.CANCELLED, message="cancelled in preview", last_screenshot=ref)
            finally:
                run.browser.close()
                run.lock.release()
                self.audit.release(correlation_id)
            return True

        stored = self.state.get_order(correlation_id)
        if stored is not None and stored.status is OrderStatus.PENDING:
            self.state.set_order_status(correlation_id, OrderStatus.CANCELLED, message="cancelled while queued")
            return True
        return False

    @property
    def previews(self) -> list[str]:
        return list(self._previews)

    # --- internals ---

    def _navigator_for(self, portal: PortalConfig, order: OrderRequest, cancel_event: threading.Event) -> OrderNavigator:
        e = self.config.engine
        selectors = catalog_for(portal.name, portal.field_overrides, portal.required_overrides)
        resolver = ElementResolver(self.adaptive, max_markup_chars=self.config.adaptive.max_markup_chars)
        auth = AuthenticationFlow(
            portal,
            selectors,
            resolver,
            self.sweeper,
            self.sessions,
            verify_timeout_ms=e.auth_verify_timeout_ms,
            navigation_timeout_ms=e.navigation_timeout_ms,
        )
        return OrderNavigator(
            portal,
            order,
            selectors=selectors,
            resolver=resolver,
            sweeper=self.sweeper,
            auth=auth,
            audit=self.audit,
            policy=self.policy,
            element_timeout_ms=e.element_timeout_ms,
            confirmation_timeout_ms=e.confirmation_timeout_ms,
            step_delay_ms=e.step_delay_ms,
            cancel_event=cancel_event,
            sleep=self._sleep,
        )

    def _mark_in_progress(self, order: OrderRequest) -> None:
        stored = self.state.get_order(order.correlation_id)
        if stored is None:
            self.state.enqueue_order(order)
        if stored is None or stored.status is not OrderStatus.IN_PROGRESS:
            self.state.set_order_status(order.correlation_id, OrderStatus.IN_PROGRESS, message="started")

    def _submit(self, order: OrderRequest, enriched: EnrichedPatient, navigator: OrderNavigator, page: Page) -> OrderOutcome:
        number = navigator.submit(page)
        cid = order.correlation_id
        self.state.set_order_status(
            cid,
            OrderStatus.COMPLETED,
            message="confirmed",
            confirmation_number=number,
            last_screenshot=self.audit.last_reference(cid),
        )
        return self._outcome(cid, OrderStatus.COMPLETED, confirmation_number=number, enriched=enriched)

    def _handle_failure(
        self,
        order: OrderRequest,
        exc: BaseException,
        *,
        navigator: Optional[OrderNavigator],
        page: Optional[Page],
        enriched: Optional[EnrichedPatient],
    ) -> OrderOutcome:
        cid = order.correlation_id

        if isinstance(exc, OrderCancelled):
            ref = navigator.abandon(page, "cancelled") if navigator is not None else None
            self.state.set_order_status(cid, OrderStatus.CANCELLED, message=str(exc), last_screenshot=ref)
            logger.info("Order %s cancelled.", cid)
            return self._outcome(cid, OrderStatus.CANCELLED, error=str(exc), enriched=enriched)

        if navigator is not None and navigator.last_exception is exc and navigator.last_decision is not None:
            decision = navigator.last_decision
        else:
            # Failed outside the stage loop (browser launch, unknown portal): nothing left to retry.
            submitted = navigator.submit_attempted if navigator is not None else False
            decision = self.policy.decide(exc, attempt=self.policy.max_attempts, submitted=submitted)

        if navigator is not None:
            try:
                navigator.fail(page)
            except Exception:
                logger.debug("Failed to record failure screenshot for %s.", cid, exc_info=True)
        screenshot = self.audit.last_reference(cid)
        error = f"{type(exc).__name__}: {exc}"
        logger.error("Order %s failed at stage=%s: %s", cid, decision.stage or "-", error)

        try:
            payload = self.escalator.escalate(order, exc, decision, screenshot_reference=screenshot)
        except Exception:
            logger.exception("Escalation for order %s failed; marking it failed.", cid)
            self.state.set_order_status(cid, OrderStatus.FAILED, message="escalation failed", error=error, last_screenshot=screenshot)
            return self._outcome(cid, OrderStatus.FAILED, error=error, enriched=enriched)

        target: EscalationTarget = payload.escalation_target
        self.state.set_order_status(
            cid,
            OrderStatus.NEEDS_MANUAL_REVIEW,
            message=f"escalated to {target.value}",
            error=error,
            escalation=target.value,
            last_screenshot=screenshot,
            document_reference=payload.document_reference,
        )
        return self._outcome(
            cid,
            OrderStatus.NEEDS_MANUAL_REVIEW,
            error=error,
            escalation=target,
            document_reference=payload.document_reference,
            enriched=enriched,
        )

    def _outcome(
        self,
        cid: str,
        status: OrderStatus,
        *,
        confirmation_number: Optional[str] = None,
        error: Optional[str] = None,
        escalation: Optional[EscalationTarget] = None,
        document_reference: Optional[str] = None,
        enriched: Optional[EnrichedPatient] = None,
    ) -> OrderOutcome:
        outcome = OrderOutcome(
            correlation_id=cid,
            status=status,
            confirmation_number=confirmation_number,
            audit=self.audit.record_for(cid).entries,
            last_screenshot=self.audit.last_reference(cid),
            error=error,
            escalation=escalation,
            verification=enriched.verification if enriched is not None else None,
            document_reference=document_reference,
        )
        if status is not OrderStatus.PREVIEW:
            self.audit.release(cid)
        return outcome
