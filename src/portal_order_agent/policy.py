from __future__ import annotations

import logging
from typing import Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from .errors import (
    AuthenticationFailure,
    ConfirmationNotFound,
    ElementNotFound,
    PortalValidationError,
    TransientInteractionError,
)
from .models import EscalationTarget, FailureClass, RetryDecision


logger = logging.getLogger(__name__)

# Substrings of Playwright error messages that mean "the page moved under us", not "the page is wrong".
_TRANSIENT_HINTS: tuple[str, ...] = (
    "element is not attached",
    "element is detached",
    "not attached to the dom",
    "stale",
    "execution context was destroyed",
    "frame was detached",
    "net::err_",
    "econnreset",
    "socket hang up",
    "navigation interrupted",
)

_STRUCTURAL: tuple[type[BaseException], ...] = (
    AuthenticationFailure,
    ElementNotFound,
    PortalValidationError,
    ConfirmationNotFound,
)


class RetryPolicy:
    """
    Single decision point for "retry, or escalate, and to whom".

    Transient failures back off exponentially (base * 2**(attempt-1), capped) until `max_attempts`
    total attempts have been made. Structural failures are never retried.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 30.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    def classify(self, exc: BaseException) -> FailureClass:
        if isinstance(exc, _STRUCTURAL):
            return FailureClass.STRUCTURAL
        if isinstance(exc, (TransientInteractionError, PlaywrightTimeoutError)):
            return FailureClass.TRANSIENT
        if isinstance(exc, PlaywrightError):
            msg = str(exc).lower()
            if any(h in msg for h in _TRANSIENT_HINTS):
                return FailureClass.TRANSIENT
        # Anything unrecognised is structural.
        return FailureClass.STRUCTURAL

    def backoff_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return min(self.backoff_base_seconds * 2 ** (max(attempt, 1) - 1), self.backoff_max_seconds)

    def escalation_target(self, exc: BaseException, *, submitted: bool = False) -> EscalationTarget:
        """After the submit click the order may already be at the lab; only a person can settle it."""
        if submitted or isinstance(exc, (PortalValidationError, AuthenticationFailure, ConfirmationNotFound)):
            return EscalationTarget.HUMAN
        return EscalationTarget.DOCUMENT_FALLBACK

    def decide(
        self,
        exc: BaseException,
        *,
        attempt: int,
        stage: Optional[str] = None,
        submitted: bool = False,
    ) -> RetryDecision:
        failure_class = self.classify(exc)
        error_type = type(exc).__name__
        stage_name = stage or getattr(exc, "stage", None) or ""

        if failure_class is FailureClass.TRANSIENT and attempt < self.max_attempts:
            backoff = self.backoff_for(attempt)
            logger.info(
                "Transient %s at stage=%s (attempt %d/%d); retrying in %.1fs",
                error_type,
                stage_name or "-",
                attempt,
                self.max_attempts,
                backoff,
            )
            return RetryDecision(
                failure_class=failure_class,
                error_type=error_type,
                retry=True,
                backoff_seconds=backoff,
                attempt=attempt,
                stage=stage_name,
                reason=str(exc),
            )

        target = self.escalation_target(exc, submitted=submitted)
        if failure_class is FailureClass.TRANSIENT:
            reason = f"retry budget exhausted after {attempt} attempts: {exc}"
        else:
            reason = str(exc)
        logger.warning("Escalating %s at stage=%s to %s: %s", error_type, stage_name or "-", target.value, reason)
        return RetryDecision(
            failure_class=failure_class,
            error_type=error_type,
            retry=False,
            escalation=target,
            attempt=attempt,
            stage=stage_name,
            reason=reason,
        )
