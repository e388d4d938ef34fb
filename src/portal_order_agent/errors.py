from __future__ import annotations

from typing import Iterable, Optional


class PortalAutomationError(RuntimeError):
    """
    Base class for failures raised while driving a portal.

    `stage` is the navigation stage (or auth step) active when the failure happened, when known.
    """

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class AuthenticationFailure(PortalAutomationError):
    """Credentials rejected, or none of the post-login signals appeared in time."""


class ElementNotFound(PortalAutomationError):
    """A required control could not be located (or was present but disabled)."""

    def __init__(self, field: str, message: str = "", *, stage: Optional[str] = None) -> None:
        super().__init__(message or f"Required element not found: {field}", stage=stage)
        self.field = field


class PortalValidationError(PortalAutomationError):
    """The portal itself reported that the entered order data is invalid."""

    def __init__(self, messages: Iterable[str], *, stage: Optional[str] = None) -> None:
        self.messages = tuple(m for m in messages if m)
        summary = "; ".join(self.messages) or "portal reported a validation error"
        super().__init__(f"Portal validation failed: {summary}", stage=stage)


class TransientInteractionError(PortalAutomationError):
    """Timing race, stale element or network hiccup. Safe to retry."""


class OracleUnavailable(PortalAutomationError):
    """The eligibility oracle could not be reached or returned garbage."""


class ConfirmationNotFound(PortalAutomationError):
    """The order was submitted but no confirmation identifier could be read from the page."""


class OrderCancelled(PortalAutomationError):
    """A cancel request was honoured at a stage boundary."""


class PreviewNotPending(PortalAutomationError):
    """confirm()/reject() was called for an order that is not halted in preview."""


class PortalBusy(PortalAutomationError):
    """Another order already owns the browser session for this portal."""
