from __future__ import annotations

import logging
import re

from playwright.sync_api import Page

from .interactions import MAX_MATCHES, first_visible, frames_of


logger = logging.getLogger(__name__)

# Close icons and consent-manager buttons that have no useful accessible name.
DISMISS_SELECTORS: tuple[str, ...] = (
    "#onetrust-accept-btn-handler",
    "button#truste-consent-button",
    '[role="dialog"] button[aria-label="Close"]',
    '[role="dialog"] button[aria-label="Dismiss"]',
    ".modal.show button.close",
    "button.announcement-close",
)

# Exact button names; anchored so "OK" never matches "Book" and "Close" never matches "Close Order".
DISMISS_TEXTS: tuple[str, ...] = (
    "Accept all",
    "Accept All Cookies",
    "Accept",
    "I agree",
    "Got it",
    "OK",
    "Dismiss",
    "No thanks",
    "No, thanks",
    "Remind me later",
    "Close",
)

# A control inside a dialog or form that holds data-entry fields belongs to the workflow
# (e.g. the new-patient modal's close icon), not to an announcement.
_IN_WORKFLOW_JS = """
(el) => {
  const box = el.closest('[role="dialog"], [role="alertdialog"], dialog, .modal, form');
  if (!box) return false;
  const fields = 'input:not([type="hidden"]):not([type="checkbox"]):not([type="radio"])'
    + ':not([type="button"]):not([type="submit"]), select, textarea';
  return box.querySelector(fields) !== null;
}
"""


def belongs_to_workflow(el) -> bool:
    try:
        return bool(el.evaluate(_IN_WORKFLOW_JS))
    except Exception:
        logger.debug("Could not inspect popup candidate container.", exc_info=True)
        return False


class PopupSweeper:
    """
    Clear announcements, consent banners and interstitials before a stage changes.

    Never raises; returns how many things were dismissed.
    """

    def __init__(self, *, max_iterations: int = 5, settle_ms: int = 300) -> None:
        self.max_iterations = max_iterations
        self.settle_ms = settle_ms
        self._patterns = [re.compile(rf"^\s*{re.escape(t)}\s*$", re.I) for t in DISMISS_TEXTS]

    def sweep(self, page: Page) -> int:
        dismissed = 0
        for _ in range(self.max_iterations):
            try:
                if not self._dismiss_one(page):
                    break
            except Exception:
                logger.debug("Popup sweep iteration failed.", exc_info=True)
                break
            dismissed += 1
            try:
                page.wait_for_timeout(self.settle_ms)
            except Exception:
                pass
        if dismissed:
            logger.info("Dismissed %d popup(s)", dismissed)
        return dismissed

    def _dismiss_one(self, page: Page) -> bool:
        for frame in frames_of(page):
            for selector in DISMISS_SELECTORS:
                try:
                    el = first_visible(frame, selector)
                    if el is not None and not belongs_to_workflow(el):
                        el.click(timeout=2_000)
                        logger.debug("Dismissed popup via selector %s", selector)
                        return True
                except Exception:
                    continue

            for pattern in self._patterns:
                try:
                    loc = frame.get_by_role("button", name=pattern)
                    n = min(int(loc.count()), MAX_MATCHES)
                except Exception:
                    continue
                for i in range(n):
                    cand = loc.nth(i)
                    try:
                        if cand.is_visible() and not belongs_to_workflow(cand):
                            cand.click(timeout=2_000)
                            logger.debug("Dismissed popup via button %s", pattern.pattern)
                            return True
                    except Exception:
                        continue
        return False
