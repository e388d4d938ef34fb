from __future__ import annotations

import logging
import re
from typing import Any, Callable, Optional

from playwright.sync_api import Page


logger = logging.getLogger(__name__)

# Locators are inspected at most this deep; portals render long hidden template lists.
MAX_MATCHES = 25


def first_visible(scope, selector: str):
    """First visible match of `selector` in a Page or Frame, or None."""
    loc = scope.locator(selector)
    try:
        n = min(int(loc.count()), MAX_MATCHES)
    except Exception:
        n = 0
    for i in range(n):
        cand = loc.nth(i)
        try:
            if cand.is_visible():
                return cand
        except Exception:
            continue
    return None


def visible_matches(scope, selector: str, *, require_enabled: bool = False) -> list:
    loc = scope.locator(selector)
    try:
        n = min(int(loc.count()), MAX_MATCHES)
    except Exception:
        return []
    out = []
    for i in range(n):
        cand = loc.nth(i)
        try:
            if not cand.is_visible():
                continue
            if require_enabled and not cand.is_enabled():
                continue
        except Exception:
            continue
        out.append(cand)
    return out


def frames_of(page: Page) -> list:
    try:
        frames = list(page.frames)
    except Exception:
        frames = []
    return frames or [page]


def _text_pattern(text: str, *, exact: bool) -> re.Pattern[str]:
    if exact:
        return re.compile(rf"^\s*{re.escape(text)}\s*$", re.I)
    return re.compile(re.escape(text), re.I)


def find_clickable_by_texts(scope, texts: tuple[str, ...], *, exact: bool = False):
    """
    First visible button/link whose accessible name matches one of `texts`, searching in order.
    `scope` can be Page or Frame.
    """
    for t in texts:
        pattern = _text_pattern(t, exact=exact)
        for role in ("button", "link"):
            try:
                loc = scope.get_by_role(role, name=pattern)
                n = min(int(loc.count()), MAX_MATCHES)
            except Exception:
                continue
            for i in range(n):
                cand = loc.nth(i)
                try:
                    if cand.is_visible():
                        return cand
                except Exception:
                    continue
    return None


def click_first_by_texts(scope, texts: tuple[str, ...], *, exact: bool = False, timeout_ms: Optional[int] = None) -> bool:
    """
    Click the first visible button/link matching `texts`. Returns False when nothing matched.
    """
    target = find_clickable_by_texts(scope, texts, exact=exact)
    if target is None:
        return False
    if timeout_ms is None:
        target.click()
    else:
        target.click(timeout=timeout_ms)
    return True


def wait_for_settle(page: Page, *, timeout_ms: int = 10_000) -> None:
    """
    Avoid `networkidle`: portals keep analytics and keep-alive requests running forever.
    """
    try:
        page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
    except Exception:
        pass
    page.wait_for_timeout(500)


def body_text(page: Page) -> str:
    try:
        return page.inner_text("body") or ""
    except Exception:
        logger.debug("Failed to read body text.", exc_info=True)
        return ""


def poll(page: Page, probe: Callable[[], Any], *, timeout_ms: int, interval_ms: int = 250) -> Any:
    """
    Call `probe` until it returns something truthy or the budget is spent; returns the last result.
    """
    attempts = max(1, int(timeout_ms / max(interval_ms, 1)))
    result = None
    for i in range(attempts):
        result = probe()
        if result:
            return result
        if i < attempts - 1:
            page.wait_for_timeout(interval_ms)
    return result


def usable_matches(page: Page, selector: str, *, require_enabled: bool = True) -> list:
    """Visible (and by default enabled) matches of `selector` across every frame."""
    out: list = []
    for frame in frames_of(page):
        out.extend(visible_matches(frame, selector, require_enabled=require_enabled))
    return out
