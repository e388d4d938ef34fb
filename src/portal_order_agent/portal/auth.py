from __future__ import annotations

import json
import logging
import re
from datetime import timedelta
from enum import Enum
from typing import Optional

from playwright.sync_api import BrowserContext, Page

from ..config import PortalConfig
from ..errors import AuthenticationFailure, ElementNotFound
from ..session import SessionStore
from .interactions import (
    body_text,
    click_first_by_texts,
    find_clickable_by_texts,
    frames_of,
    poll,
    usable_matches,
    wait_for_settle,
)
from .popups import PopupSweeper
from .resolver import ElementResolver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)

AUTH_STAGE = "authenticate"


class AuthStep(str, Enum):
    START = "start"
    USERNAME_ENTERED = "username_entered"
    NEXT_CLICKED = "next_clicked"
    PASSWORD_ENTERED = "password_entered"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    FAILED = "failed"


class AuthenticationFlow:
    """
    Log into a portal, or confirm that a restored session already is.

    Handles single-page and two-step (username, Next, password) forms. Success is verified by an
    authenticated-area URL or a dashboard marker, never by the absence of an error.
    """

    def __init__(
        self,
        portal: PortalConfig,
        selectors: PortalSelectors,
        resolver: ElementResolver,
        sweeper: PopupSweeper,
        sessions: SessionStore,
        *,
        verify_timeout_ms: int = 15_000,
        navigation_timeout_ms: int = 30_000,
    ) -> None:
        self.portal = portal
        self.selectors = selectors
        self.resolver = resolver
        self.sweeper = sweeper
        self.sessions = sessions
        self.verify_timeout_ms = verify_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self.steps: list[AuthStep] = []

    def _mark(self, step: AuthStep) -> None:
        self.steps.append(step)
        logger.debug("Auth %s: %s", self.portal.name, step.value)

    def ensure_authenticated(self, page: Page, context: BrowserContext) -> bool:
        """
        Returns True when a stored session was reused, False when a fresh login happened.
        """
        page.goto(self.portal.login_url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        wait_for_settle(page)
        self.sweeper.sweep(page)

        if self.is_authenticated(page):
            logger.info("Reusing stored %s session.", self.portal.name)
            self._save_session(context)
            return True

        self.login(page, context)
        return False

    def login(self, page: Page, context: BrowserContext) -> None:
        self.steps = []
        self._mark(AuthStep.START)
        if not self.portal.has_credentials:
            self._mark(AuthStep.FAILED)
            self.sessions.invalidate(self.portal.name)
            raise AuthenticationFailure(f"No credentials configured for portal {self.portal.name!r}", stage=AUTH_STAGE)

        try:
            self._enter_credentials(page)
        except Exception:
            self._mark(AuthStep.FAILED)
            self.sessions.invalidate(self.portal.name)
            raise

        if not self.verify(page):
            self._mark(AuthStep.FAILED)
            self.sessions.invalidate(self.portal.name)
            reason = best_effort_login_failure_reason(body_text(page))
            raise AuthenticationFailure(
                reason
                or f"Login to {self.portal.name} did not reach the authenticated area within "
                f"{self.verify_timeout_ms / 1000:.0f}s",
                stage=AUTH_STAGE,
            )

        self._mark(AuthStep.VERIFIED)
        logger.info("Logged into %s.", self.portal.name)
        self._save_session(context)

    def _enter_credentials(self, page: Page) -> None:
        username_q = self.selectors.query("login.username")
        password_q = self.selectors.query("login.password")

        # Landing pages often hide the form behind a "Sign In" entry point.
        if not self.resolver.resolve(username_q, page, allow_adaptive=False):
            if click_first_by_texts(page, self.selectors.login_entry_texts):
                wait_for_settle(page)
                self.sweeper.sweep(page)

        # Credentials are never passed as value hints.
        user = self.resolver.require(username_q, page, stage=AUTH_STAGE)
        user.locator.fill(self.portal.username)
        self._mark(AuthStep.USERNAME_ENTERED)

        pwd = self.resolver.resolve(password_q, page, allow_adaptive=False)
        if not pwd:
            if not click_first_by_texts(page, self.selectors.login_continue_texts):
                raise ElementNotFound("login.continue", "No password field and no Next/Continue control", stage=AUTH_STAGE)
            self._mark(AuthStep.NEXT_CLICKED)
            wait_for_settle(page)
            pwd = poll(
                page,
                lambda: self.resolver.resolve(password_q, page, allow_adaptive=False),
                timeout_ms=5_000,
            )
            if not pwd:
                pwd = self.resolver.require(password_q, page, stage=AUTH_STAGE)

        pwd.locator.fill(self.portal.password)
        self._mark(AuthStep.PASSWORD_ENTERED)

        submit = find_clickable_by_texts(page, self.selectors.login_submit_texts)
        if submit is not None:
            submit.click()
        else:
            pwd.locator.press("Enter")
        self._mark(AuthStep.SUBMITTED)
        wait_for_settle(page)

    def verify(self, page: Page) -> bool:
        return bool(poll(page, lambda: self.is_authenticated(page), timeout_ms=self.verify_timeout_ms))

    def is_authenticated(self, page: Page) -> bool:
        # A visible login form wins over everything else: some login pages say "Welcome".
        if self._login_form_visible(page):
            return False

        url = (getattr(page, "url", "") or "").lower()
        if any(p.lower() in url for p in self.portal.login_url_patterns):
            return False
        if find_clickable_by_texts(page, self.selectors.login_entry_texts, exact=True) is not None:
            return False
        if any(p.lower() in url for p in self.portal.authenticated_url_patterns):
            return True

        for marker in self.portal.authenticated_markers:
            for frame in frames_of(page):
                try:
                    loc = frame.get_by_text(marker, exact=False)
                    if loc.count() > 0 and loc.first.is_visible():
                        return True
                except Exception:
                    continue

        for pat in (r"sign\s*out", r"log\s*out"):
            for role in ("link", "button"):
                try:
                    if page.get_by_role(role, name=re.compile(pat, re.I)).count() > 0:
                        return True
                except Exception:
                    pass
        return False

    def _login_form_visible(self, page: Page) -> bool:
        candidates = self.selectors.query("login.username").candidates + self.selectors.query("login.password").candidates
        for selector in candidates:
            # Order forms carry email inputs too; only login-specific selectors count here.
            if 'type="email"' in selector:
                continue
            if usable_matches(page, selector, require_enabled=False):
                return True
        return False

    def reset_session(self, context: Optional[BrowserContext] = None) -> None:
        """Forget the stored session and drop the live context's cookies so the next try logs in fresh."""
        self.sessions.invalidate(self.portal.name)
        if context is None:
            return
        try:
            context.clear_cookies()
        except Exception:
            logger.warning("Could not clear %s cookies before retrying login.", self.portal.name, exc_info=True)

    def _save_session(self, context: BrowserContext) -> None:
        try:
            state = context.storage_state()
        except Exception:
            logger.warning("Could not read browser storage state; session will not be reused.", exc_info=True)
            return
        self.sessions.save(
            self.portal.name,
            json.dumps(state),
            ttl=timedelta(minutes=self.portal.session_ttl_minutes),
        )


def best_effort_login_failure_reason(text: str) -> Optional[str]:
    """
    Turn the portal's own error banner into an actionable message. Never echoes what was typed.
    """
    txt = (text or "").strip()
    if not txt:
        return None

    if re.search(r"account\s+(?:is\s+|has\s+been\s+|will\s+be\s+)?locked|too\s+many\s+(?:failed\s+)?attempts", txt, re.I):
        return "Login failed: the portal reports the account is locked or out of attempts."

    if re.search(r"(invalid|incorrect|unable to sign in|could not be verified).{0,40}(user\s*name|user\s*id|password|credentials)", txt, re.I):
        return "Login failed: the portal rejected the username or password."

    if re.search(r"password\s+(?:has\s+)?expired|must\s+change\s+your\s+password", txt, re.I):
        return "Login failed: the portal requires a password change."

    return None
