from __future__ import annotations

import json
import logging
from typing import Optional

from playwright.sync_api import Browser, BrowserContext, Page, Playwright, sync_playwright


logger = logging.getLogger(__name__)

# Consent managers render late, sometimes in a shadow root, and intercept clicks on the form.
# Hide their hosts as soon as they mount.
_HIDE_CONSENT_SCRIPT = """
(() => {
  const HOSTS = ['transcend-consent-manager', 'onetrust-consent-sdk', 'truste-consent-track'];
  const hide = () => {
    for (const id of HOSTS) {
      try {
        const host = document.getElementById(id);
        if (host) {
          host.style.setProperty('display', 'none', 'important');
          host.style.setProperty('pointer-events', 'none', 'important');
        }
      } catch (_) {}
    }
  };
  hide();
  new MutationObserver(() => hide()).observe(document.documentElement, { childList: true, subtree: true });
})();
"""


def parse_storage_state(raw: Optional[str]) -> Optional[dict]:
    """Decode a stored session blob; None when it is missing or not a Playwright storage state."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if isinstance(data, dict) and ("cookies" in data or "origins" in data):
        return data
    return None


class BrowserSession:
    """
    One Playwright browser + context + page, owned by a single order run.

    `close()` is safe to call more than once and on a partially opened session.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        slow_mo_ms: int = 0,
        navigation_timeout_ms: int = 30_000,
        element_timeout_ms: int = 5_000,
    ) -> None:
        self.headless = headless
        self.slow_mo_ms = slow_mo_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self.element_timeout_ms = element_timeout_ms

        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.used_stored_session = False

    def open(self, storage_state: Optional[str] = None) -> Page:
        self._pw = sync_playwright().start()
        self._browser = self._launch(self._pw)

        state = parse_storage_state(storage_state)
        if storage_state and state is None:
            logger.warning("Stored session blob is not valid storage state JSON; starting a fresh session.")

        ctx_kwargs: dict = {"viewport": {"width": 1280, "height": 900}, "color_scheme": "light"}
        if state is not None:
            ctx_kwargs["storage_state"] = state

        try:
            self.context = self._browser.new_context(**ctx_kwargs)
        except Exception as e:
            # A corrupt storage state can fail before we ever get a Page.
            if state is None:
                raise
            logger.warning("Failed to create browser context with stored session; using a fresh one. (%s)", e)
            ctx_kwargs.pop("storage_state", None)
            state = None
            self.context = self._browser.new_context(**ctx_kwargs)

        self.used_stored_session = state is not None
        self._install_context_hooks(self.context)
        self.context.set_default_timeout(self.element_timeout_ms)
        self.context.set_default_navigation_timeout(self.navigation_timeout_ms)

        self.page = self.context.new_page()
        self.page.on("response", _log_error_response)
        return self.page

    def _launch(self, p: Playwright) -> Browser:
        # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
        # cache doesn't have Playwright browsers available.
        try:
            return p.chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning("Playwright Chromium executable missing; falling back to system browser channel. (%s)", msg)

        try:
            return p.chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel="chrome")
        except Exception:
            return p.chromium.launch(headless=self.headless, slow_mo=self.slow_mo_ms, channel="msedge")

    def _install_context_hooks(self, ctx: BrowserContext) -> None:
        try:
            ctx.add_init_script(_HIDE_CONSENT_SCRIPT)
        except Exception:
            logger.debug("Failed to install consent-hiding init script.", exc_info=True)

    def close(self) -> None:
        for name, closer in (
            ("context", self.context.close if self.context else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._pw.stop if self._pw else None),
        ):
            if closer is None:
                continue
            try:
                closer()
            except Exception:
                logger.debug("Failed to close %s.", name, exc_info=True)
        self.page = None
        self.context = None
        self._browser = None
        self._pw = None

    def __enter__(self) -> "BrowserSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _log_error_response(response) -> None:
    try:
        if response.status >= 400:
            logger.debug("HTTP %s %s", response.status, response.url)
    except Exception:
        pass
