from __future__ import annotations

import json

import pytest

from fakes import FakeContext, FakeElement, FakePage, ScriptedPortal
from portal_order_agent.config import PortalConfig
from portal_order_agent.errors import AuthenticationFailure
from portal_order_agent.portal.auth import AuthenticationFlow, AuthStep, best_effort_login_failure_reason
from portal_order_agent.portal.popups import PopupSweeper
from portal_order_agent.portal.resolver import ElementResolver
from portal_order_agent.portal.selectors import catalog_for
from portal_order_agent.session import SessionStore
from portal_order_agent.state import StateStore


@pytest.fixture()
def sessions(state: StateStore) -> SessionStore:
    return SessionStore(state)


def _flow(sessions: SessionStore, **portal_kw) -> AuthenticationFlow:
    portal = PortalConfig(name="labcorp", **({"username": "clinic", "password": "pw-123"} | portal_kw))
    return AuthenticationFlow(
        portal,
        catalog_for("labcorp"),
        ElementResolver(),
        PopupSweeper(settle_ms=0),
        sessions,
        verify_timeout_ms=1_000,
    )


def test_single_page_login_reaches_dashboard_and_saves_session(sessions: SessionStore) -> None:
    portal = ScriptedPortal()
    context = FakeContext()
    flow = _flow(sessions)

    reused = flow.ensure_authenticated(portal.page, context)

    assert reused is False
    assert portal.fields["username"].value == "clinic"
    assert portal.fields["password"].value == "pw-123"
    assert portal.page.url.endswith("/dashboard")
    assert flow.steps[-1] is AuthStep.VERIFIED
    assert AuthStep.NEXT_CLICKED not in flow.steps

    saved = sessions.get("labcorp")
    assert saved is not None
    assert json.loads(saved.state) == context.state


def test_two_step_login_clicks_next_before_password(sessions: SessionStore) -> None:
    page = FakePage(url="https://link.labcorp.com/okta/login")
    username = page.input("#okta-signin-username")

    def _signed_in(_el: FakeElement) -> None:
        page.url = "https://link.labcorp.com/dashboard"
        page.remove(*list(page.elements))

    def _show_password(_el: FakeElement) -> None:
        page.input("#okta-signin-password")
        page.button("Sign In", on_click=_signed_in)

    page.button("Next", on_click=_show_password)
    flow = _flow(sessions)

    flow.login(page, FakeContext())

    assert username.value == "clinic"
    assert flow.steps == [
        AuthStep.START,
        AuthStep.USERNAME_ENTERED,
        AuthStep.NEXT_CLICKED,
        AuthStep.PASSWORD_ENTERED,
        AuthStep.SUBMITTED,
        AuthStep.VERIFIED,
    ]


def test_rejected_login_raises_and_invalidates_session(sessions: SessionStore) -> None:
    sessions.save("labcorp", '{"cookies": []}')
    page = FakePage(url="https://link.labcorp.com/login")
    page.input('input[name="username"]')
    page.input('input[name="password"]')
    page.button("Sign In", on_click=lambda _el: setattr(page, "extra_text", "Invalid username or password."))

    flow = _flow(sessions)
    with pytest.raises(AuthenticationFailure, match="rejected the username or password") as ei:
        flow.login(page, FakeContext())

    assert ei.value.stage == "authenticate"
    assert "pw-123" not in str(ei.value)
    assert flow.steps[-1] is AuthStep.FAILED
    assert sessions.get("labcorp") is None


def test_missing_credentials_fail_before_touching_the_page(sessions: SessionStore) -> None:
    page = FakePage()
    flow = _flow(sessions, username="", password="")
    with pytest.raises(AuthenticationFailure, match="No credentials"):
        flow.login(page, FakeContext())
    assert page.visits == []


def test_restored_session_is_reused_without_login(sessions: SessionStore) -> None:
    portal = ScriptedPortal(authenticated_on_arrival=True)
    flow = _flow(sessions)

    assert flow.ensure_authenticated(portal.page, FakeContext()) is True
    assert flow.steps == []
    assert portal.page.visits == ["https://link.labcorp.com"]
    assert sessions.get("labcorp") is not None


def test_login_page_saying_welcome_is_not_authenticated(sessions: SessionStore) -> None:
    page = FakePage(url="https://link.labcorp.com/")
    page.add(FakeElement(text="Welcome to Labcorp Link"))
    page.input('input[name="username"]')
    assert _flow(sessions).is_authenticated(page) is False


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Your account has been locked. Contact support.", "account is locked"),
        ("Too many failed attempts", "account is locked"),
        ("Incorrect user ID or password", "rejected the username or password"),
        ("Your password has expired", "password change"),
        ("Welcome back", None),
        ("", None),
    ],
)
def test_best_effort_login_failure_reason(text: str, expected) -> None:
    reason = best_effort_login_failure_reason(text)
    if expected is None:
        assert reason is None
    else:
        assert reason is not None and expected in reason


def test_reset_session_drops_stored_and_live_cookies(sessions: SessionStore) -> None:
    sessions.save("labcorp", '{"cookies": []}')
    context = FakeContext()

    _flow(sessions).reset_session(context)

    assert sessions.get("labcorp") is None
    assert context.cleared == 1
    assert context.state["cookies"] == []
