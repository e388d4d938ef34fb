from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping


@dataclass(frozen=True)
class PortalInfo:
    name: str
    display_name: str
    base_url: str
    login_url: str = ""
    # Substrings of page.url that only appear inside the authenticated area.
    authenticated_url_patterns: tuple[str, ...] = ()
    # Visible texts that only render once logged in.
    authenticated_markers: tuple[str, ...] = ()
    # Substrings of page.url that mean "still on the login page".
    login_url_patterns: tuple[str, ...] = field(default=("/login",))


# Built-in portal profiles. Unknown portals are still allowed when base_url is configured.
KNOWN_PORTALS: Mapping[str, PortalInfo] = {
    "labcorp": PortalInfo(
        name="labcorp",
        display_name="Labcorp Link",
        base_url="https://link.labcorp.com",
        authenticated_url_patterns=("/dashboard",),
        authenticated_markers=("Welcome", "AccuDraw", "Lab Orders", "Results Inbox", "Supply Ordering"),
        login_url_patterns=("/login", "okta", "/oauth2/"),
    ),
    "quest": PortalInfo(
        name="quest",
        display_name="Quest Quanum",
        base_url="https://physician.quanum.questdiagnostics.com",
        login_url=(
            "https://auth2.questdiagnostics.com/cas/login?service="
            "https%3A%2F%2Fphysician.quanum.questdiagnostics.com%2Fhcp-server-web%2Flogin%2Fcas"
        ),
        authenticated_url_patterns=("/hcp-server-web/",),
        authenticated_markers=("Lab Order", "Quanum", "Results"),
        login_url_patterns=("/cas/login", "/login"),
    ),
}


def is_known_portal(name: str) -> bool:
    return (name or "").strip().lower() in KNOWN_PORTALS
