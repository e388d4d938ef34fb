from __future__ import annotations

import json
import logging
import re
from typing import Optional, Protocol

from openai import OpenAI


logger = logging.getLogger(__name__)

_STRIP_BLOCKS_RE = re.compile(r"<(script|style|svg|noscript)\b[^>]*>.*?</\1\s*>", re.I | re.S)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.S)
_WS_RE = re.compile(r"\s+")

_SYSTEM_PROMPT = (
    "You locate form controls in HTML. Reply with JSON only: "
    '{"selectors": ["<css selector>", ...]} listing at most 3 CSS selectors, best first, '
    "each expected to match exactly one element. Reply {\"selectors\": []} when unsure."
)


class AdaptiveLocator(Protocol):
    model: str

    def propose(self, field: str, value_hint: str, markup: str) -> list[str]:
        """Candidate CSS selectors for `field`, best first."""


def excerpt_markup(html: str, max_chars: int = 5_000) -> str:
    """
    Shrink page markup to something worth sending: drop scripts, styles and comments, collapse
    whitespace, start at the first form when there is one, then truncate.
    """
    s = _STRIP_BLOCKS_RE.sub("", html or "")
    s = _COMMENT_RE.sub("", s)
    s = _WS_RE.sub(" ", s).strip()
    form_at = s.lower().find("<form")
    if form_at > 0:
        s = s[form_at:]
    return s[:max_chars]


def parse_selector_reply(raw: str) -> list[str]:
    data = _safe_parse_json(raw or "")
    if data is None:
        return []
    if isinstance(data, dict):
        items = data.get("selectors") or []
    elif isinstance(data, list):
        items = data
    else:
        return []
    out: list[str] = []
    for item in items:
        if isinstance(item, str) and item.strip():
            out.append(item.strip())
    return out


def _safe_parse_json(raw: str) -> Optional[object]:
    try:
        return json.loads(raw)
    except Exception:
        pass

    # Markdown code fence
    if "```" in raw:
        try:
            start = raw.find("```json")
            if start != -1:
                start = raw.find("\n", start) + 1
            else:
                start = raw.find("```") + 3
                start = raw.find("\n", start) + 1
            end = raw.find("```", start)
            if end != -1:
                return json.loads(raw[start:end].strip())
        except Exception:
            pass

    # Outermost { ... }
    if "{" in raw and "}" in raw:
        try:
            return json.loads(raw[raw.index("{") : raw.rfind("}") + 1])
        except Exception:
            pass

    return None


class OpenAIAdaptiveLocator:
    """
    Last-resort field lookup through an OpenAI chat model.

    Only a bounded markup excerpt is sent. Credential fields must be resolved with an empty
    `value_hint` so secrets never leave the process.
    """

    def __init__(self, api_key: str, *, model: str = "gpt-4o-mini", client: Optional[OpenAI] = None) -> None:
        self.model = model
        self._client = client or OpenAI(api_key=api_key)

    def propose(self, field: str, value_hint: str, markup: str) -> list[str]:
        user = f"Field: {field}\n"
        if value_hint:
            user += f"Value to enter: {value_hint}\n"
        user += f"HTML:\n{markup}"
        completion = self._client.chat.completions.create(
            model=self.model,
            temperature=0,
            max_tokens=200,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": user},
            ],
        )
        raw = completion.choices[0].message.content or ""
        selectors = parse_selector_reply(raw)
        logger.debug("Adaptive lookup for %s proposed %d selector(s)", field, len(selectors))
        return selectors
