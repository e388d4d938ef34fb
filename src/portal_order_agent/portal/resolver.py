from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from playwright.sync_api import Page

from ..errors import ElementNotFound
from .adaptive import AdaptiveLocator, excerpt_markup
from .interactions import usable_matches
from .selectors import ElementQuery


logger = logging.getLogger(__name__)

# Interactive elements enumerated by the heuristic scan, per expected kind.
KIND_SELECTORS: Mapping[str, str] = {
    "text": (
        'input:not([type]), input[type="text"], input[type="email"], input[type="tel"], '
        'input[type="date"], input[type="search"], input[type="number"], input[type="password"]'
    ),
    "select": "select",
    "checkbox": 'input[type="checkbox"], input[type="radio"]',
    "textarea": "textarea",
}

# Attribute weights for the heuristic scan. Labels are what humans read, so they count most.
_ATTRIBUTE_WEIGHTS: Mapping[str, float] = {
    "label": 3.0,
    "aria_label": 3.0,
    "placeholder": 2.0,
    "name": 2.0,
    "id": 1.5,
}
_HINT_BONUS = 3.0
MIN_HEURISTIC_SCORE = 3.0

# Collects the attributes the heuristic scan scores, including the text of any associated <label>.
_DESCRIBE_JS = """
(el) => {
  const byFor = el.id ? document.querySelector(`label[for="${CSS.escape(el.id)}"]`) : null;
  const wrapping = el.closest('label');
  const labelledBy = el.getAttribute('aria-labelledby');
  let label = (byFor && byFor.innerText) || (wrapping && wrapping.innerText) || '';
  if (!label && labelledBy) {
    label = labelledBy.split(/\\s+/).map(id => (document.getElementById(id) || {}).innerText || '').join(' ');
  }
  return {
    name: el.getAttribute('name') || '',
    id: el.id || '',
    placeholder: el.getAttribute('placeholder') || '',
    aria_label: el.getAttribute('aria-label') || '',
    label: label || '',
  };
}
"""

_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def _normalize(text: str) -> str:
    text = _CAMEL_RE.sub(r"\1 \2", text or "")
    return _NON_ALNUM_RE.sub(" ", text.lower()).strip()


def field_tokens(field: str) -> tuple[str, ...]:
    """'patient.first_name' -> ('first', 'name')"""
    leaf = field.rsplit(".", 1)[-1]
    return tuple(t for t in _normalize(leaf).split() if t)


def score_attributes(tokens: tuple[str, ...], hints: tuple[str, ...], attrs: Mapping[str, str]) -> float:
    score = 0.0
    for attr, weight in _ATTRIBUTE_WEIGHTS.items():
        text = _normalize(str(attrs.get(attr) or ""))
        if not text:
            continue
        words = set(text.split())
        score += weight * sum(1 for t in tokens if t in words)
        padded = f" {text} "
        for hint in hints:
            h = _normalize(hint)
            if h and f" {h} " in padded:
                score += _HINT_BONUS
                break
    return score


@dataclass(frozen=True)
class Resolution:
    field: str
    locator: Any
    strategy: str  # catalog | heuristic | adaptive
    selector: str = ""
    score: float = 0.0


class _NotFound:
    _instance: Optional["_NotFound"] = None

    def __new__(cls) -> "_NotFound":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFound()

ResolveResult = Union[Resolution, _NotFound]


class ElementResolver:
    """
    Locate a semantic field on the live page: exact catalog, then heuristic attribute scan, then
    the optional adaptive collaborator. Results are never cached; pages re-render between steps.
    """

    def __init__(self, adaptive: Optional[AdaptiveLocator] = None, *, max_markup_chars: int = 5_000) -> None:
        self.adaptive = adaptive
        self.max_markup_chars = max_markup_chars
        self.provenance: list[dict[str, str]] = []

    def resolve(self, query: ElementQuery, page: Page, *, value_hint: str = "", allow_adaptive: bool = True) -> ResolveResult:
        found = self._from_catalog(query, page)
        if found is None:
            found = self._from_heuristics(query, page)
        if found is None and allow_adaptive and self.adaptive is not None:
            found = self._from_adaptive(query, page, value_hint=value_hint)
        if found is None:
            return NOT_FOUND

        logger.debug("Resolved %s via %s (%s)", query.field, found.strategy, found.selector)
        return found

    def require(self, query: ElementQuery, page: Page, *, value_hint: str = "", stage: Optional[str] = None) -> Resolution:
        found = self.resolve(query, page, value_hint=value_hint)
        if not found:
            raise ElementNotFound(query.field, stage=stage)
        return found

    # --- tier 1 ---

    def _from_catalog(self, query: ElementQuery, page: Page) -> Optional[Resolution]:
        for selector in query.candidates:
            matches = usable_matches(page, selector)
            if len(matches) == 1:
                return Resolution(field=query.field, locator=matches[0], strategy="catalog", selector=selector)
            if len(matches) > 1:
                logger.debug("Catalog selector for %s is ambiguous (%d matches): %s", query.field, len(matches), selector)
        return None

    # --- tier 2 ---

    def _from_heuristics(self, query: ElementQuery, page: Page) -> Optional[Resolution]:
        kind_selector = KIND_SELECTORS.get(query.kind)
        if not kind_selector:
            return None
        tokens = field_tokens(query.field)

        scored: list[tuple[float, Any]] = []
        for el in usable_matches(page, kind_selector):
            try:
                attrs = el.evaluate(_DESCRIBE_JS) or {}
            except Exception:
                continue
            s = score_attributes(tokens, query.label_hints, attrs)
            if s > 0:
                scored.append((s, el))

        if not scored:
            return None
        scored.sort(key=lambda t: t[0], reverse=True)
        best_score, best = scored[0]
        runner_up = scored[1][0] if len(scored) > 1 else 0.0
        if best_score < MIN_HEURISTIC_SCORE:
            logger.debug("Heuristic best for %s scored %.1f (< %.1f)", query.field, best_score, MIN_HEURISTIC_SCORE)
            return None
        if best_score <= runner_up:
            logger.debug("Heuristic scan for %s is ambiguous (top score %.1f shared)", query.field, best_score)
            return None
        return Resolution(field=query.field, locator=best, strategy="heuristic", selector=kind_selector, score=best_score)

    # --- tier 3 ---

    def _from_adaptive(self, query: ElementQuery, page: Page, *, value_hint: str) -> Optional[Resolution]:
        try:
            markup = excerpt_markup(page.content(), self.max_markup_chars)
            proposals = self.adaptive.propose(query.field, value_hint, markup)
        except Exception as e:
            logger.warning("Adaptive lookup for %s failed: %s", query.field, e)
            return None

        for selector in proposals[:3]:
            try:
                matches = usable_matches(page, selector, require_enabled=False)
            except Exception:
                continue
            if len(matches) != 1:
                continue
            model = getattr(self.adaptive, "model", "")
            self.provenance.append(
                {"field": query.field, "selector": selector, "strategy": "adaptive", "model": model}
            )
            logger.warning(
                "Adaptive lookup resolved %s with selector %r (model=%s); add it to the catalog if it is correct.",
                query.field,
                selector,
                model,
            )
            return Resolution(field=query.field, locator=matches[0], strategy="adaptive", selector=selector)
        logger.info("Adaptive lookup for %s produced no unique match.", query.field)
        return None
