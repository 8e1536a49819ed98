"""Query expansion collaborators.

An expander maps free text to a dict::

    {"phrases": [...], "city": str | None, "time_range": [start_ms, end_ms] | None}

``KeywordExpander`` works offline from date expressions and known cities.
``LLMExpander`` asks an OpenAI-compatible chat endpoint. Both raise
PlanningError on failure; the planner always recovers from it.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Protocol

import httpx

from config import (
    EXPANSION_TIMEOUT_SECONDS,
    LLM_API_KEY,
    LLM_API_URL,
    LLM_MODEL,
    MAX_LABELS,
    MAX_PHRASES,
)

logger = logging.getLogger(__name__)


class PlanningError(Exception):
    """The expansion collaborator failed or answered with something unusable."""


class PhraseExpander(Protocol):
    def expand(self, text: str) -> dict: ...


# ---------------------------------------------------------------------------
# Date expressions
# ---------------------------------------------------------------------------

_DECADE_RE = re.compile(r"\b(\d{4})s\b")
_RANGE_RE = re.compile(r"\b(\d{4})\s*[-–]\s*(\d{4})\b")
_YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
_DANGLING_RE = re.compile(r"\b(in|from|during|of|at)\s*$", re.IGNORECASE)


def parse_year_range(query: str) -> tuple[str, int | None, int | None]:
    """Extract a year range from the query and return the cleaned query.

    Recognizes:
      "2010s"       -> (cleaned, 2010, 2019)
      "2010-2015"   -> (cleaned, 2010, 2015)
      "2010"        -> (cleaned, 2010, 2010)

    Returns (cleaned_query, year_from, year_to). year_from/year_to are None
    when no date expression is found.
    """
    m = _DECADE_RE.search(query)
    if m:
        base = int(m.group(1))
        return _strip(query, m), base, base + 9

    m = _RANGE_RE.search(query)
    if m:
        y1, y2 = int(m.group(1)), int(m.group(2))
        return _strip(query, m), min(y1, y2), max(y1, y2)

    m = _YEAR_RE.search(query)
    if m:
        year = int(m.group(1))
        return _strip(query, m), year, year

    return query, None, None


def _strip(query: str, match: re.Match) -> str:
    cleaned = (query[:match.start()] + query[match.end():]).strip()
    cleaned = _DANGLING_RE.sub("", cleaned).strip()
    return re.sub(r"\s+", " ", cleaned)


def year_bounds_ms(year_from: int, year_to: int) -> tuple[int, int]:
    """Inclusive UTC epoch-ms bounds covering whole years."""
    start = datetime(year_from, 1, 1, tzinfo=timezone.utc)
    end = datetime(year_to + 1, 1, 1, tzinfo=timezone.utc)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000) - 1


# ---------------------------------------------------------------------------
# KeywordExpander
# ---------------------------------------------------------------------------


class KeywordExpander:
    """Offline expansion: year expressions become a time range, a known
    city name becomes a city filter, the rest stays a single phrase."""

    def __init__(self, known_cities: Callable[[], list[str]] | None = None):
        self._known_cities = known_cities

    def expand(self, text: str) -> dict:
        cleaned, year_from, year_to = parse_year_range(text)
        result: dict = {"phrases": [], "city": None, "time_range": None}
        if year_from is not None:
            result["time_range"] = list(year_bounds_ms(year_from, year_to))

        if self._known_cities is not None:
            # Longest names first so "New York" wins over "York".
            for city in sorted(self._known_cities(), key=len, reverse=True):
                pattern = re.compile(rf"\b(?:in\s+)?{re.escape(city)}\b", re.IGNORECASE)
                m = pattern.search(cleaned)
                if m:
                    result["city"] = city
                    cleaned = _strip(cleaned, m)
                    break

        if cleaned:
            result["phrases"] = [cleaned]
        return result

    def expand_labels(self, text: str) -> list[str]:
        labels = [s.strip() for s in re.split(r"\n|,", text)]
        return [s for s in labels if s][:MAX_LABELS]


# ---------------------------------------------------------------------------
# LLMExpander
# ---------------------------------------------------------------------------

_EXPAND_PROMPT = """Return JSON only with keys: phrases, city, startMs, endMs.
phrases: array of 3-{max_phrases} short strings (<=6 words) capturing different facets of the query (objects, attributes, actions, scenes, moods).
city: string or null.
startMs: integer epoch ms or null.
endMs: integer epoch ms or null.
Query: {query}"""

_LABELS_PROMPT = """Return JSON only with key labels: array of 5-{max_labels} concise image labels (<=6 words each) covering color, objects, scenes, moods.
Query: {query}"""


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text


class LLMExpander:
    """Query expansion through an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_url: str = LLM_API_URL,
        api_key: str = LLM_API_KEY,
        model: str = LLM_MODEL,
        timeout: float = EXPANSION_TIMEOUT_SECONDS,
        http: httpx.Client | None = None,
    ):
        self._api_url = api_url
        self._api_key = api_key
        self._model = model
        self._http = http or httpx.Client(timeout=timeout)

    def _complete(self, prompt: str) -> str:
        if not self._api_key:
            raise PlanningError("LLM API key is not set")
        try:
            resp = self._http.post(
                self._api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "model": self._model,
                    "messages": [{"role": "user", "content": prompt}],
                    "temperature": 0.2,
                },
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PlanningError(f"LLM request failed: {exc}") from exc
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise PlanningError("LLM response has no message content") from exc

    def _complete_json(self, prompt: str):
        text = _strip_code_fence(self._complete(prompt))
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise PlanningError(f"LLM returned non-JSON output: {text[:80]!r}") from exc

    def expand(self, text: str) -> dict:
        obj = self._complete_json(_EXPAND_PROMPT.format(max_phrases=MAX_PHRASES, query=text))
        if not isinstance(obj, dict):
            raise PlanningError("LLM expansion is not a JSON object")
        start, end = obj.get("startMs"), obj.get("endMs")
        time_range = None
        if start is not None or end is not None:
            time_range = [start, end]
        return {"phrases": obj.get("phrases"), "city": obj.get("city"), "time_range": time_range}

    def expand_labels(self, text: str) -> list[str]:
        obj = self._complete_json(_LABELS_PROMPT.format(max_labels=MAX_LABELS, query=text))
        labels = obj.get("labels") if isinstance(obj, dict) else obj
        if not isinstance(labels, list):
            raise PlanningError("LLM labels are not a JSON array")
        cleaned = [str(s).strip() for s in labels]
        return [s for s in cleaned if s][:MAX_LABELS]
