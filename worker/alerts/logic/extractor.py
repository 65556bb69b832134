"""
Forecast value extraction.

Upstream streamflow responses come in several nested shapes depending on the
requested horizon and on API vintage. ``ForecastValueExtractor`` normalises
any of them into a single flat ``ForecastSeries`` of CFS points.

Fallback Order (first non-empty candidate wins):
    1. ``shortRange.series.data``            -- near-term primary series
    2. ``mediumRange.mean.data`` / ``longRange.mean.data``
                                             -- extended ensemble mean
    3. ``<horizon>.member*`` sorted by key   -- first usable ensemble member
    4. Legacy flat arrays: ``values``, ``forecast.values``, then a depth-first
       search for the first list of ``{value, validTime}`` objects.

Each strategy is a pure function ``(response) -> (source, raw_points) | None``.
Candidates are filtered point-by-point; a candidate with no surviving points
is treated as absent and the next strategy is tried. The extractor never
raises.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Callable, Iterable

from worker.alerts.models import ForecastPoint, ForecastSeries

logger = logging.getLogger(__name__)

# A candidate is a (source label, raw point list) pair.
Candidate = tuple[str, list[Any]]
ExtractionStrategy = Callable[[Any], "list[Candidate]"]

NEAR_TERM_SECTIONS = ("shortRange",)
EXTENDED_SECTIONS = ("mediumRange", "longRange")
ENSEMBLE_SECTIONS = ("shortRange", "mediumRange", "longRange")

_LEGACY_SEARCH_MAX_DEPTH = 6


# ---------------------------------------------------------------------------
# Point Parsing
# ---------------------------------------------------------------------------


def _parse_time(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_flow(raw: Any) -> float | None:
    """Return ``raw`` as a float, or None if null, non-numeric or NaN."""
    if raw is None or isinstance(raw, bool):
        return None
    if not isinstance(raw, (int, float)):
        return None
    value = float(raw)
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def clean_points(raw_points: Iterable[Any]) -> list[ForecastPoint]:
    """Filter raw point objects down to valid ``ForecastPoint`` instances.

    Accepts both ``{validTime, flow}`` and legacy ``{validTime, value}``
    objects. Anything else is skipped.
    """
    points: list[ForecastPoint] = []
    for raw in raw_points:
        if not isinstance(raw, dict):
            continue
        flow = _parse_flow(raw["flow"] if "flow" in raw else raw.get("value"))
        if flow is None:
            continue
        points.append(
            ForecastPoint(valid_time=_parse_time(raw.get("validTime")), flow=flow)
        )
    return points


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _section(response: Any, key: str) -> dict[str, Any] | None:
    if not isinstance(response, dict):
        return None
    section = response.get(key)
    return section if isinstance(section, dict) else None


def _series_data(series: Any) -> list[Any] | None:
    if not isinstance(series, dict):
        return None
    data = series.get("data")
    return data if isinstance(data, list) else None


def primary_series(response: Any) -> list[Candidate]:
    """Strategy 1: the near-term single series."""
    candidates: list[Candidate] = []
    for key in NEAR_TERM_SECTIONS:
        section = _section(response, key)
        data = _series_data(section.get("series")) if section else None
        if data is not None:
            candidates.append(("series", data))
    return candidates


def ensemble_mean(response: Any) -> list[Candidate]:
    """Strategy 2: the extended-horizon ensemble mean."""
    candidates: list[Candidate] = []
    for key in EXTENDED_SECTIONS:
        section = _section(response, key)
        data = _series_data(section.get("mean")) if section else None
        if data is not None:
            candidates.append(("mean", data))
    return candidates


def ensemble_members(response: Any) -> list[Candidate]:
    """Strategy 3: ensemble members, lexicographically sorted per section."""
    candidates: list[Candidate] = []
    for key in ENSEMBLE_SECTIONS:
        section = _section(response, key)
        if not section:
            continue
        for member_key in sorted(k for k in section if k.startswith("member")):
            data = _series_data(section[member_key])
            if data is not None:
                candidates.append((f"member:{member_key}", data))
    return candidates


def _looks_like_legacy_points(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and isinstance(value[0], dict)
        and "value" in value[0]
        and "validTime" in value[0]
    )


def _search_legacy(node: Any, depth: int) -> list[Any] | None:
    if depth > _LEGACY_SEARCH_MAX_DEPTH:
        return None
    if _looks_like_legacy_points(node):
        return node
    children: Iterable[Any] = ()
    if isinstance(node, dict):
        children = node.values()
    elif isinstance(node, list):
        children = node
    for child in children:
        if isinstance(child, (dict, list)):
            found = _search_legacy(child, depth + 1)
            if found:
                return found
    return None


def legacy_arrays(response: Any) -> list[Candidate]:
    """Strategy 4: legacy flat shapes kept for backward compatibility."""
    candidates: list[Candidate] = []
    if not isinstance(response, dict):
        return candidates

    values = response.get("values")
    if isinstance(values, list):
        candidates.append(("legacy:values", values))

    forecast = response.get("forecast")
    if isinstance(forecast, dict) and isinstance(forecast.get("values"), list):
        candidates.append(("legacy:forecast.values", forecast["values"]))

    found = _search_legacy(response, 0)
    if found is not None:
        candidates.append(("legacy:search", found))
    return candidates


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    primary_series,
    ensemble_mean,
    ensemble_members,
    legacy_arrays,
)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class ForecastValueExtractor:
    """Normalises a raw streamflow response into one flat CFS series.

    Parameters
    ----------
    strategies : sequence of callables, optional
        Ordered extraction strategies. Defaults to ``DEFAULT_STRATEGIES``.
    """

    def __init__(
        self, strategies: Iterable[ExtractionStrategy] | None = None
    ) -> None:
        self._strategies = tuple(strategies or DEFAULT_STRATEGIES)

    def extract(self, response: Any, name: str = "forecast") -> ForecastSeries:
        """Return the best available series, or an empty one.

        Parameters
        ----------
        response : Any
            Decoded JSON body of a streamflow read.
        name : str
            Horizon name to attach to the resulting series.
        """
        for strategy in self._strategies:
            try:
                candidates = strategy(response)
            except Exception:
                logger.warning(
                    "Extraction strategy %s failed for %s; trying next",
                    getattr(strategy, "__name__", strategy),
                    name,
                    exc_info=True,
                )
                continue

            for source, raw_points in candidates:
                points = clean_points(raw_points)
                if points:
                    logger.debug(
                        "Extracted %d points for %s from %s",
                        len(points),
                        name,
                        source,
                    )
                    return ForecastSeries(name=name, source=source, points=points)

        keys = sorted(response) if isinstance(response, dict) else []
        logger.info(
            "No usable forecast values for %s (response keys=%s)", name, keys
        )
        return ForecastSeries(name=name)
