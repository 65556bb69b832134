"""
Return-period threshold parsing.

The threshold API answers either a single object or a list of objects, each
shaped like::

    {"feature_id": "23021904", "return_period_2": 31.4, "return_period_5": 52.0}

For lists, the first element carrying a ``feature_id`` is used (falling back
to the first object). Every field whose name matches ``return_period_<N>``
(or ``returnPeriod_<N>``) with a positive integer ``N`` and a finite numeric
value becomes a threshold; everything else is skipped.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any

from worker.alerts.models import ThresholdSet

logger = logging.getLogger(__name__)

RETURN_PERIOD_FIELD = re.compile(r"^return_?period_(?P<years>\d+)$", re.IGNORECASE)


def _threshold_value(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    try:
        value = float(raw)
    except OverflowError:
        return None
    if not math.isfinite(value):
        return None
    return value


def _select_item(response: Any) -> dict[str, Any] | None:
    if isinstance(response, dict):
        return response
    if not isinstance(response, list):
        return None
    items = [item for item in response if isinstance(item, dict)]
    for item in items:
        if item.get("feature_id") is not None:
            return item
    return items[0] if items else None


class ReturnPeriodParser:
    """Builds a ``ThresholdSet`` from a raw threshold response."""

    def parse(self, location_id: str, response: Any) -> ThresholdSet:
        """Parse ``response`` into thresholds for ``location_id``.

        ``None`` (not found), an empty list and an empty object all yield an
        empty ``ThresholdSet``.
        """
        item = _select_item(response)
        if item is None:
            return ThresholdSet(location_id=location_id)

        thresholds: dict[int, float] = {}
        for key, raw in item.items():
            match = RETURN_PERIOD_FIELD.fullmatch(str(key))
            if not match:
                continue
            years = int(match.group("years"))
            if years <= 0:
                logger.debug("Skipping %s: return period must be positive", key)
                continue
            value = _threshold_value(raw)
            if value is None:
                logger.debug("Skipping %s: non-numeric value %r", key, raw)
                continue
            thresholds[years] = value

        return ThresholdSet(
            location_id=location_id,
            thresholds=dict(sorted(thresholds.items())),
        )
