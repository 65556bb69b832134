"""
Core alert decision logic.

``AlertEvaluator`` compares a location's forecast peak against its
return-period thresholds and decides whether, and at which label, to alert.

Algorithm:
    1. ``peak`` = max flow over every series in the snapshot, ignoring
       sentinel values at or below ``FLOW_FLOOR``. No peak -> no alert.
    2. Convert ``peak`` (CFS) to CMS.
    3. Scan thresholds in ascending return-period order; each threshold is
       divided by the configured ``scale_factor``. The first label with
       ``peak_cms > scaled_threshold`` is returned.
    4. Format peak and threshold in the user's display unit.

Severity Policy:
    The ascending scan reports the *smallest* exceeded return period. A peak
    above every threshold is therefore reported as the 2-year label, not the
    100-year one. This is the "earliest warning" policy and is pinned by
    tests; see DESIGN.md before changing it.
"""

from __future__ import annotations

import logging

from worker.alerts.logic.units import cfs_to_cms, cms_to_cfs
from worker.alerts.models import (
    AlertDecision,
    FlowUnit,
    ForecastSnapshot,
    ThresholdSet,
)

logger = logging.getLogger(__name__)

# NWM uses large negative sentinels (e.g. -9999) for missing values.
FLOW_FLOOR: float = -9000.0


def return_period_label(years: int) -> str:
    return f"{years}-year"


def peak_flow(snapshot: ForecastSnapshot) -> float | None:
    """Maximum valid flow (CFS) across all series, or None."""
    peak: float | None = None
    for series in snapshot.series.values():
        for point in series.points:
            if point.flow <= FLOW_FLOOR:
                continue
            if peak is None or point.flow > peak:
                peak = point.flow
    return peak


class AlertEvaluator:
    """Decides whether a location's forecast crosses a flood threshold.

    Parameters
    ----------
    scale_factor : float
        Divisor applied to every threshold before comparison. 1 in
        production; larger in non-production environments.
    """

    def __init__(self, scale_factor: float = 1.0) -> None:
        if scale_factor <= 0:
            raise ValueError(f"scale_factor must be positive, got {scale_factor}")
        self._scale_factor = scale_factor

    @property
    def scale_factor(self) -> float:
        return self._scale_factor

    def evaluate(
        self,
        forecast: ForecastSnapshot,
        thresholds: ThresholdSet,
        display_unit: FlowUnit = FlowUnit.CFS,
    ) -> AlertDecision | None:
        """Return an ``AlertDecision`` if a threshold is crossed, else None."""
        peak = peak_flow(forecast)
        if peak is None:
            logger.info("No valid forecast data for location=%s", forecast.location_id)
            return None

        if thresholds.is_empty:
            logger.debug("No thresholds for location=%s", thresholds.location_id)
            return None

        peak_cms = cfs_to_cms(peak)

        for years in sorted(thresholds.thresholds):
            scaled = thresholds.thresholds[years] / self._scale_factor
            if peak_cms > scaled:
                if display_unit == FlowUnit.CFS:
                    display_peak = peak
                    display_threshold = cms_to_cfs(scaled)
                else:
                    display_peak = peak_cms
                    display_threshold = scaled

                label = return_period_label(years)
                logger.info(
                    "Alert condition met for location=%s: peak=%.2f cfs "
                    "(%.2f cms) > %s threshold=%.2f cms (scale_factor=%s)",
                    forecast.location_id,
                    peak,
                    peak_cms,
                    label,
                    scaled,
                    self._scale_factor,
                )
                return AlertDecision(
                    location_id=forecast.location_id,
                    peak_flow=peak,
                    crossed_label=label,
                    return_period_years=years,
                    threshold_flow=scaled,
                    display_peak=display_peak,
                    display_threshold=display_threshold,
                    display_unit=display_unit,
                    scale_factor=self._scale_factor,
                )

        return None
