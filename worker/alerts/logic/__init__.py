"""
Core alert logic for the Flood Alert Worker.

This package contains the pure decision pipeline: forecast extraction,
return-period parsing, unit conversion, threshold evaluation, and cool-down
deduplication.

Public API:
    - ``ForecastValueExtractor`` -- Normalises forecast payloads to CFS series.
    - ``ReturnPeriodParser`` -- Parses return-period thresholds (CMS).
    - ``AlertEvaluator`` -- Decides whether and at which label to alert.
    - ``DeduplicationStore`` -- Cool-down suppression over the dispatch log.
    - ``convert`` -- The single CFS/CMS conversion path.
"""

from worker.alerts.logic.dedup import DeduplicationStore
from worker.alerts.logic.evaluator import AlertEvaluator, peak_flow
from worker.alerts.logic.extractor import ForecastValueExtractor
from worker.alerts.logic.return_periods import ReturnPeriodParser
from worker.alerts.logic.units import CFS_TO_CMS, convert

__all__ = [
    "AlertEvaluator",
    "DeduplicationStore",
    "ForecastValueExtractor",
    "ReturnPeriodParser",
    "CFS_TO_CMS",
    "convert",
    "peak_flow",
]
