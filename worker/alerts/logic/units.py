"""
Flow unit conversion.

Forecasts arrive in CFS and return-period thresholds in CMS. The single
permitted conversion path is multiplication by ``CFS_TO_CMS`` (or division
by it for the reverse direction).
"""

from __future__ import annotations

import math

from worker.alerts.models import FlowUnit

CFS_TO_CMS: float = 0.0283168


def cfs_to_cms(value: float) -> float:
    return value * CFS_TO_CMS


def cms_to_cfs(value: float) -> float:
    return value / CFS_TO_CMS


def convert(value: float, source: FlowUnit, target: FlowUnit) -> float:
    """Convert ``value`` from ``source`` to ``target`` unit."""
    if source == target:
        return value
    if source == FlowUnit.CFS:
        return cfs_to_cms(value)
    return cms_to_cfs(value)


def display_round(value: float) -> int:
    """Round to a whole number for display, halves rounding up (32.5 -> 33)."""
    return math.floor(value + 0.5)
