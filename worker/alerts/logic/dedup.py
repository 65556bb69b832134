"""
Cool-down deduplication for dispatched alerts.

``DeduplicationStore`` answers "was this (user, location) pair alerted within
the cool-down window?" and records new dispatches. It wraps a ``DispatchLog``
and owns the failure policy:

    - Lookup failure  -> report no recent dispatch (fail-open).
    - Record failure  -> log and swallow; the push has already gone out.

The window is measured from the most recent record for the pair.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from worker.alerts.logic.units import display_round
from worker.alerts.models import AlertDecision, DispatchRecord
from worker.alerts.repo import DispatchLog

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=6)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_payload_summary(
    decision: AlertDecision, display_name: str = ""
) -> dict[str, object]:
    """Summary stored alongside a dispatch record."""
    return {
        "river_name": display_name,
        "forecast_flow": display_round(decision.display_peak),
        "threshold": display_round(decision.display_threshold),
        "return_period": decision.crossed_label,
        "flow_unit": decision.display_unit.value,
        "scale_factor": decision.scale_factor,
    }


class DeduplicationStore:
    """Time-windowed suppression of repeat alerts.

    Parameters
    ----------
    log : DispatchLog
        Backing record store.
    window : timedelta
        Default cool-down window.
    clock : callable, optional
        Returns the current UTC time. Injected for tests.
    """

    def __init__(
        self,
        log: DispatchLog,
        window: timedelta = DEFAULT_COOLDOWN,
        clock: Clock | None = None,
    ) -> None:
        self._log = log
        self._window = window
        self._clock = clock or _utcnow

    @property
    def window(self) -> timedelta:
        return self._window

    async def has_recent_dispatch(
        self,
        user_id: str,
        location_id: str,
        window: timedelta | None = None,
    ) -> bool:
        """True if a dispatch for the pair exists within ``window``."""
        since = self._clock() - (self._window if window is None else window)
        try:
            record = await self._log.latest_since(user_id, location_id, since)
        except Exception:
            logger.warning(
                "Dispatch lookup failed for user=%s location=%s; "
                "assuming no recent dispatch",
                user_id,
                location_id,
                exc_info=True,
            )
            return False
        return record is not None

    async def record(
        self,
        user_id: str,
        location_id: str,
        decision: AlertDecision,
        display_name: str = "",
    ) -> DispatchRecord | None:
        """Persist a dispatch. Returns the record, or None if the write failed."""
        try:
            record = DispatchRecord(
                user_id=user_id,
                location_id=location_id,
                sent_at=self._clock(),
                payload_summary=build_payload_summary(decision, display_name),
            )
            await self._log.append(record)
        except Exception:
            logger.exception(
                "Failed to record dispatch for user=%s location=%s "
                "(notification already sent)",
                user_id,
                location_id,
            )
            return None
        return record
