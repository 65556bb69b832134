"""
Domain models for the Flood Alert Worker.

Pydantic v2 models for users, forecast snapshots, return-period thresholds,
alert decisions and dispatch records, plus the explicit result types that
every I/O boundary of the sweep returns instead of raising.

Unit Invariants:
    - Forecast flows (``ForecastPoint.flow``) are always CFS.
    - Return-period thresholds (``ThresholdSet.thresholds``) are always CMS.
    - ``AlertDecision.display_*`` values are in the user's preferred unit.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class FlowUnit(str, Enum):
    """Flow measurement systems a user may display values in."""

    CFS = "cfs"
    CMS = "cms"


class FetchStatus(str, Enum):
    """Outcome of a single upstream read."""

    OK = "ok"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class LocationOutcome(str, Enum):
    """Outcome of one (user, location) unit of work in a sweep."""

    NO_ALERT = "no_alert"
    SUPPRESSED = "suppressed"
    SENT = "sent"
    SEND_FAILED = "send_failed"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(BaseModel):
    """A subscribed user as loaded from the user directory.

    ``favorite_location_ids`` is an ordered set: duplicates are dropped on
    construction, keeping first-seen order.
    """

    model_config = {"populate_by_name": True}

    id: str
    notifications_enabled: bool = False
    push_token: str | None = None
    preferred_unit: FlowUnit = FlowUnit.CFS
    favorite_location_ids: list[str] = []
    first_name: str = "User"

    @field_validator("favorite_location_ids")
    @classmethod
    def _dedupe_favorites(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(v for v in value if v))

    @field_validator("preferred_unit", mode="before")
    @classmethod
    def _default_unit(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in ("cfs", "cms"):
            return value.lower()
        if isinstance(value, FlowUnit):
            return value
        return FlowUnit.CFS

    @property
    def is_eligible(self) -> bool:
        """True when the user should be evaluated in a sweep."""
        return bool(
            self.notifications_enabled
            and self.push_token
            and self.favorite_location_ids
        )


# ---------------------------------------------------------------------------
# Forecasts & Thresholds
# ---------------------------------------------------------------------------


class ForecastPoint(BaseModel):
    """A single forecast value. ``flow`` is always CFS."""

    valid_time: datetime | None = None
    flow: float


class ForecastSeries(BaseModel):
    """A flat, ordered forecast series for one horizon.

    ``source`` records which extraction strategy produced the points
    (e.g. ``"series"``, ``"mean"``, ``"member:member1"``, ``"legacy:values"``).
    """

    name: str
    source: str = ""
    points: list[ForecastPoint] = []

    @property
    def is_empty(self) -> bool:
        return not self.points


class ForecastSnapshot(BaseModel):
    """All usable forecast series for one location, keyed by horizon."""

    location_id: str
    series: dict[str, ForecastSeries] = {}

    @property
    def is_empty(self) -> bool:
        return all(s.is_empty for s in self.series.values())


class ThresholdSet(BaseModel):
    """Return-period thresholds for one location.

    Maps return period in years to a flow in CMS. Empty when the location
    has no known thresholds.
    """

    location_id: str
    thresholds: dict[int, float] = {}

    @property
    def is_empty(self) -> bool:
        return not self.thresholds


# ---------------------------------------------------------------------------
# Upstream Read Results
# ---------------------------------------------------------------------------


class FetchResult(BaseModel):
    """Explicit outcome of one upstream read.

    ``data`` is the decoded JSON body when ``status`` is ``OK``; ``None``
    otherwise. ``error`` carries a short operator-facing description.
    """

    status: FetchStatus
    data: Any = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK

    @classmethod
    def success(cls, data: Any) -> FetchResult:
        return cls(status=FetchStatus.OK, data=data)

    @classmethod
    def not_found(cls, error: str = "") -> FetchResult:
        return cls(status=FetchStatus.NOT_FOUND, error=error)

    @classmethod
    def unavailable(cls, error: str) -> FetchResult:
        return cls(status=FetchStatus.UNAVAILABLE, error=error)


class LocationData(BaseModel):
    """Joined result of the three per-location reads."""

    location_id: str
    display_name: str
    forecast: ForecastSnapshot
    thresholds: ThresholdSet


# ---------------------------------------------------------------------------
# Decisions & Dispatch
# ---------------------------------------------------------------------------


class AlertDecision(BaseModel):
    """A fired alert for one location. Ephemeral; never persisted directly.

    ``peak_flow`` is the raw forecast peak (CFS). ``threshold_flow`` is the
    crossed threshold after scaling (CMS). ``display_peak`` and
    ``display_threshold`` are both expressed in ``display_unit``.
    """

    location_id: str
    peak_flow: float
    crossed_label: str
    return_period_years: int
    threshold_flow: float
    display_peak: float
    display_threshold: float
    display_unit: FlowUnit
    scale_factor: float = 1.0


class DispatchRecord(BaseModel):
    """Durable record of one successful push send.

    Used only to answer "was there a dispatch for this (user, location)
    pair within the cool-down window?".
    """

    user_id: str
    location_id: str
    sent_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    payload_summary: dict[str, Any] = {}


class PushMessage(BaseModel):
    """Transport-neutral push notification."""

    token: str
    title: str
    body: str
    data: dict[str, str] = {}


class SendResult(BaseModel):
    """Outcome of handing a push message to the transport."""

    success: bool
    message_id: str = ""
    error: str = ""


# ---------------------------------------------------------------------------
# Sweep Summary
# ---------------------------------------------------------------------------


class SweepResult(BaseModel):
    """Run-level statistics for one alert sweep."""

    users_checked: int = 0
    alerts_sent: int = 0
    errors: int = 0
    duration_ms: int = 0
    scale_factor: float = 1.0
