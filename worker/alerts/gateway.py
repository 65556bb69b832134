"""
Forecast Gateway: upstream reads for one watched location.

Issues the three per-location reads against the NOAA water APIs:

    - Streamflow forecast, once per configured horizon
      (``GET {forecast_base_url}/reaches/{id}/streamflow?series={horizon}``)
    - Return-period thresholds
      (``GET {return_period_url}?comids={id}&key={api_key}``)
    - Reach display name (``GET {forecast_base_url}/reaches/{id}``)

Every read returns a ``FetchResult``; no exception crosses this boundary.
Timeouts, transport errors and non-2xx responses are ``UNAVAILABLE``; a 404
is ``NOT_FOUND`` and logged at a lower severity. ``fetch_location`` runs all
reads concurrently, joins them, and hands the raw bodies to the extractor and
parser.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from worker.alerts.logic.extractor import ForecastValueExtractor
from worker.alerts.logic.return_periods import ReturnPeriodParser
from worker.alerts.models import (
    FetchResult,
    ForecastSnapshot,
    LocationData,
    ThresholdSet,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)

DEFAULT_HORIZONS: tuple[str, ...] = ("short_range", "medium_range")


def placeholder_name(location_id: str) -> str:
    """Deterministic display name used whenever the name read fails."""
    return f"Reach {location_id}"


class ForecastGateway:
    """Async client for the forecast, threshold and reach-name APIs.

    Parameters
    ----------
    client : httpx.AsyncClient
        Shared client. Its timeout applies to each read individually.
    forecast_base_url : str
        Base URL of the NWPS API (``.../nwps/v1``).
    return_period_url : str
        URL of the return-period endpoint.
    return_period_api_key : str
        API key appended to threshold requests.
    horizons : sequence of str
        Forecast horizons to request per location.
    extractor, parser : optional
        Injected for tests; defaults are constructed otherwise.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        forecast_base_url: str,
        return_period_url: str,
        return_period_api_key: str = "",
        horizons: tuple[str, ...] | list[str] = DEFAULT_HORIZONS,
        extractor: ForecastValueExtractor | None = None,
        parser: ReturnPeriodParser | None = None,
    ) -> None:
        self._client = client
        self._forecast_base_url = forecast_base_url.rstrip("/")
        self._return_period_url = return_period_url
        self._return_period_api_key = return_period_api_key
        self._horizons = tuple(horizons)
        self._extractor = extractor or ForecastValueExtractor()
        self._parser = parser or ReturnPeriodParser()

    # -- raw reads ---------------------------------------------------------

    async def _get_json(
        self, url: str, params: dict[str, str] | None, what: str
    ) -> FetchResult:
        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout fetching %s: %s", what, exc)
            return FetchResult.unavailable(f"timeout: {exc}")
        except httpx.HTTPError as exc:
            logger.warning("Transport error fetching %s: %s", what, exc)
            return FetchResult.unavailable(f"transport: {exc}")

        if response.status_code == 404:
            logger.info("%s not found", what)
            return FetchResult.not_found(f"404 for {what}")

        if not response.is_success:
            logger.warning(
                "Upstream error fetching %s: %d %s",
                what,
                response.status_code,
                response.reason_phrase,
            )
            return FetchResult.unavailable(f"HTTP {response.status_code}")

        try:
            body: Any = response.json()
        except ValueError as exc:
            logger.warning("Malformed JSON for %s: %s", what, exc)
            return FetchResult.unavailable(f"malformed body: {exc}")

        return FetchResult.success(body)

    async def fetch_forecast(self, location_id: str, horizon: str) -> FetchResult:
        url = f"{self._forecast_base_url}/reaches/{location_id}/streamflow"
        return await self._get_json(
            url, {"series": horizon}, f"{horizon} forecast for reach {location_id}"
        )

    async def fetch_return_periods(self, location_id: str) -> FetchResult:
        params = {"comids": location_id}
        if self._return_period_api_key:
            params["key"] = self._return_period_api_key
        return await self._get_json(
            self._return_period_url, params, f"return periods for reach {location_id}"
        )

    async def fetch_reach(self, location_id: str) -> FetchResult:
        url = f"{self._forecast_base_url}/reaches/{location_id}"
        return await self._get_json(url, None, f"reach info for {location_id}")

    # -- parsed reads ------------------------------------------------------

    async def get_forecast(self, location_id: str) -> ForecastSnapshot:
        """Fetch every horizon concurrently and extract one series each."""
        results = await asyncio.gather(
            *(self.fetch_forecast(location_id, h) for h in self._horizons)
        )
        snapshot = ForecastSnapshot(location_id=location_id)
        for horizon, result in zip(self._horizons, results):
            if not result.ok:
                continue
            series = self._extractor.extract(result.data, name=horizon)
            if not series.is_empty:
                snapshot.series[horizon] = series
        return snapshot

    async def get_thresholds(self, location_id: str) -> ThresholdSet:
        result = await self.fetch_return_periods(location_id)
        if not result.ok:
            return ThresholdSet(location_id=location_id)
        thresholds = self._parser.parse(location_id, result.data)
        if thresholds.is_empty:
            logger.info("No return periods known for reach %s", location_id)
        return thresholds

    async def get_display_name(self, location_id: str) -> str:
        result = await self.fetch_reach(location_id)
        if result.ok and isinstance(result.data, dict):
            name = result.data.get("name")
            if isinstance(name, str) and name.strip():
                return name.strip()
        return placeholder_name(location_id)

    async def fetch_location(self, location_id: str) -> LocationData:
        """Run the forecast, threshold and name reads concurrently and join."""
        forecast, thresholds, name = await asyncio.gather(
            self.get_forecast(location_id),
            self.get_thresholds(location_id),
            self.get_display_name(location_id),
        )
        return LocationData(
            location_id=location_id,
            display_name=name,
            forecast=forecast,
            thresholds=thresholds,
        )


def create_http_client(
    timeout_seconds: float, user_agent: str
) -> httpx.AsyncClient:
    """Build the shared ``httpx.AsyncClient`` used by the gateway."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        headers={
            "Content-Type": "application/json",
            "User-Agent": user_agent,
        },
        follow_redirects=True,
    )
