"""
Alert sweep orchestration and the scheduled entrypoint.

``AlertOrchestrator.run_alert_sweep`` fans evaluation out across every
eligible user and each of their favourite reaches, and aggregates run
statistics. ``handler(event, context)`` is the function the external
scheduler invokes.

Key Design Decisions:
    - **Bounded fan-out**: user coroutines are created up front; every
      per-location unit of work acquires a shared ``asyncio.Semaphore``
      before touching upstream APIs.
    - **Single-writer reduction**: each unit of work returns a
      ``LocationOutcome``; counters are only summed after ``gather`` returns.
      No shared counter is mutated concurrently.
    - **Failure isolation**: exceptions are captured per location and per
      user (``return_exceptions=True``), each adding one to ``errors``. Only
      a ``UserDirectoryError`` or ``SweepTimeoutError`` aborts the sweep.
    - **Per-sweep read sharing**: a reach watched by several users is fetched
      once per sweep; the memo is discarded when the sweep ends.
    - **Time budget**: the whole sweep runs under a wall-clock budget, capped
      by the remaining invocation time when a runtime context is available.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable

import httpx

from worker.alerts.config import Settings, load_settings
from worker.alerts.dispatcher import (
    LoggingPushTransport,
    NotificationDispatcher,
    PushTransport,
    SnsPushTransport,
)
from worker.alerts.gateway import ForecastGateway, create_http_client
from worker.alerts.logic.dedup import DeduplicationStore
from worker.alerts.logic.evaluator import AlertEvaluator
from worker.alerts.models import LocationData, LocationOutcome, SweepResult, User
from worker.alerts.repo import (
    PostgresDispatchLog,
    PostgresUserDirectory,
    UserDirectory,
    UserDirectoryError,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric Constants
# ---------------------------------------------------------------------------

METRIC_SWEEP_DURATION = "SweepDuration"
METRIC_ALERTS_SENT = "AlertsSent"
METRIC_SWEEP_ERRORS = "SweepErrors"

# Safety margin subtracted from the runtime's remaining time.
_TIMEOUT_MARGIN_SECONDS = 5.0

MetricEmitter = Callable[[str, float, str, "dict[str, str]"], None]


class SweepTimeoutError(Exception):
    """Raised when a sweep exceeds its wall-clock budget."""

    pass


def _default_metric_emitter(
    name: str, value: float, unit: str, dimensions: dict[str, str]
) -> None:
    """Default metric emitter that logs metrics when no backend is configured."""
    logger.info(
        "Metric: %s=%.3f %s dimensions=%s",
        name,
        value,
        unit,
        dimensions,
    )


# ---------------------------------------------------------------------------
# Per-sweep helpers
# ---------------------------------------------------------------------------


class _LocationReads:
    """Memoises ``fetch_location`` per reach id for one sweep."""

    def __init__(self, gateway: ForecastGateway) -> None:
        self._gateway = gateway
        self._tasks: dict[str, asyncio.Future[LocationData]] = {}

    def get(self, location_id: str) -> Awaitable[LocationData]:
        task = self._tasks.get(location_id)
        if task is None:
            task = asyncio.ensure_future(self._gateway.fetch_location(location_id))
            self._tasks[location_id] = task
        return task

    def close(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()


class _UserTally:
    __slots__ = ("alerts_sent", "errors")

    def __init__(self) -> None:
        self.alerts_sent = 0
        self.errors = 0


# ---------------------------------------------------------------------------
# AlertOrchestrator
# ---------------------------------------------------------------------------


class AlertOrchestrator:
    """Runs one alert sweep across all eligible users.

    Parameters
    ----------
    directory : UserDirectory
        Source of eligible users.
    gateway : ForecastGateway
        Upstream reads per reach.
    evaluator : AlertEvaluator
        Threshold decision logic (carries the scale factor).
    dedup : DeduplicationStore
        Cool-down check before dispatch.
    dispatcher : NotificationDispatcher
        Sends and records alerts.
    max_concurrency : int
        Maximum per-location units of work in flight.
    sweep_timeout_seconds : float or None
        Wall-clock budget for the whole sweep. None disables it.
    metric_emitter : callable or None
        Receives run metrics after each sweep.
    """

    def __init__(
        self,
        directory: UserDirectory,
        gateway: ForecastGateway,
        evaluator: AlertEvaluator,
        dedup: DeduplicationStore,
        dispatcher: NotificationDispatcher,
        max_concurrency: int = 8,
        sweep_timeout_seconds: float | None = None,
        metric_emitter: MetricEmitter | None = None,
    ) -> None:
        self._directory = directory
        self._gateway = gateway
        self._evaluator = evaluator
        self._dedup = dedup
        self._dispatcher = dispatcher
        self._max_concurrency = max(1, max_concurrency)
        self._sweep_timeout_seconds = sweep_timeout_seconds
        self._metric_emitter = metric_emitter or _default_metric_emitter

    async def run_alert_sweep(
        self, timeout_seconds: float | None = None
    ) -> SweepResult:
        """Evaluate every eligible user's favourites and dispatch alerts.

        Parameters
        ----------
        timeout_seconds : float or None
            Overrides the configured sweep budget for this run.

        Raises
        ------
        UserDirectoryError
            If eligible users cannot be loaded.
        SweepTimeoutError
            If the sweep exceeds its budget.
        """
        budget = timeout_seconds if timeout_seconds is not None else self._sweep_timeout_seconds
        start = time.monotonic()
        logger.info(
            "Starting alert sweep (scale_factor=%s, max_concurrency=%d, budget=%s)",
            self._evaluator.scale_factor,
            self._max_concurrency,
            budget,
        )

        try:
            if budget is None:
                result = await self._sweep()
            else:
                result = await asyncio.wait_for(self._sweep(), timeout=budget)
        except asyncio.TimeoutError as exc:
            logger.error("Alert sweep exceeded its %.1fs budget", budget)
            raise SweepTimeoutError(
                f"Sweep exceeded {budget:.1f}s budget"
            ) from exc

        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Alert sweep summary: users_checked=%d alerts_sent=%d errors=%d "
            "duration_ms=%d",
            result.users_checked,
            result.alerts_sent,
            result.errors,
            result.duration_ms,
        )
        self._emit_metrics(result)
        return result

    async def _sweep(self) -> SweepResult:
        try:
            users = await self._directory.fetch_eligible_users()
        except UserDirectoryError:
            logger.exception("Fatal: unable to load users for alert sweep")
            raise
        except Exception as exc:
            logger.exception("Fatal: unable to load users for alert sweep")
            raise UserDirectoryError(str(exc)) from exc

        logger.info("Found %d users with notifications enabled", len(users))

        semaphore = asyncio.Semaphore(self._max_concurrency)
        reads = _LocationReads(self._gateway)
        try:
            outcomes = await asyncio.gather(
                *(self._check_user(user, reads, semaphore) for user in users),
                return_exceptions=True,
            )
        finally:
            reads.close()

        result = SweepResult(scale_factor=self._evaluator.scale_factor)
        for user, outcome in zip(users, outcomes):
            result.users_checked += 1
            if isinstance(outcome, Exception):
                result.errors += 1
                logger.error(
                    "Error checking alerts for user=%s: %s", user.id, outcome
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            result.alerts_sent += outcome.alerts_sent
            result.errors += outcome.errors
        return result

    async def _check_user(
        self,
        user: User,
        reads: _LocationReads,
        semaphore: asyncio.Semaphore,
    ) -> _UserTally:
        logger.info(
            "Checking %d reaches for user=%s (unit=%s)",
            len(user.favorite_location_ids),
            user.id,
            user.preferred_unit.value,
        )
        outcomes = await asyncio.gather(
            *(
                self._check_location(user, location_id, reads, semaphore)
                for location_id in user.favorite_location_ids
            ),
            return_exceptions=True,
        )

        tally = _UserTally()
        for location_id, outcome in zip(user.favorite_location_ids, outcomes):
            if isinstance(outcome, Exception):
                tally.errors += 1
                logger.error(
                    "Error checking reach=%s for user=%s: %s",
                    location_id,
                    user.id,
                    outcome,
                    exc_info=outcome,
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome == LocationOutcome.SENT:
                tally.alerts_sent += 1
            elif outcome == LocationOutcome.SEND_FAILED:
                tally.errors += 1
        return tally

    async def _check_location(
        self,
        user: User,
        location_id: str,
        reads: _LocationReads,
        semaphore: asyncio.Semaphore,
    ) -> LocationOutcome:
        async with semaphore:
            data = await reads.get(location_id)

            decision = self._evaluator.evaluate(
                data.forecast, data.thresholds, user.preferred_unit
            )
            if decision is None:
                return LocationOutcome.NO_ALERT

            if await self._dedup.has_recent_dispatch(user.id, location_id):
                logger.info(
                    "Skipping duplicate alert for user=%s reach=%s",
                    user.id,
                    location_id,
                )
                return LocationOutcome.SUPPRESSED

            sent = await self._dispatcher.dispatch(user, data.display_name, decision)
            return LocationOutcome.SENT if sent.success else LocationOutcome.SEND_FAILED

    def _emit_metrics(self, result: SweepResult) -> None:
        dimensions = {"ScaleFactor": f"{result.scale_factor:g}"}
        metrics = (
            (METRIC_SWEEP_DURATION, float(result.duration_ms), "Milliseconds"),
            (METRIC_ALERTS_SENT, float(result.alerts_sent), "Count"),
            (METRIC_SWEEP_ERRORS, float(result.errors), "Count"),
        )
        for name, value, unit in metrics:
            try:
                self._metric_emitter(name, value, unit, dimensions)
            except Exception:
                logger.warning("Failed to emit %s metric", name, exc_info=True)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _create_push_transport(settings: Settings) -> PushTransport:
    if settings.sns_platform_application_arn:
        import boto3

        sns_client = boto3.client("sns", region_name=settings.aws_region)
        return SnsPushTransport(sns_client, settings.sns_platform_application_arn)

    logger.warning(
        "No SNS platform application configured; push messages will be logged only"
    )
    return LoggingPushTransport()


def build_orchestrator(
    settings: Settings,
    client: httpx.AsyncClient,
    transport: PushTransport | None = None,
    metric_emitter: MetricEmitter | None = None,
) -> AlertOrchestrator:
    """Assemble an ``AlertOrchestrator`` from settings and an open client."""
    conninfo = settings.database_url.get_secret_value()

    dedup = DeduplicationStore(
        PostgresDispatchLog(conninfo),
        window=timedelta(hours=settings.cooldown_hours),
    )
    gateway = ForecastGateway(
        client=client,
        forecast_base_url=settings.forecast_base_url,
        return_period_url=settings.return_period_url,
        return_period_api_key=settings.return_period_api_key.get_secret_value(),
        horizons=settings.forecast_horizons,
    )
    dispatcher = NotificationDispatcher(
        transport or _create_push_transport(settings), dedup
    )

    return AlertOrchestrator(
        directory=PostgresUserDirectory(conninfo),
        gateway=gateway,
        evaluator=AlertEvaluator(scale_factor=settings.scale_factor),
        dedup=dedup,
        dispatcher=dispatcher,
        max_concurrency=settings.max_concurrency,
        sweep_timeout_seconds=settings.sweep_timeout_seconds,
        metric_emitter=metric_emitter,
    )


async def run_configured_sweep(
    settings: Settings | None = None,
    transport: PushTransport | None = None,
    timeout_seconds: float | None = None,
) -> SweepResult:
    """Run one sweep with production wiring.

    The HTTP client is opened and closed around the sweep so that no
    connection state outlives the event loop.
    """
    settings = settings or load_settings()
    async with create_http_client(
        settings.request_timeout_seconds, settings.user_agent
    ) as client:
        orchestrator = build_orchestrator(settings, client, transport)
        return await orchestrator.run_alert_sweep(timeout_seconds=timeout_seconds)


def _sweep_budget_seconds(context: Any, configured: float) -> float:
    """Cap ``configured`` by the runtime's remaining time, if known."""
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is None:
        return configured
    remaining = get_remaining() / 1000.0 - _TIMEOUT_MARGIN_SECONDS
    return max(1.0, min(configured, remaining))


# ---------------------------------------------------------------------------
# Scheduled entrypoint
# ---------------------------------------------------------------------------


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Scheduled trigger entrypoint.

    Runs one sweep and returns its summary. Fatal failures are logged and
    re-raised so the scheduler records the invocation as failed.

    Parameters
    ----------
    event : dict
        Scheduler event (only ``time`` is read, for logging).
    context : Any
        Runtime context; ``get_remaining_time_in_millis()`` caps the budget
        when present.
    """
    settings = load_settings()
    logger.info(
        "Starting river alert check (scheduled_time=%s, environment=%s)",
        (event or {}).get("time"),
        settings.app_env,
    )

    budget = _sweep_budget_seconds(context, settings.sweep_timeout_seconds)
    try:
        result = asyncio.run(
            run_configured_sweep(settings, timeout_seconds=budget)
        )
    except Exception:
        logger.exception("River alert check failed")
        raise

    logger.info(
        "River alert check completed in %dms: users_checked=%d alerts_sent=%d "
        "errors=%d",
        result.duration_ms,
        result.users_checked,
        result.alerts_sent,
        result.errors,
    )
    return result.model_dump()
