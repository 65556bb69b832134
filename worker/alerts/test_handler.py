"""
Unit tests for the alert sweep orchestrator and scheduled entrypoint.

Real evaluator, dedup store and dispatcher; fake directory, gateway,
dispatch log and push transport.

Validates:
    - Alert dispatched when a threshold is crossed
    - Cool-down suppression across sweeps, release after the window
    - Failure isolation: one failing reach adds exactly one error
    - Send failures are counted as errors
    - Shared reaches are fetched once per sweep
    - In-flight location checks never exceed the concurrency limit
    - Directory failure and sweep timeout abort the run
    - Metrics emitted after each sweep
    - Entrypoint wiring and time budget
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from worker.alerts.config import Settings
from worker.alerts.dispatcher import (
    LoggingPushTransport,
    NotificationDispatcher,
    PushTransport,
)
from worker.alerts.gateway import ForecastGateway
from worker.alerts.handler import (
    METRIC_ALERTS_SENT,
    METRIC_SWEEP_DURATION,
    METRIC_SWEEP_ERRORS,
    AlertOrchestrator,
    SweepTimeoutError,
    _create_push_transport,
    _sweep_budget_seconds,
    build_orchestrator,
    handler,
)
from worker.alerts.logic.dedup import DeduplicationStore
from worker.alerts.logic.evaluator import AlertEvaluator
from worker.alerts.models import (
    DispatchRecord,
    FlowUnit,
    ForecastPoint,
    ForecastSeries,
    ForecastSnapshot,
    LocationData,
    SweepResult,
    ThresholdSet,
    User,
)
from worker.alerts.repo import DispatchLog, UserDirectory, UserDirectoryError

NOW = datetime(2026, 2, 6, 12, 0, 0, tzinfo=timezone.utc)

FLOODING = "1001"
QUIET = "1002"
BROKEN = "1003"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeDirectory(UserDirectory):
    def __init__(self, users: list[User] | None = None, error: Exception | None = None):
        self.users = users or []
        self._error = error

    async def fetch_eligible_users(self) -> list[User]:
        if self._error is not None:
            raise self._error
        return list(self.users)


class InMemoryDispatchLog(DispatchLog):
    def __init__(self) -> None:
        self.records: list[DispatchRecord] = []

    async def latest_since(self, user_id, location_id, since):  # type: ignore[override]
        matches = [
            r
            for r in self.records
            if r.user_id == user_id
            and r.location_id == location_id
            and r.sent_at > since
        ]
        return matches[-1] if matches else None

    async def append(self, record: DispatchRecord) -> None:
        self.records.append(record)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _location(location_id: str, peak: float) -> LocationData:
    return LocationData(
        location_id=location_id,
        display_name=f"River {location_id}",
        forecast=ForecastSnapshot(
            location_id=location_id,
            series={
                "short_range": ForecastSeries(
                    name="short_range",
                    source="series",
                    points=[ForecastPoint(flow=peak)],
                )
            },
        ),
        thresholds=ThresholdSet(
            location_id=location_id, thresholds={2: 30.0, 5: 40.0}
        ),
    )


async def _fetch_location(location_id: str) -> LocationData:
    if location_id == BROKEN:
        raise RuntimeError("upstream exploded")
    if location_id == FLOODING:
        return _location(location_id, 1200.0)
    return _location(location_id, 10.0)


def _make_user(user_id: str, *favorites: str, **overrides: object) -> User:
    defaults: dict[str, object] = {
        "id": user_id,
        "notifications_enabled": True,
        "push_token": f"token-{user_id}",
        "preferred_unit": FlowUnit.CFS,
        "favorite_location_ids": list(favorites),
    }
    defaults.update(overrides)
    return User(**defaults)


def _make_gateway(fetch=_fetch_location) -> MagicMock:
    gateway = MagicMock(spec=ForecastGateway)
    gateway.fetch_location = AsyncMock(side_effect=fetch)
    return gateway


class Harness:
    """Wires an orchestrator from fakes and exposes them to tests."""

    def __init__(
        self,
        users: list[User] | None = None,
        directory_error: Exception | None = None,
        transport: PushTransport | None = None,
        fetch=_fetch_location,
        scale_factor: float = 1.0,
        sweep_timeout_seconds: float | None = None,
        max_concurrency: int = 4,
    ) -> None:
        self.clock = FakeClock(NOW)
        self.log = InMemoryDispatchLog()
        self.transport = transport or LoggingPushTransport()
        self.gateway = _make_gateway(fetch)
        self.metrics = MagicMock()
        self.directory = FakeDirectory(users, directory_error)
        dedup = DeduplicationStore(self.log, clock=self.clock)
        self.orchestrator = AlertOrchestrator(
            directory=self.directory,
            gateway=self.gateway,
            evaluator=AlertEvaluator(scale_factor=scale_factor),
            dedup=dedup,
            dispatcher=NotificationDispatcher(self.transport, dedup),
            max_concurrency=max_concurrency,
            sweep_timeout_seconds=sweep_timeout_seconds,
            metric_emitter=self.metrics,
        )

    async def sweep(self) -> SweepResult:
        return await self.orchestrator.run_alert_sweep()


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSweep:
    @pytest.mark.asyncio
    async def test_alert_sent_for_crossing(self) -> None:
        harness = Harness(users=[_make_user("u1", FLOODING, QUIET)])

        result = await harness.sweep()

        assert result.users_checked == 1
        assert result.alerts_sent == 1
        assert result.errors == 0
        assert result.scale_factor == 1.0
        assert [m.data["reachId"] for m in harness.transport.sent] == [FLOODING]
        assert len(harness.log.records) == 1

    @pytest.mark.asyncio
    async def test_no_users(self) -> None:
        result = await Harness(users=[]).sweep()
        assert result.model_dump(exclude={"duration_ms"}) == {
            "users_checked": 0,
            "alerts_sent": 0,
            "errors": 0,
            "scale_factor": 1.0,
        }

    @pytest.mark.asyncio
    async def test_scale_factor_applied(self) -> None:
        # 10 cfs ~ 0.28 cms stays below 30 / 25 = 1.2 cms.
        harness = Harness(users=[_make_user("u1", QUIET)], scale_factor=25.0)
        result = await harness.sweep()
        assert result.alerts_sent == 0
        assert result.scale_factor == 25.0

    @pytest.mark.asyncio
    async def test_display_unit_follows_user(self) -> None:
        harness = Harness(
            users=[_make_user("u1", FLOODING, preferred_unit=FlowUnit.CMS)]
        )
        await harness.sweep()
        message = harness.transport.sent[0]
        assert message.data["flowUnit"] == "cms"
        assert "CMS" in message.body


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


class TestCooldown:
    @pytest.mark.asyncio
    async def test_second_sweep_within_window_is_suppressed(self) -> None:
        harness = Harness(users=[_make_user("u1", FLOODING)])

        first = await harness.sweep()
        harness.clock.now = NOW + timedelta(hours=1)
        second = await harness.sweep()

        assert first.alerts_sent == 1
        assert second.alerts_sent == 0
        assert second.errors == 0
        assert len(harness.transport.sent) == 1

    @pytest.mark.asyncio
    async def test_fires_again_after_window(self) -> None:
        harness = Harness(users=[_make_user("u1", FLOODING)])

        await harness.sweep()
        harness.clock.now = NOW + timedelta(hours=6, seconds=1)
        result = await harness.sweep()

        assert result.alerts_sent == 1
        assert len(harness.transport.sent) == 2

    @pytest.mark.asyncio
    async def test_cooldown_is_per_user(self) -> None:
        harness = Harness(users=[_make_user("u1", FLOODING)])
        await harness.sweep()

        harness.directory.users.append(_make_user("u2", FLOODING))
        result = await harness.sweep()

        assert result.alerts_sent == 1
        assert harness.transport.sent[-1].token == "token-u2"


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


class TestIsolation:
    @pytest.mark.asyncio
    async def test_failing_reach_adds_exactly_one_error(self) -> None:
        harness = Harness(
            users=[
                _make_user("u1", BROKEN, FLOODING),
                _make_user("u2", FLOODING),
            ]
        )

        result = await harness.sweep()

        assert result.users_checked == 2
        assert result.errors == 1
        assert result.alerts_sent == 2

    @pytest.mark.asyncio
    async def test_user_with_only_failures_still_checked(self) -> None:
        harness = Harness(users=[_make_user("u1", BROKEN)])
        result = await harness.sweep()
        assert result.users_checked == 1
        assert result.errors == 1

    @pytest.mark.asyncio
    async def test_send_failure_counts_as_error(self) -> None:
        transport = MagicMock(spec=PushTransport)
        transport.send = AsyncMock(side_effect=RuntimeError("NotRegistered"))
        harness = Harness(users=[_make_user("u1", FLOODING)], transport=transport)

        result = await harness.sweep()

        assert result.alerts_sent == 0
        assert result.errors == 1
        assert harness.log.records == []

    @pytest.mark.asyncio
    async def test_directory_failure_is_fatal(self) -> None:
        harness = Harness(directory_error=UserDirectoryError("db down"))
        with pytest.raises(UserDirectoryError):
            await harness.sweep()
        harness.metrics.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_directory_error_is_wrapped(self) -> None:
        harness = Harness(directory_error=ConnectionError("reset"))
        with pytest.raises(UserDirectoryError, match="reset"):
            await harness.sweep()


# ---------------------------------------------------------------------------
# Read sharing & time budget
# ---------------------------------------------------------------------------


class TestReadsAndBudget:
    @pytest.mark.asyncio
    async def test_shared_reach_fetched_once(self) -> None:
        harness = Harness(
            users=[_make_user("u1", FLOODING), _make_user("u2", FLOODING, QUIET)]
        )

        result = await harness.sweep()

        assert result.alerts_sent == 2
        fetched = [c.args[0] for c in harness.gateway.fetch_location.await_args_list]
        assert sorted(fetched) == [FLOODING, QUIET]

    @pytest.mark.asyncio
    async def test_reads_not_shared_across_sweeps(self) -> None:
        harness = Harness(users=[_make_user("u1", QUIET)])
        await harness.sweep()
        await harness.sweep()
        assert harness.gateway.fetch_location.await_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 3])
    async def test_in_flight_units_bounded(self, limit: int) -> None:
        in_flight = 0
        peak = 0

        async def tracked(location_id: str) -> LocationData:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await asyncio.sleep(0.01)
                return _location(location_id, 10.0)
            finally:
                in_flight -= 1

        users = [
            _make_user(f"u{i}", str(2000 + 2 * i), str(2001 + 2 * i)) for i in range(5)
        ]
        harness = Harness(users=users, fetch=tracked, max_concurrency=limit)

        result = await harness.sweep()

        assert result.users_checked == 5
        assert result.errors == 0
        assert harness.gateway.fetch_location.await_count == 10
        assert peak == limit
        assert in_flight == 0

    @pytest.mark.asyncio
    async def test_timeout_aborts_sweep(self) -> None:
        async def slow(location_id: str) -> LocationData:
            await asyncio.sleep(5)
            return _location(location_id, 1200.0)

        harness = Harness(users=[_make_user("u1", FLOODING)], fetch=slow)
        with pytest.raises(SweepTimeoutError):
            await harness.orchestrator.run_alert_sweep(timeout_seconds=0.05)
        assert len(harness.transport.sent) == 0


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetrics:
    @pytest.mark.asyncio
    async def test_metrics_emitted(self) -> None:
        harness = Harness(users=[_make_user("u1", FLOODING, BROKEN)])
        await harness.sweep()

        emitted = {c.args[0]: c.args[1] for c in harness.metrics.call_args_list}
        assert set(emitted) == {
            METRIC_SWEEP_DURATION,
            METRIC_ALERTS_SENT,
            METRIC_SWEEP_ERRORS,
        }
        assert emitted[METRIC_ALERTS_SENT] == 1.0
        assert emitted[METRIC_SWEEP_ERRORS] == 1.0

    @pytest.mark.asyncio
    async def test_metric_failure_does_not_fail_sweep(self) -> None:
        harness = Harness(users=[_make_user("u1", FLOODING)])
        harness.metrics.side_effect = RuntimeError("metrics backend down")
        result = await harness.sweep()
        assert result.alerts_sent == 1


# ---------------------------------------------------------------------------
# Wiring & entrypoint
# ---------------------------------------------------------------------------


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {"database_url": "postgres://test", "app_env": "local"}
    values.update(overrides)
    return Settings(**values)


class TestWiring:
    def test_logging_transport_without_arn(self) -> None:
        assert isinstance(_create_push_transport(_settings()), LoggingPushTransport)

    @pytest.mark.parametrize(
        ("app_env", "expected"), [("production", 1.0), ("local", 25.0)]
    )
    def test_build_orchestrator_scale_factor(self, app_env: str, expected: float) -> None:
        orchestrator = build_orchestrator(
            _settings(app_env=app_env),
            client=MagicMock(),
            transport=LoggingPushTransport(),
        )
        assert orchestrator._evaluator.scale_factor == expected

    def test_budget_without_context(self) -> None:
        assert _sweep_budget_seconds(None, 540.0) == 540.0

    def test_budget_capped_by_remaining_time(self) -> None:
        context = MagicMock()
        context.get_remaining_time_in_millis.return_value = 60_000
        assert _sweep_budget_seconds(context, 540.0) == 55.0


class TestHandler:
    def test_returns_summary(self) -> None:
        summary = SweepResult(users_checked=3, alerts_sent=1, errors=0, duration_ms=42)
        with (
            patch("worker.alerts.handler.load_settings", return_value=_settings()),
            patch(
                "worker.alerts.handler.run_configured_sweep",
                AsyncMock(return_value=summary),
            ) as run,
        ):
            response = handler({"time": "2026-02-06T12:00:00Z"}, None)

        assert response == summary.model_dump()
        assert run.await_args.kwargs["timeout_seconds"] == 540.0

    def test_reraises_fatal_errors(self) -> None:
        with (
            patch("worker.alerts.handler.load_settings", return_value=_settings()),
            patch(
                "worker.alerts.handler.run_configured_sweep",
                AsyncMock(side_effect=UserDirectoryError("db down")),
            ),
        ):
            with pytest.raises(UserDirectoryError):
                handler({}, None)
