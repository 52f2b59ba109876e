import asyncio
import contextlib
from datetime import timedelta
from typing import List, Optional

import structlog

from app.config import get_settings
from app.services.experiments import analysis
from app.services.experiments.domain import ABTest, ABTestStatus, VariantMetricResult
from app.services.experiments.registry import ABTestRegistry
from observability.alerts import AlertManager, get_alert_manager

logger = structlog.get_logger("experiments.monitor")

_UNSET = object()


class CompletionMonitor:
    """
    Periodically refreshes results of running tests and completes the ones
    that meet the stopping rule.

    ``run_once`` performs a single sweep and can be driven externally (API,
    Prefect flow, tests); ``start``/``stop`` manage the background loop.
    """

    def __init__(
        self,
        registry: ABTestRegistry,
        alerts: Optional[AlertManager] = None,
        interval_seconds: Optional[float] = None,
        max_duration_hours=_UNSET,
    ):
        settings = get_settings()
        self.registry = registry
        self.alerts = alerts or get_alert_manager()
        self.interval_seconds = interval_seconds or settings.EXPERIMENT_MONITOR_INTERVAL_SECONDS
        self.max_duration_hours: Optional[int] = (
            settings.EXPERIMENT_MAX_DURATION_HOURS
            if max_duration_hours is _UNSET
            else max_duration_hours
        )

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="completion-monitor")
        logger.info("completion_monitor_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("completion_monitor_stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                # The sweep itself failed; retry on the next tick
                logger.error("completion_cycle_failed", error=str(e), error_type=type(e).__name__)
                self.alerts.emit_monitor_failure(str(e), error_type=type(e).__name__)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> List[ABTest]:
        """Evaluate every running test once; returns the tests completed in this sweep."""
        tests = await self.registry.get_active_tests()
        completed = []

        for test in tests:
            try:
                result = await self.evaluate_test(test.id)
            except Exception as e:
                logger.error(
                    "completion_check_failed",
                    test_id=test.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.alerts.emit_test_evaluation_failure(test.id, str(e))
                continue

            if result is not None:
                completed.append(result)

        logger.info("completion_cycle_finished", checked=len(tests), completed=len(completed))
        return completed

    async def refresh_results(self, test: ABTest) -> Optional[List[VariantMetricResult]]:
        """Rebuild the test's cached results from storage aggregates and persist them.

        Returns None, and forgets any cached results, when the test was deleted
        while its aggregates were read.
        """
        async with self.registry.results.guard(test.id):
            aggregates = await self.registry.store.aggregate_impressions(test.id)
            results = [VariantMetricResult.from_aggregate(a) for a in aggregates]
            analysis.apply_significance(test, results)

            if await self.registry.get_test(test.id, refresh=True) is None:
                logger.info("results_refresh_skipped", test_id=test.id, reason="test_deleted")
                self.registry.results.drop(test.id)
                return None
            self.registry.results.replace(test.id, results)

        await self.registry.store.save_results(test.id, results)
        return results

    async def evaluate_test(self, test_id: str) -> Optional[ABTest]:
        test = await self.registry.get_test(test_id, refresh=True)
        if test is None or test.status != ABTestStatus.RUNNING:
            return None

        results = await self.refresh_results(test)
        if results is None:
            return None
        comparisons = analysis.compare_to_control(test, results)
        now = self.registry.clock.now()

        if analysis.should_complete(test, results, comparisons, now):
            winner = analysis.pick_winner(comparisons)
            completed = await self.registry.complete_test(test.id, winner)
            self.alerts.emit_test_completed(
                test.id,
                test.name,
                winner,
                total_events=analysis.total_events(results),
            )
            return completed

        if self._timed_out(test, now):
            completed = await self.registry.complete_test(test.id, winner=None)
            self.alerts.emit_test_timed_out(test.id, test.name, self.max_duration_hours)
            return completed

        return None

    def _timed_out(self, test: ABTest, now) -> bool:
        if self.max_duration_hours is None or test.start_date is None:
            return False
        return now - test.start_date >= timedelta(hours=self.max_duration_hours)
