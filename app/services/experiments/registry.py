import asyncio
import copy
import dataclasses
import uuid
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from app.models.schemas import CreateTestRequest
from app.services.experiments.collaborators import Clock
from app.services.experiments.domain import (
    ABTest,
    ABTestStatus,
    Audience,
    AudienceCriterion,
    Metric,
    MetricType,
    Variant,
    VariantMetricResult,
)
from app.services.experiments.exceptions import (
    InvalidStateTransition,
    TestNotFoundError,
    ValidationError,
)
from app.services.experiments.storage import ExperimentStore

logger = structlog.get_logger("experiments.registry")

MIN_SAMPLE_SIZE = 100
MIN_DURATION_HOURS = 24

# Allowed source states for each lifecycle target
TRANSITIONS = {
    ABTestStatus.RUNNING: {ABTestStatus.DRAFT, ABTestStatus.PAUSED},
    ABTestStatus.PAUSED: {ABTestStatus.RUNNING},
    ABTestStatus.COMPLETED: {ABTestStatus.RUNNING, ABTestStatus.PAUSED},
}


def validate_test_config(request: CreateTestRequest) -> List[str]:
    """Return every rule the configuration breaks; an empty list means valid."""
    violations = []

    if not request.name.strip():
        violations.append("Test name is required")

    variants = request.variants
    if len(variants) < 2:
        violations.append("A/B test must have at least 2 variants")

    ids = [v.id for v in variants if v.id]
    if len(ids) != len(set(ids)):
        violations.append("Variant ids must be unique")

    for v in variants:
        if not 0 <= v.traffic_allocation <= 100:
            violations.append(f"Variant '{v.name}' traffic allocation must be between 0 and 100")

    active = [v for v in variants if v.is_active]
    if not active:
        violations.append("At least one variant must be active")

    total_allocation = sum(v.traffic_allocation for v in active)
    if total_allocation != 100:
        violations.append(
            f"Total traffic allocation of active variants must equal 100% (got {total_allocation}%)"
        )

    if not request.metrics:
        violations.append("Test must have at least one metric")
    primary = [m for m in request.metrics if m.type == MetricType.PRIMARY]
    if len(primary) != 1:
        violations.append("Test must have exactly one primary metric")

    if request.audience.sample_size < MIN_SAMPLE_SIZE:
        violations.append(f"Sample size must be at least {MIN_SAMPLE_SIZE}")
    if request.audience.duration < MIN_DURATION_HOURS:
        violations.append(f"Test duration must be at least {MIN_DURATION_HOURS} hours")

    if not 0 < request.significance < 1:
        violations.append("Significance must be between 0 and 1")

    if request.status not in (ABTestStatus.DRAFT, ABTestStatus.RUNNING):
        violations.append("Initial status must be draft or running")

    return violations


class ResultsCache:
    """Per-test running statistics, keyed by (variant_id, metric_name).

    Updates to one (test, variant, metric) key are serialised by a dedicated
    lock so concurrent impressions never lose an observation. The per-test
    ``guard`` lock orders whole-test rebuilds against persist-then-observe
    writes so an event is counted exactly once.
    """

    def __init__(self):
        self._results: Dict[str, Dict[Tuple[str, str], VariantMetricResult]] = {}
        self._locks: Dict[Tuple[str, str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._test_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def guard(self, test_id: str) -> asyncio.Lock:
        return self._test_locks[test_id]

    async def observe(
        self, test_id: str, variant_id: str, metric_name: str, value: float
    ) -> VariantMetricResult:
        async with self._locks[(test_id, variant_id, metric_name)]:
            results = self._results.setdefault(test_id, {})
            key = (variant_id, metric_name)
            if key not in results:
                results[key] = VariantMetricResult(variant_id=variant_id, metric_name=metric_name)
            results[key].observe(value)
            return copy.copy(results[key])

    def snapshot(self, test_id: str) -> List[VariantMetricResult]:
        return [copy.copy(r) for r in self._results.get(test_id, {}).values()]

    def replace(self, test_id: str, results: Iterable[VariantMetricResult]) -> None:
        self._results[test_id] = {(r.variant_id, r.metric_name): copy.copy(r) for r in results}

    def update(self, test_id: str, results: Iterable[VariantMetricResult]) -> None:
        """Overwrite significance fields of cached entries from analysed copies."""
        cached = self._results.get(test_id, {})
        for r in results:
            entry = cached.get((r.variant_id, r.metric_name))
            if entry is not None:
                entry.confidence = r.confidence
                entry.p_value = r.p_value
                entry.is_significant = r.is_significant

    def drop(self, test_id: str) -> None:
        self._results.pop(test_id, None)
        self._test_locks.pop(test_id, None)
        for key in [k for k in self._locks if k[0] == test_id]:
            del self._locks[key]

    def clear(self) -> None:
        self._results.clear()
        self._locks.clear()
        self._test_locks.clear()


class ABTestRegistry:
    """
    Owns test definitions: validation, persistence and the in-process caches.

    One registry instance is shared by the assigner, recorder and monitor of
    an engine; constructing a new one gives fully isolated state.
    """

    def __init__(self, store: ExperimentStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or Clock()
        self.results = ResultsCache()
        self._tests: Dict[str, ABTest] = {}
        self._lock = asyncio.Lock()

    async def create_test(self, request: CreateTestRequest) -> ABTest:
        violations = validate_test_config(request)
        if violations:
            logger.warning("test_validation_failed", name=request.name, violations=violations)
            raise ValidationError(violations)

        now = self.clock.now()
        start_date = request.start_date
        if request.status == ABTestStatus.RUNNING and start_date is None:
            start_date = now

        test = ABTest(
            id=str(uuid.uuid4()),
            name=request.name,
            description=request.description,
            variants=[
                Variant(
                    id=v.id or f"variant_{uuid.uuid4().hex[:12]}",
                    name=v.name,
                    content=v.content,
                    traffic_allocation=v.traffic_allocation,
                    is_active=v.is_active,
                )
                for v in request.variants
            ],
            audience=Audience(
                segments=list(request.audience.segments),
                criteria=[
                    AudienceCriterion(field=c.field, operator=c.operator, value=c.value)
                    for c in request.audience.criteria
                ],
                sample_size=request.audience.sample_size,
                duration=request.audience.duration,
            ),
            metrics=[
                Metric(name=m.name, type=m.type, calculation=m.calculation, target=m.target)
                for m in request.metrics
            ],
            status=request.status,
            significance=request.significance,
            start_date=start_date,
            end_date=request.end_date,
            created_by=request.created_by,
            created_at=now,
            updated_at=now,
        )

        await self.store.save_test(test)

        async with self._lock:
            self._tests[test.id] = test

        logger.info("test_created", test_id=test.id, name=test.name, status=test.status.value)
        return test

    async def get_test(self, test_id: str, refresh: bool = False) -> Optional[ABTest]:
        """Return the test, from cache unless ``refresh`` forces a storage read.

        A refreshed read replaces the cached copy, or evicts it when the test
        is gone, so changes made by other engine instances are picked up.
        """
        if not refresh:
            test = self._tests.get(test_id)
            if test is not None:
                return test

        test = await self.store.get_test(test_id)
        async with self._lock:
            if test is None:
                self._tests.pop(test_id, None)
            else:
                self._tests[test_id] = test
        return test

    async def get_active_tests(self) -> List[ABTest]:
        return await self.store.list_tests(status=ABTestStatus.RUNNING)

    async def load_active_tests(self) -> int:
        tests = await self.get_active_tests()
        async with self._lock:
            for test in tests:
                self._tests[test.id] = test
        logger.info("active_tests_loaded", count=len(tests))
        return len(tests)

    async def _require(self, test_id: str) -> ABTest:
        test = await self.get_test(test_id, refresh=True)
        if test is None:
            raise TestNotFoundError(test_id)
        return test

    async def _transition(self, test_id: str, target: ABTestStatus, **changes) -> ABTest:
        test = await self._require(test_id)

        if test.status == target:
            return test
        if test.status not in TRANSITIONS[target]:
            raise InvalidStateTransition(test_id, test.status.value, target.value)

        updated = dataclasses.replace(
            test, status=target, updated_at=self.clock.now(), **changes
        )
        # Persist first so the cache never runs ahead of storage
        await self.store.update_test(updated)

        async with self._lock:
            self._tests[test_id] = updated

        logger.info(
            "test_status_changed", test_id=test_id, from_status=test.status.value, to_status=target.value
        )
        return updated

    async def start_test(self, test_id: str) -> ABTest:
        test = await self._require(test_id)
        changes = {}
        if test.status == ABTestStatus.DRAFT and test.start_date is None:
            changes["start_date"] = self.clock.now()
        return await self._transition(test_id, ABTestStatus.RUNNING, **changes)

    async def pause_test(self, test_id: str) -> ABTest:
        return await self._transition(test_id, ABTestStatus.PAUSED)

    async def resume_test(self, test_id: str) -> ABTest:
        test = await self._require(test_id)
        if test.status == ABTestStatus.DRAFT:
            raise InvalidStateTransition(test_id, test.status.value, ABTestStatus.RUNNING.value)
        return await self._transition(test_id, ABTestStatus.RUNNING)

    async def complete_test(self, test_id: str, winner: Optional[str] = None) -> ABTest:
        test = await self._require(test_id)
        if winner is not None and test.get_variant(winner) is None:
            raise ValueError(f"Variant {winner} does not belong to test {test_id}")

        completed = await self._transition(
            test_id, ABTestStatus.COMPLETED, winner=winner, end_date=self.clock.now()
        )
        logger.info("test_completed", test_id=test_id, winner=winner or "none")
        return completed

    async def end_test(self, test_id: str, winner: Optional[str] = None) -> ABTest:
        logger.info("test_end_requested", test_id=test_id, winner=winner)
        return await self.complete_test(test_id, winner)

    async def delete_test(self, test_id: str, missing_ok: bool = False) -> bool:
        test = await self.get_test(test_id, refresh=True)
        if test is None:
            if missing_ok:
                return False
            raise TestNotFoundError(test_id)
        if test.status == ABTestStatus.COMPLETED:
            raise InvalidStateTransition(test_id, test.status.value, "deleted")

        await self.store.delete_test(test_id)

        async with self._lock:
            self._tests.pop(test_id, None)
        self.results.drop(test_id)

        logger.info("test_deleted", test_id=test_id)
        return True

    async def close(self) -> None:
        async with self._lock:
            self._tests.clear()
        self.results.clear()
