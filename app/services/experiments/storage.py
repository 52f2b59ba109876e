"""
Storage boundary for the experimentation engine.

``ExperimentStore`` is the only way the engine touches persistence. The
in-memory implementation backs tests, local simulations and the traffic
simulator; ``sql_store.SQLAlchemyExperimentStore`` backs the service.

The one primitive that must be atomic is ``insert_assignment_if_absent``:
it either stores the new assignment or raises ``AssignmentConflict`` when a
live assignment for the same (test_id, subject_key) already exists.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from app.services.experiments.domain import (
    ABTest,
    ABTestStatus,
    Assignment,
    Impression,
    MetricAggregate,
    VariantMetricResult,
)
from app.services.experiments.exceptions import AssignmentConflict


class ExperimentStore(ABC):
    # Tests

    @abstractmethod
    async def save_test(self, test: ABTest) -> None: ...

    @abstractmethod
    async def update_test(self, test: ABTest) -> None: ...

    @abstractmethod
    async def get_test(self, test_id: str) -> Optional[ABTest]: ...

    @abstractmethod
    async def list_tests(self, status: Optional[ABTestStatus] = None) -> List[ABTest]:
        """Tests ordered by creation time, newest first."""

    @abstractmethod
    async def delete_test(self, test_id: str) -> bool:
        """Delete a test with its assignments, impressions and results."""

    # Assignments

    @abstractmethod
    async def get_live_assignment(
        self, test_id: str, subject_key: str, now: datetime
    ) -> Optional[Assignment]: ...

    @abstractmethod
    async def insert_assignment_if_absent(self, assignment: Assignment, now: datetime) -> None: ...

    @abstractmethod
    async def list_subject_assignments(
        self, subject_key: str, since: datetime
    ) -> List[Assignment]: ...

    @abstractmethod
    async def get_subject_history(self, subject_key: str, limit: int) -> List[ABTest]:
        """Distinct tests a subject was assigned to, most recently assigned first."""

    # Impressions

    @abstractmethod
    async def save_impression(self, impression: Impression) -> None: ...

    @abstractmethod
    async def list_impressions(self, test_id: str) -> List[Impression]:
        """Impressions of a test, newest first."""

    @abstractmethod
    async def aggregate_impressions(self, test_id: str) -> List[MetricAggregate]: ...

    # Results

    @abstractmethod
    async def save_results(self, test_id: str, results: List[VariantMetricResult]) -> None: ...

    @abstractmethod
    async def get_results(self, test_id: str) -> List[VariantMetricResult]: ...

    # Stats

    @abstractmethod
    async def count_tests_by_status(self) -> Dict[str, int]: ...

    @abstractmethod
    async def count_impressions(self) -> int: ...

    @abstractmethod
    async def count_assignments(self) -> int: ...

    async def close(self) -> None:
        return None


class InMemoryExperimentStore(ExperimentStore):
    """Dictionary-backed store. Returned objects are copies, as a database would hand out."""

    def __init__(self):
        self._tests: Dict[str, ABTest] = {}
        self._assignments: Dict[Tuple[str, str], Assignment] = {}
        self._by_subject: Dict[str, List[Assignment]] = defaultdict(list)
        self._impressions: Dict[str, List[Impression]] = defaultdict(list)
        self._results: Dict[str, List[VariantMetricResult]] = {}
        self._assignment_lock = asyncio.Lock()

    async def save_test(self, test: ABTest) -> None:
        self._tests[test.id] = copy.deepcopy(test)

    async def update_test(self, test: ABTest) -> None:
        if test.id in self._tests:
            self._tests[test.id] = copy.deepcopy(test)

    async def get_test(self, test_id: str) -> Optional[ABTest]:
        test = self._tests.get(test_id)
        return copy.deepcopy(test) if test else None

    async def list_tests(self, status: Optional[ABTestStatus] = None) -> List[ABTest]:
        tests = [t for t in self._tests.values() if status is None or t.status == status]
        tests.sort(key=lambda t: t.created_at or datetime.min, reverse=True)
        return [copy.deepcopy(t) for t in tests]

    async def delete_test(self, test_id: str) -> bool:
        existed = self._tests.pop(test_id, None) is not None

        async with self._assignment_lock:
            for key in [k for k in self._assignments if k[0] == test_id]:
                del self._assignments[key]
            for subject_key, rows in list(self._by_subject.items()):
                kept = [a for a in rows if a.test_id != test_id]
                if kept:
                    self._by_subject[subject_key] = kept
                else:
                    del self._by_subject[subject_key]

        self._impressions.pop(test_id, None)
        self._results.pop(test_id, None)
        return existed

    async def get_live_assignment(
        self, test_id: str, subject_key: str, now: datetime
    ) -> Optional[Assignment]:
        assignment = self._assignments.get((test_id, subject_key))
        if assignment and assignment.is_live(now):
            return copy.copy(assignment)
        return None

    async def insert_assignment_if_absent(self, assignment: Assignment, now: datetime) -> None:
        key = (assignment.test_id, assignment.subject_key)
        async with self._assignment_lock:
            existing = self._assignments.get(key)
            if existing and existing.is_live(now):
                raise AssignmentConflict(assignment.test_id, assignment.subject_key)
            if existing:
                # Expired assignments are replaced, not kept alongside the new one
                self._by_subject[assignment.subject_key].remove(existing)

            stored = copy.copy(assignment)
            self._assignments[key] = stored
            self._by_subject[assignment.subject_key].append(stored)

    async def list_subject_assignments(
        self, subject_key: str, since: datetime
    ) -> List[Assignment]:
        return [
            copy.copy(a) for a in self._by_subject.get(subject_key, []) if a.assigned_at > since
        ]

    async def get_subject_history(self, subject_key: str, limit: int) -> List[ABTest]:
        rows = sorted(
            self._by_subject.get(subject_key, []), key=lambda a: a.assigned_at, reverse=True
        )

        history: List[ABTest] = []
        seen = set()
        for assignment in rows:
            if assignment.test_id in seen or assignment.test_id not in self._tests:
                continue
            seen.add(assignment.test_id)
            history.append(copy.deepcopy(self._tests[assignment.test_id]))
            if len(history) >= limit:
                break
        return history

    async def save_impression(self, impression: Impression) -> None:
        self._impressions[impression.test_id].append(copy.deepcopy(impression))

    async def list_impressions(self, test_id: str) -> List[Impression]:
        rows = sorted(self._impressions.get(test_id, []), key=lambda i: i.timestamp, reverse=True)
        return [copy.deepcopy(i) for i in rows]

    async def aggregate_impressions(self, test_id: str) -> List[MetricAggregate]:
        groups: Dict[Tuple[str, str], MetricAggregate] = {}
        for impression in self._impressions.get(test_id, []):
            key = (impression.variant_id, impression.type.value)
            if key not in groups:
                groups[key] = MetricAggregate(
                    variant_id=impression.variant_id,
                    metric_name=impression.type.value,
                    count=0,
                    total=0.0,
                )
            groups[key].count += 1
            groups[key].total += impression.effective_value
        return list(groups.values())

    async def save_results(self, test_id: str, results: List[VariantMetricResult]) -> None:
        if test_id in self._tests:
            self._results[test_id] = [copy.copy(r) for r in results]

    async def get_results(self, test_id: str) -> List[VariantMetricResult]:
        return [copy.copy(r) for r in self._results.get(test_id, [])]

    async def count_tests_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for test in self._tests.values():
            counts[test.status.value] += 1
        return dict(counts)

    async def count_impressions(self) -> int:
        return sum(len(rows) for rows in self._impressions.values())

    async def count_assignments(self) -> int:
        return len(self._assignments)
