"""
Audience eligibility for variant assignment.

A subject is eligible for a test only when all three guards pass:

1. Saturation: fewer than ``EXPERIMENT_SATURATION_LIMIT`` similar tests
   (shared metric name or audience segment) assigned to the subject within the
   trailing ``EXPERIMENT_SATURATION_WINDOW_DAYS``.
2. Segments: when the test targets segments, the subject belongs to one.
3. Criteria: every criterion holds. Unknown fields pass, unknown operators fail.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from app.config import get_settings
from app.services.experiments.collaborators import (
    Clock,
    SegmentProvider,
    StaticSegmentProvider,
    StaticSubjectProfileProvider,
    SubjectProfileProvider,
)
from app.services.experiments.domain import NEW_VISITOR_SEGMENT, ABTest, AudienceCriterion
from app.services.experiments.registry import ABTestRegistry

logger = structlog.get_logger("experiments.audience")


@dataclass
class Subject:
    key: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None


# Resolves the subject's value for one criterion field
CriterionEvaluator = Callable[[Subject], Awaitable[Any]]


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (str, list, tuple, set, dict)):
        return expected in actual
    return False


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda actual, expected: actual == expected,
    "contains": _contains,
    "greater_than": lambda actual, expected: actual > expected,
    "less_than": lambda actual, expected: actual < expected,
    "in": lambda actual, expected: actual in expected,
    "not_in": lambda actual, expected: actual not in expected,
}


class AudienceFilter:
    def __init__(
        self,
        registry: ABTestRegistry,
        segment_provider: Optional[SegmentProvider] = None,
        profile_provider: Optional[SubjectProfileProvider] = None,
        clock: Optional[Clock] = None,
        saturation_limit: Optional[int] = None,
        saturation_window_days: Optional[int] = None,
    ):
        settings = get_settings()
        self.registry = registry
        self.segment_provider = segment_provider or StaticSegmentProvider()
        self.profile_provider = profile_provider or StaticSubjectProfileProvider()
        self.clock = clock or registry.clock
        self.saturation_limit = saturation_limit or settings.EXPERIMENT_SATURATION_LIMIT
        self.saturation_window = timedelta(
            days=saturation_window_days or settings.EXPERIMENT_SATURATION_WINDOW_DAYS
        )

        self._evaluators: Dict[str, CriterionEvaluator] = {
            "total_purchases": self._total_purchases,
            "session_count": self._session_count,
            "last_visit": self._hours_since_last_visit,
        }

    def register_criterion(self, field: str, evaluator: CriterionEvaluator) -> None:
        """Add or replace the evaluator used for a criterion field."""
        self._evaluators[field] = evaluator

    async def is_eligible(
        self,
        test: ABTest,
        subject_key: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> bool:
        subject = Subject(key=subject_key, user_id=user_id, session_id=session_id)

        if not await self._check_saturation(test, subject):
            logger.info("subject_saturated", test_id=test.id, subject_key=subject_key)
            return False

        if test.audience.segments and not await self._check_segments(test, subject):
            logger.debug("subject_outside_segments", test_id=test.id, subject_key=subject_key)
            return False

        for criterion in test.audience.criteria:
            if not await self._check_criterion(criterion, subject):
                logger.debug(
                    "subject_failed_criterion",
                    test_id=test.id,
                    subject_key=subject_key,
                    field=criterion.field,
                    operator=criterion.operator,
                )
                return False

        return True

    async def _check_saturation(self, test: ABTest, subject: Subject) -> bool:
        since = self.clock.now() - self.saturation_window
        recent = await self.registry.store.list_subject_assignments(subject.key, since)

        similar = set()
        for test_id in {a.test_id for a in recent if a.test_id != test.id}:
            other = await self.registry.get_test(test_id)
            if other is not None and test.is_similar_to(other):
                similar.add(test_id)

        return len(similar) < self.saturation_limit

    async def get_segments(self, user_id: Optional[str]) -> List[str]:
        if not user_id:
            return [NEW_VISITOR_SEGMENT]
        segments = await self.segment_provider.get_segments(user_id)
        return list(segments) if segments else [NEW_VISITOR_SEGMENT]

    async def _check_segments(self, test: ABTest, subject: Subject) -> bool:
        segments = await self.get_segments(subject.user_id)
        return bool(set(segments) & set(test.audience.segments))

    async def _check_criterion(self, criterion: AudienceCriterion, subject: Subject) -> bool:
        evaluator = self._evaluators.get(criterion.field)
        if evaluator is None:
            return True

        operator = OPERATORS.get(criterion.operator)
        if operator is None:
            logger.warning(
                "unknown_criterion_operator", field=criterion.field, operator=criterion.operator
            )
            return False

        actual = await evaluator(subject)
        try:
            return bool(operator(actual, criterion.value))
        except TypeError:
            logger.warning(
                "criterion_type_mismatch",
                field=criterion.field,
                operator=criterion.operator,
                actual=actual,
                expected=criterion.value,
            )
            return False

    async def _total_purchases(self, subject: Subject) -> Any:
        return await self.profile_provider.get_total_purchases(subject.user_id)

    async def _session_count(self, subject: Subject) -> Any:
        return await self.profile_provider.get_session_count(subject.session_id or subject.key)

    async def _hours_since_last_visit(self, subject: Subject) -> Any:
        last_visit = await self.profile_provider.get_last_visit(subject.key)
        if last_visit is None:
            return float("inf")
        return (self.clock.now() - last_visit).total_seconds() / 3600
