from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.experiment import (
    ABTestRecord,
    TestAssignmentRecord,
    TestImpressionRecord,
    TestResultRecord,
)
from app.services.experiments.domain import (
    ABTest,
    ABTestStatus,
    Assignment,
    Audience,
    Impression,
    Metric,
    MetricAggregate,
    Variant,
    VariantMetricResult,
)
from app.services.experiments.exceptions import AssignmentConflict, StorageFailure
from app.services.experiments.storage import ExperimentStore

logger = structlog.get_logger("experiments.sql_store")


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_test(row: ABTestRecord) -> ABTest:
    return ABTest(
        id=row.id,
        name=row.name,
        description=row.description or "",
        variants=[Variant.from_dict(v) for v in row.variants or []],
        audience=Audience.from_dict(row.target_audience or {}),
        metrics=[Metric.from_dict(m) for m in row.metrics or []],
        status=row.status,
        winner=row.winner,
        significance=row.significance if row.significance is not None else 0.95,
        start_date=_utc(row.start_date),
        end_date=_utc(row.end_date),
        created_by=row.created_by or "system",
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _apply_test(row: ABTestRecord, test: ABTest) -> None:
    row.name = test.name
    row.description = test.description
    row.variants = [v.to_dict() for v in test.variants]
    row.target_audience = test.audience.to_dict()
    row.metrics = [m.to_dict() for m in test.metrics]
    row.status = test.status
    row.winner = test.winner
    row.significance = test.significance
    row.start_date = test.start_date
    row.end_date = test.end_date
    row.created_by = test.created_by
    row.created_at = test.created_at
    row.updated_at = test.updated_at


def _to_assignment(row: TestAssignmentRecord) -> Assignment:
    return Assignment(
        test_id=row.test_id,
        subject_key=row.subject_key,
        variant_id=row.variant_id,
        assigned_at=_utc(row.assigned_at),
        expires_at=_utc(row.expires_at),
        user_id=row.user_id,
        session_id=row.session_id,
    )


def _to_impression(row: TestImpressionRecord) -> Impression:
    return Impression(
        id=row.id,
        test_id=row.test_id,
        variant_id=row.variant_id,
        subject_key=row.subject_key,
        type=row.type,
        timestamp=_utc(row.timestamp),
        value=row.value,
        metadata=row.metadata_ or {},
    )


class SQLAlchemyExperimentStore(ExperimentStore):
    """ExperimentStore on an async SQLAlchemy session factory (PostgreSQL or SQLite)."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("storage_operation_failed", operation=operation, error=str(e))
            raise StorageFailure(operation, e) from e

    async def save_test(self, test: ABTest) -> None:
        async with self._transaction("save_test") as session:
            row = ABTestRecord(id=test.id)
            _apply_test(row, test)
            session.add(row)

    async def update_test(self, test: ABTest) -> None:
        async with self._transaction("update_test") as session:
            row = await session.get(ABTestRecord, test.id)
            if row is not None:
                _apply_test(row, test)

    async def get_test(self, test_id: str) -> Optional[ABTest]:
        async with self._transaction("get_test") as session:
            row = await session.get(ABTestRecord, test_id)
            return _to_test(row) if row is not None else None

    async def list_tests(self, status: Optional[ABTestStatus] = None) -> List[ABTest]:
        query = select(ABTestRecord).order_by(ABTestRecord.created_at.desc())
        if status is not None:
            query = query.where(ABTestRecord.status == status)

        async with self._transaction("list_tests") as session:
            result = await session.execute(query)
            return [_to_test(row) for row in result.scalars().all()]

    async def delete_test(self, test_id: str) -> bool:
        async with self._transaction("delete_test") as session:
            for model in (TestAssignmentRecord, TestImpressionRecord, TestResultRecord):
                await session.execute(delete(model).where(model.test_id == test_id))
            result = await session.execute(delete(ABTestRecord).where(ABTestRecord.id == test_id))
            return result.rowcount > 0

    async def get_live_assignment(
        self, test_id: str, subject_key: str, now: datetime
    ) -> Optional[Assignment]:
        query = select(TestAssignmentRecord).where(
            TestAssignmentRecord.test_id == test_id,
            TestAssignmentRecord.subject_key == subject_key,
        )
        async with self._transaction("get_assignment") as session:
            result = await session.execute(query)
            row = result.scalar_one_or_none()

        if row is None:
            return None
        assignment = _to_assignment(row)
        return assignment if assignment.is_live(now) else None

    async def insert_assignment_if_absent(self, assignment: Assignment, now: datetime) -> None:
        async with self._transaction("insert_assignment") as session:
            await session.execute(
                delete(TestAssignmentRecord).where(
                    TestAssignmentRecord.test_id == assignment.test_id,
                    TestAssignmentRecord.subject_key == assignment.subject_key,
                    TestAssignmentRecord.expires_at.isnot(None),
                    TestAssignmentRecord.expires_at <= now,
                )
            )
            session.add(
                TestAssignmentRecord(
                    test_id=assignment.test_id,
                    variant_id=assignment.variant_id,
                    subject_key=assignment.subject_key,
                    user_id=assignment.user_id,
                    session_id=assignment.session_id,
                    assigned_at=assignment.assigned_at,
                    expires_at=assignment.expires_at,
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                raise AssignmentConflict(assignment.test_id, assignment.subject_key)

    async def list_subject_assignments(
        self, subject_key: str, since: datetime
    ) -> List[Assignment]:
        query = select(TestAssignmentRecord).where(
            TestAssignmentRecord.subject_key == subject_key,
            TestAssignmentRecord.assigned_at > since,
        )
        async with self._transaction("list_subject_assignments") as session:
            result = await session.execute(query)
            return [_to_assignment(row) for row in result.scalars().all()]

    async def get_subject_history(self, subject_key: str, limit: int) -> List[ABTest]:
        last_assigned = func.max(TestAssignmentRecord.assigned_at)
        query = (
            select(TestAssignmentRecord.test_id, last_assigned)
            .where(TestAssignmentRecord.subject_key == subject_key)
            .group_by(TestAssignmentRecord.test_id)
            .order_by(last_assigned.desc())
            .limit(limit)
        )

        async with self._transaction("get_subject_history") as session:
            result = await session.execute(query)
            test_ids = [row[0] for row in result.all()]
            if not test_ids:
                return []

            rows = await session.execute(select(ABTestRecord).where(ABTestRecord.id.in_(test_ids)))
            tests = {row.id: _to_test(row) for row in rows.scalars().all()}

        return [tests[test_id] for test_id in test_ids if test_id in tests]

    async def save_impression(self, impression: Impression) -> None:
        async with self._transaction("save_impression") as session:
            session.add(
                TestImpressionRecord(
                    id=impression.id,
                    test_id=impression.test_id,
                    variant_id=impression.variant_id,
                    subject_key=impression.subject_key,
                    type=impression.type,
                    value=impression.value,
                    timestamp=impression.timestamp,
                    metadata_=impression.metadata or {},
                )
            )

    async def list_impressions(self, test_id: str) -> List[Impression]:
        query = (
            select(TestImpressionRecord)
            .where(TestImpressionRecord.test_id == test_id)
            .order_by(TestImpressionRecord.timestamp.desc())
        )
        async with self._transaction("list_impressions") as session:
            result = await session.execute(query)
            return [_to_impression(row) for row in result.scalars().all()]

    async def aggregate_impressions(self, test_id: str) -> List[MetricAggregate]:
        query = (
            select(
                TestImpressionRecord.variant_id,
                TestImpressionRecord.type,
                func.count(),
                func.sum(func.coalesce(TestImpressionRecord.value, 1.0)),
            )
            .where(TestImpressionRecord.test_id == test_id)
            .group_by(TestImpressionRecord.variant_id, TestImpressionRecord.type)
        )
        async with self._transaction("aggregate_impressions") as session:
            result = await session.execute(query)
            return [
                MetricAggregate(
                    variant_id=variant_id,
                    metric_name=event_type.value,
                    count=count,
                    total=float(total or 0.0),
                )
                for variant_id, event_type, count, total in result.all()
            ]

    async def save_results(self, test_id: str, results: List[VariantMetricResult]) -> None:
        async with self._transaction("save_results") as session:
            if await session.get(ABTestRecord, test_id) is None:
                return
            await session.execute(delete(TestResultRecord).where(TestResultRecord.test_id == test_id))
            for r in results:
                session.add(
                    TestResultRecord(
                        test_id=test_id,
                        variant_id=r.variant_id,
                        metric_name=r.metric_name,
                        value=r.value,
                        total=r.total,
                        sample_size=r.sample_size,
                        confidence=r.confidence,
                        p_value=r.p_value,
                        is_significant=r.is_significant,
                    )
                )

    async def get_results(self, test_id: str) -> List[VariantMetricResult]:
        query = select(TestResultRecord).where(TestResultRecord.test_id == test_id)
        async with self._transaction("get_results") as session:
            result = await session.execute(query)
            return [
                VariantMetricResult(
                    variant_id=row.variant_id,
                    metric_name=row.metric_name,
                    value=row.value or 0.0,
                    total=row.total or 0.0,
                    sample_size=row.sample_size or 0,
                    confidence=row.confidence or 0.0,
                    p_value=row.p_value if row.p_value is not None else 1.0,
                    is_significant=bool(row.is_significant),
                )
                for row in result.scalars().all()
            ]

    async def count_tests_by_status(self) -> Dict[str, int]:
        query = select(ABTestRecord.status, func.count()).group_by(ABTestRecord.status)
        async with self._transaction("count_tests_by_status") as session:
            result = await session.execute(query)
            return {status.value: count for status, count in result.all()}

    async def count_impressions(self) -> int:
        async with self._transaction("count_impressions") as session:
            result = await session.execute(select(func.count()).select_from(TestImpressionRecord))
            return result.scalar_one()

    async def count_assignments(self) -> int:
        async with self._transaction("count_assignments") as session:
            result = await session.execute(select(func.count()).select_from(TestAssignmentRecord))
            return result.scalar_one()
