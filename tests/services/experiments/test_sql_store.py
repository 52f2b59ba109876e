from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.database import Base
from app.services.experiments.domain import ABTestStatus, Assignment
from app.services.experiments.exceptions import AssignmentConflict, StorageFailure
from app.services.experiments.service import ExperimentService
from app.services.experiments.sql_store import SQLAlchemyExperimentStore


@asynccontextmanager
async def sqlite_store(path, create_schema=True):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    if create_schema:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    try:
        yield SQLAlchemyExperimentStore(
            async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        )
    finally:
        await engine.dispose()


class TestSQLAlchemyExperimentStore:
    @pytest.mark.asyncio
    async def test_test_round_trip(self, tmp_path, clock, make_request):
        async with sqlite_store(tmp_path / "engine.db") as store:
            service = ExperimentService(store, clock=clock)
            created = await service.create_test(
                make_request(
                    audience={
                        "segments": ["vip"],
                        "criteria": [{"field": "total_purchases", "operator": "greater_than", "value": 3}],
                        "sample_size": 500,
                        "duration": 48,
                    }
                )
            )

            loaded = await store.get_test(created.id)

            assert loaded.name == created.name
            assert loaded.status == ABTestStatus.RUNNING
            assert loaded.start_date == clock.now()
            assert [v.id for v in loaded.variants] == ["control", "treatment"]
            assert loaded.variants[0].content == {"color": "green"}
            assert loaded.audience.segments == ["vip"]
            assert loaded.audience.criteria[0].operator == "greater_than"
            assert loaded.audience.duration == 48
            assert loaded.primary_metric.calculation == "conversions / views"

    @pytest.mark.asyncio
    async def test_lifecycle_is_persisted(self, tmp_path, clock, make_request):
        async with sqlite_store(tmp_path / "engine.db") as store:
            service = ExperimentService(store, clock=clock)
            test = await service.create_test(make_request())
            await service.pause_test(test.id)

            assert (await store.get_test(test.id)).status == ABTestStatus.PAUSED
            assert await store.list_tests(status=ABTestStatus.RUNNING) == []
            assert await store.count_tests_by_status() == {"paused": 1}

    @pytest.mark.asyncio
    async def test_assignment_uniqueness(self, tmp_path, clock, make_request):
        async with sqlite_store(tmp_path / "engine.db") as store:
            test = await ExperimentService(store, clock=clock).create_test(make_request())
            now = clock.now()
            assignment = Assignment(
                test_id=test.id,
                subject_key="u1",
                variant_id="control",
                assigned_at=now,
                expires_at=now + timedelta(hours=24),
            )
            await store.insert_assignment_if_absent(assignment, now)

            with pytest.raises(AssignmentConflict):
                await store.insert_assignment_if_absent(assignment, now)

            later = now + timedelta(hours=25)
            assert await store.get_live_assignment(test.id, "u1", later) is None
            await store.insert_assignment_if_absent(
                Assignment(
                    test_id=test.id,
                    subject_key="u1",
                    variant_id="treatment",
                    assigned_at=later,
                    expires_at=later + timedelta(hours=24),
                ),
                later,
            )

            live = await store.get_live_assignment(test.id, "u1", later)
            assert live.variant_id == "treatment"
            assert await store.count_assignments() == 1

    @pytest.mark.asyncio
    async def test_engine_end_to_end(self, tmp_path, clock, make_request):
        async with sqlite_store(tmp_path / "engine.db") as store:
            service = ExperimentService(store, clock=clock, max_duration_hours=None)
            test = await service.create_test(make_request())

            variant = await service.assign_variant(test.id, user_id="u1")
            assert (await service.assign_variant(test.id, user_id="u1")).id == variant.id

            for i in range(100):
                await service.record_impression(test.id, "control", "view", f"c{i}")
                await service.record_impression(test.id, "treatment", "view", f"t{i}")
            for i in range(5):
                await service.record_impression(test.id, "control", "conversion", f"c{i}")
            for i in range(40):
                await service.record_impression(test.id, "treatment", "conversion", f"t{i}", value=25.0)

            clock.advance(hours=24)
            (completed,) = await service.run_completion_cycle()

            assert completed.winner == "treatment"
            assert (await store.get_test(test.id)).status == ABTestStatus.COMPLETED

            aggregates = {
                (a.variant_id, a.metric_name): a for a in await store.aggregate_impressions(test.id)
            }
            assert aggregates[("treatment", "conversion")].count == 40
            assert aggregates[("treatment", "conversion")].total == pytest.approx(1000.0)
            assert aggregates[("control", "view")].count == 100

            results = await store.get_results(test.id)
            assert len(results) == 4

            summary = await service.get_test_summary(test.id)
            assert summary.total_impressions == 245
            assert summary.variant_performance["treatment"].average_value == pytest.approx(25.0)

            history = await service.get_test_history("u1")
            assert [t.id for t in history] == [test.id]

    @pytest.mark.asyncio
    async def test_delete_cascades(self, tmp_path, clock, make_request):
        async with sqlite_store(tmp_path / "engine.db") as store:
            service = ExperimentService(store, clock=clock)
            test = await service.create_test(make_request())
            await service.assign_variant(test.id, user_id="u1")
            await service.record_impression(test.id, "control", "view", "u1")
            await service.run_completion_cycle()

            assert await store.delete_test(test.id) is True

            assert await store.get_test(test.id) is None
            assert await store.count_assignments() == 0
            assert await store.count_impressions() == 0
            assert await store.get_results(test.id) == []
            assert await store.delete_test(test.id) is False

    @pytest.mark.asyncio
    async def test_database_errors_become_storage_failures(self, tmp_path):
        async with sqlite_store(tmp_path / "empty.db", create_schema=False) as store:
            with pytest.raises(StorageFailure) as exc_info:
                await store.list_tests()

        assert exc_info.value.operation == "list_tests"
