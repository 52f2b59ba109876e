import dataclasses
import random
from collections import Counter
from unittest.mock import patch

import pytest

from app.services.experiments.assigner import select_variant, subject_key_for
from app.services.experiments.domain import Variant
from app.services.experiments.exceptions import AssignmentConflict, StorageFailure
from observability.alerts import AlertType


def _seventy_thirty(make_request):
    return make_request(
        variants=[
            {"id": "control", "name": "A", "traffic_allocation": 70},
            {"id": "treatment", "name": "B", "traffic_allocation": 30},
        ]
    )


class TestSelectVariant:
    def test_cumulative_buckets(self):
        variants = [
            Variant(id="a", name="A", traffic_allocation=50),
            Variant(id="b", name="B", traffic_allocation=25),
            Variant(id="c", name="C", traffic_allocation=25),
        ]

        assert select_variant(variants, 0.0).id == "a"
        assert select_variant(variants, 49.9).id == "a"
        assert select_variant(variants, 50.1).id == "b"
        assert select_variant(variants, 75.5).id == "c"
        assert select_variant(variants, 99.99).id == "c"

    def test_split_converges_to_allocation(self):
        variants = [
            Variant(id="a", name="A", traffic_allocation=70),
            Variant(id="b", name="B", traffic_allocation=30),
        ]
        rng = random.Random(42)

        counts = Counter(select_variant(variants, rng.random() * 100).id for _ in range(100_000))

        assert counts["a"] / 100_000 == pytest.approx(0.70, abs=0.02)
        assert counts["b"] / 100_000 == pytest.approx(0.30, abs=0.02)


class TestSubjectKey:
    def test_user_id_wins(self):
        assert subject_key_for("u1", "s1") == "u1"

    def test_session_fallback(self):
        assert subject_key_for(None, "s1") == "s1"

    def test_anonymous_subjects_get_fresh_keys(self):
        first = subject_key_for(None, None)
        second = subject_key_for(None, None)

        assert first.startswith("session_")
        assert first != second


class TestAssignVariant:
    @pytest.mark.asyncio
    async def test_assignment_is_sticky(self, service, store, make_request):
        test = await service.create_test(make_request())

        first = await service.assign_variant(test.id, user_id="u1")
        repeats = {(await service.assign_variant(test.id, user_id="u1")).id for _ in range(1000)}

        assert repeats == {first.id}
        assert await store.count_assignments() == 1

    @pytest.mark.asyncio
    async def test_weighted_split_through_engine(self, service, make_request):
        test = await service.create_test(_seventy_thirty(make_request))

        counts = Counter()
        for i in range(5000):
            variant = await service.assign_variant(test.id, user_id=f"user-{i}")
            counts[variant.id] += 1

        assert counts["control"] / 5000 == pytest.approx(0.70, abs=0.04)

    @pytest.mark.asyncio
    async def test_non_running_tests_assign_nothing(self, service, store, make_request):
        draft = await service.create_test(make_request(status="draft"))

        assert await service.assign_variant(draft.id, user_id="u1") is None
        assert await service.assign_variant("missing", user_id="u1") is None
        assert await store.count_assignments() == 0

    @pytest.mark.asyncio
    async def test_paused_test_assigns_nothing(self, service, make_request):
        test = await service.create_test(make_request())
        await service.pause_test(test.id)

        assert await service.assign_variant(test.id, user_id="u1") is None

    @pytest.mark.asyncio
    async def test_ineligible_subject_gets_none_and_no_record(self, service, store, make_request):
        test = await service.create_test(
            make_request(audience={"segments": ["vip"], "sample_size": 100, "duration": 24})
        )

        assert await service.assign_variant(test.id, session_id="anon") is None
        assert await store.count_assignments() == 0

    @pytest.mark.asyncio
    async def test_anonymous_subject_is_assigned(self, service, store, make_request):
        test = await service.create_test(make_request())

        variant = await service.assign_variant(test.id)

        assert variant is not None
        assert await store.count_assignments() == 1

    @pytest.mark.asyncio
    async def test_expired_assignment_is_replaced(self, service, store, clock, make_request):
        test = await service.create_test(make_request())
        await service.assign_variant(test.id, user_id="u1")

        clock.advance(hours=25)
        variant = await service.assign_variant(test.id, user_id="u1")

        assert variant is not None
        assert await store.count_assignments() == 1
        live = await store.get_live_assignment(test.id, "u1", clock.now())
        assert live.assigned_at == clock.now()

    @pytest.mark.asyncio
    async def test_lost_race_returns_winning_assignment(self, service, store, make_request):
        test = await service.create_test(make_request())
        real_insert = store.insert_assignment_if_absent

        async def racing_insert(assignment, now):
            rival = dataclasses.replace(
                assignment,
                variant_id="treatment" if assignment.variant_id == "control" else "control",
            )
            await real_insert(rival, now)
            raise AssignmentConflict(assignment.test_id, assignment.subject_key)

        with patch.object(store, "insert_assignment_if_absent", side_effect=racing_insert) as mock:
            variant = await service.assign_variant(test.id, user_id="u1")

        assert mock.call_count == 1
        stored = await store.get_live_assignment(test.id, "u1", service.registry.clock.now())
        assert variant.id == stored.variant_id

    @pytest.mark.asyncio
    async def test_persistent_conflicts_give_up(self, service, store, make_request):
        test = await service.create_test(make_request())

        with patch.object(
            store,
            "insert_assignment_if_absent",
            side_effect=AssignmentConflict(test.id, "u1"),
        ) as mock:
            assert await service.assign_variant(test.id, user_id="u1") is None

        assert mock.call_count == 3

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, service, store, alerts, make_request):
        test = await service.create_test(make_request())

        with patch.object(
            store,
            "insert_assignment_if_absent",
            side_effect=StorageFailure("insert_assignment", RuntimeError("disk full")),
        ):
            with pytest.raises(StorageFailure):
                await service.assign_variant(test.id, user_id="u1")

        assert await store.count_assignments() == 0
        (alert,) = alerts.emitted
        assert alert.alert_type == AlertType.STORAGE_FAILURE
        assert alert.details["test_id"] == test.id
