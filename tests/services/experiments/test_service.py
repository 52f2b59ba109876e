import pytest

from app.services.experiments.collaborators import PersonalizedContent, StaticContentProvider
from app.services.experiments.domain import ABTestStatus
from app.services.experiments.exceptions import InvalidStateTransition, TestNotFoundError
from app.services.experiments.service import ExperimentService, build_personalized_variants


class TestPersonalizedTests:
    def test_three_way_split(self):
        content = PersonalizedContent(content={"hero": "a"}, alternatives=[{"hero": "b"}, {"hero": "c"}])

        variants = build_personalized_variants(content)

        assert [v.traffic_allocation for v in variants] == [50, 25, 25]
        assert [v.name for v in variants] == [
            "Personalized Content",
            "Alternative 1",
            "Alternative 2",
        ]

    def test_missing_alternatives_fold_into_first(self):
        variants = build_personalized_variants(
            PersonalizedContent(content="a", alternatives=["b"])
        )
        assert [v.traffic_allocation for v in variants] == [75, 25]

    def test_extra_alternatives_are_ignored(self):
        variants = build_personalized_variants(
            PersonalizedContent(content="a", alternatives=["b", "c", "d"])
        )
        assert len(variants) == 3

    @pytest.mark.asyncio
    async def test_create_personalized_test(self, store, clock):
        provider = StaticContentProvider(
            {
                "sku-1": PersonalizedContent(
                    content={"headline": "For you"},
                    target_audience=["returning"],
                    alternatives=[{"headline": "Popular"}, {"headline": "New"}],
                )
            }
        )
        service = ExperimentService(store, clock=clock, content_provider=provider)

        test = await service.create_personalized_test("sku-1", user_id="u1")

        assert test.name == "Personalized Content Test - sku-1"
        assert test.status == ABTestStatus.DRAFT
        assert test.audience.segments == ["returning"]
        assert test.audience.sample_size == 1000
        assert test.audience.duration == 168
        assert test.primary_metric.name == "conversion"
        assert [v.traffic_allocation for v in test.variants] == [50, 25, 25]

    @pytest.mark.asyncio
    async def test_unknown_product(self, service):
        with pytest.raises(LookupError):
            await service.create_personalized_test("missing")


class TestDeleteTest:
    @pytest.mark.asyncio
    async def test_delete_removes_dependent_records(self, service, store, make_request):
        test = await service.create_test(make_request())
        variant = await service.assign_variant(test.id, user_id="u1")
        await service.record_impression(test.id, variant.id, "view", "u1")
        await service.run_completion_cycle()

        assert await service.delete_test(test.id) is True

        assert await service.get_test(test.id) is None
        assert await store.count_assignments() == 0
        assert await store.count_impressions() == 0
        assert await store.get_results(test.id) == []
        assert await service.get_test_results(test.id) == []

    @pytest.mark.asyncio
    async def test_delete_unknown(self, service):
        with pytest.raises(TestNotFoundError):
            await service.delete_test("missing")
        assert await service.delete_test("missing", missing_ok=True) is False


class TestReporting:
    @pytest.mark.asyncio
    async def test_stats_partition_by_status(self, service, make_request):
        running = await service.create_test(make_request())
        await service.create_test(make_request(status="draft"))
        paused = await service.create_test(make_request())
        await service.pause_test(paused.id)
        await service.assign_variant(running.id, user_id="u1")
        await service.record_impression(running.id, "control", "view", "u1")

        stats = await service.get_test_stats()

        assert stats.test_status == {"running": 1, "draft": 1, "paused": 1}
        assert sum(stats.test_status.values()) == 3
        assert stats.active_tests == 1
        assert stats.total_assignments == 1
        assert stats.total_impressions == 1

    @pytest.mark.asyncio
    async def test_summary(self, service, make_request):
        test = await service.create_test(make_request())
        for i in range(4):
            await service.record_impression(test.id, "control", "view", f"u{i}")
        await service.record_impression(test.id, "control", "click", "u0")
        await service.record_impression(test.id, "control", "conversion", "u0", value=40.0)
        await service.record_impression(test.id, "treatment", "view", "u9")
        await service.record_impression(test.id, "treatment", "conversion", "u9", value=60.0)

        summary = await service.get_test_summary(test.id)

        assert summary.test.id == test.id
        assert summary.total_impressions == 8
        assert summary.total_conversions == 2
        assert summary.total_clicks == 1
        assert summary.unique_users == 5
        assert summary.conversion_rate == pytest.approx(2 / 5)
        assert summary.click_through_rate == pytest.approx(1 / 5)

        control = summary.variant_performance["control"]
        assert control.conversion_rate == pytest.approx(0.25)
        assert control.click_through_rate == pytest.approx(0.25)
        assert control.average_value == pytest.approx(40.0)
        assert control.total_sample_size == 6

        treatment = summary.variant_performance["treatment"]
        assert treatment.conversion_rate == pytest.approx(1.0)
        assert treatment.click_through_rate == 0.0
        assert treatment.total_sample_size == 2

    @pytest.mark.asyncio
    async def test_summary_of_empty_test(self, service, make_request):
        test = await service.create_test(make_request())

        summary = await service.get_test_summary(test.id)

        assert summary.total_impressions == 0
        assert summary.conversion_rate == 0.0
        assert summary.variant_performance["control"].total_sample_size == 0

    @pytest.mark.asyncio
    async def test_summary_of_unknown_test(self, service):
        assert await service.get_test_summary("missing") is None

    @pytest.mark.asyncio
    async def test_history_newest_first(self, service, clock, make_request):
        first = await service.create_test(make_request(name="first"))
        second = await service.create_test(
            make_request(name="second", metrics=[{"name": "revenue", "type": "primary"}])
        )
        await service.assign_variant(first.id, user_id="u1")
        clock.advance(minutes=1)
        await service.assign_variant(second.id, user_id="u1")

        history = await service.get_test_history("u1")

        assert [t.id for t in history] == [second.id, first.id]
        assert [t.id for t in await service.get_test_history("u1", limit=1)] == [second.id]
        assert await service.get_test_history(None) == []
        assert await service.get_test_history("nobody") == []

    @pytest.mark.asyncio
    async def test_results_fall_back_to_storage(self, store, clock, make_request):
        service = ExperimentService(store, clock=clock)
        test = await service.create_test(make_request())
        await service.record_impression(test.id, "control", "view", "u1")
        await service.run_completion_cycle()

        restarted = ExperimentService(store, clock=clock)
        results = await restarted.get_test_results(test.id)

        assert [(r.variant_id, r.metric_name, r.sample_size) for r in results] == [
            ("control", "view", 1)
        ]


class TestSharedStore:
    @pytest.mark.asyncio
    async def test_status_changes_from_another_instance_are_seen(
        self, service, store, clock, make_request
    ):
        sweeper = ExperimentService(store, clock=clock)
        test = await service.create_test(make_request())
        assert await service.assign_variant(test.id, user_id="u0") is not None

        await sweeper.pause_test(test.id)

        assert await service.assign_variant(test.id, user_id="u1") is None
        assert await service.record_impression(test.id, "control", "view", "u1") is None
        assert (await service.get_test(test.id)).status == ABTestStatus.PAUSED

        await sweeper.resume_test(test.id)
        assert await service.assign_variant(test.id, user_id="u1") is not None

        await sweeper.end_test(test.id, winner="control")
        assert await service.assign_variant(test.id, user_id="u2") is None
        assert await service.record_impression(test.id, "control", "view", "u2") is None

    @pytest.mark.asyncio
    async def test_deletion_by_another_instance_is_seen(
        self, service, store, clock, make_request
    ):
        sweeper = ExperimentService(store, clock=clock)
        test = await service.create_test(make_request())
        await service.assign_variant(test.id, user_id="u0")

        await sweeper.delete_test(test.id)

        assert await service.assign_variant(test.id, user_id="u1") is None
        assert await service.record_impression(test.id, "control", "view", "u1") is None
        assert await service.get_test(test.id) is None
        assert await store.count_impressions() == 0

    @pytest.mark.asyncio
    async def test_transitions_use_stored_status(self, service, store, clock, make_request):
        sweeper = ExperimentService(store, clock=clock)
        test = await service.create_test(make_request())
        await service.get_test(test.id)

        await sweeper.end_test(test.id)

        with pytest.raises(InvalidStateTransition):
            await service.pause_test(test.id)
