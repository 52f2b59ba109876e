import pytest

from app.services.experiments.domain import ImpressionType


async def _record_counts(recorder, test_id, variant_id, views, conversions):
    for i in range(views):
        await recorder.record_view(test_id, variant_id, f"{variant_id}-{i}")
    for i in range(conversions):
        await recorder.record_conversion(test_id, variant_id, f"{variant_id}-{i}")


def _result(results, variant_id, metric_name):
    for r in results:
        if r.variant_id == variant_id and r.metric_name == metric_name:
            return r
    return None


class TestRecordImpression:
    @pytest.mark.asyncio
    async def test_impression_is_persisted(self, service, store, clock, make_request):
        test = await service.create_test(make_request())

        impression = await service.record_impression(
            test.id, "control", "view", "u1", metadata={"page": "/checkout"}
        )

        assert impression.type == ImpressionType.VIEW
        assert impression.timestamp == clock.now()
        assert impression.metadata == {"page": "/checkout"}
        assert await store.count_impressions() == 1

    @pytest.mark.asyncio
    async def test_unknown_type_is_rejected(self, service, make_request):
        test = await service.create_test(make_request())

        with pytest.raises(ValueError):
            await service.record_impression(test.id, "control", "purchase", "u1")

    @pytest.mark.asyncio
    async def test_events_for_unknown_test_are_dropped(self, service, store):
        assert await service.record_impression("missing", "control", "view", "u1") is None
        assert await store.count_impressions() == 0

    @pytest.mark.asyncio
    async def test_events_for_stopped_tests_are_dropped(self, service, store, make_request):
        draft = await service.create_test(make_request(status="draft"))
        paused = await service.create_test(make_request())
        await service.pause_test(paused.id)

        assert await service.record_impression(draft.id, "control", "view", "u1") is None
        assert await service.record_impression(paused.id, "control", "view", "u1") is None
        assert await store.count_impressions() == 0

    @pytest.mark.asyncio
    async def test_events_for_unknown_variant_are_dropped(self, service, store, make_request):
        test = await service.create_test(make_request())

        assert await service.record_impression(test.id, "nope", "view", "u1") is None
        assert await store.count_impressions() == 0
        assert await service.get_test_results(test.id) == []


class TestRunningResults:
    @pytest.mark.asyncio
    async def test_count_events_average_to_one(self, service, make_request):
        test = await service.create_test(make_request())

        for i in range(4):
            await service.recorder.record_click(test.id, "treatment", f"u{i}")

        clicks = _result(await service.get_test_results(test.id), "treatment", "click")
        assert clicks.sample_size == 4
        assert clicks.value == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_value_events_keep_running_mean(self, service, make_request):
        test = await service.create_test(make_request())

        for value in (10.0, 20.0, 60.0):
            await service.recorder.record_conversion(test.id, "control", "u1", value=value)

        conversion = _result(await service.get_test_results(test.id), "control", "conversion")
        assert conversion.sample_size == 3
        assert conversion.total == pytest.approx(90.0)
        assert conversion.value == pytest.approx(30.0)


class TestSignificance:
    @pytest.mark.asyncio
    async def test_two_point_lift_is_not_yet_significant(self, service, make_request):
        test = await service.create_test(make_request())

        await _record_counts(service.recorder, test.id, "control", views=1000, conversions=50)
        await _record_counts(service.recorder, test.id, "treatment", views=1000, conversions=70)

        results = await service.get_test_results(test.id)
        treatment = _result(results, "treatment", "conversion")
        assert treatment.p_value == pytest.approx(0.059685605532, abs=1e-8)
        assert treatment.confidence == pytest.approx(0.940314394468, abs=1e-8)
        assert treatment.is_significant is False
        # The control arm carries no comparison of its own
        assert _result(results, "control", "conversion").p_value == 1.0

    @pytest.mark.asyncio
    async def test_large_lift_is_significant(self, service, make_request):
        test = await service.create_test(make_request())

        await _record_counts(service.recorder, test.id, "control", views=1000, conversions=200)
        await _record_counts(service.recorder, test.id, "treatment", views=1000, conversions=280)

        treatment = _result(await service.get_test_results(test.id), "treatment", "conversion")
        assert treatment.p_value == pytest.approx(0.000028075596, abs=1e-9)
        assert treatment.is_significant is True

    @pytest.mark.asyncio
    async def test_recording_never_completes_a_test(self, service, clock, make_request):
        test = await service.create_test(make_request())
        clock.advance(hours=48)

        await _record_counts(service.recorder, test.id, "control", views=300, conversions=10)
        await _record_counts(service.recorder, test.id, "treatment", views=300, conversions=90)

        assert (await service.get_test(test.id)).status.value == "running"
