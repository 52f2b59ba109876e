import pytest

from orchestration.flows.experiment_completion import run_completion_sweep


class TestCompletionSweep:
    @pytest.mark.asyncio
    async def test_sweep_reports_completed_and_running(self, service, clock, make_request):
        finished = await service.create_test(make_request(name="finished"))
        await service.create_test(make_request(name="ongoing", metrics=[{"name": "revenue", "type": "primary"}]))
        for i in range(500):
            await service.record_impression(finished.id, "control", "view", f"c{i}")
            await service.record_impression(finished.id, "treatment", "view", f"t{i}")
        for i in range(20):
            await service.record_impression(finished.id, "control", "conversion", f"c{i}")
        for i in range(80):
            await service.record_impression(finished.id, "treatment", "conversion", f"t{i}")
        clock.advance(hours=24)

        summary = await run_completion_sweep(service)

        assert summary["completed"] == [
            {"test_id": finished.id, "name": "finished", "winner": "treatment"}
        ]
        assert summary["still_running"] == 1
        assert "checked_at" in summary

    @pytest.mark.asyncio
    async def test_empty_sweep(self, service):
        summary = await run_completion_sweep(service)

        assert summary["completed"] == []
        assert summary["still_running"] == 0
