import uuid
from typing import Any, Dict, List, Optional, Union

import structlog

from app.services.experiments import analysis
from app.services.experiments.domain import (
    ABTest,
    ABTestStatus,
    Impression,
    ImpressionType,
    VariantMetricResult,
)
from app.services.experiments.registry import ABTestRegistry

logger = structlog.get_logger("experiments.recorder")


class EventRecorder:
    """
    Persists subject events and keeps the running results cache current.

    Events for unknown or non-running tests, or for variants the test does
    not have, are dropped and logged rather than raised.
    """

    def __init__(self, registry: ABTestRegistry):
        self.registry = registry

    async def record_impression(
        self,
        test_id: str,
        variant_id: str,
        type: Union[ImpressionType, str],
        subject_key: str,
        value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Impression]:
        event_type = ImpressionType(type)

        test = await self.registry.get_test(test_id, refresh=True)
        if test is None or test.status != ABTestStatus.RUNNING:
            logger.info(
                "impression_dropped",
                test_id=test_id,
                reason="test_not_running" if test else "test_not_found",
            )
            return None
        if test.get_variant(variant_id) is None:
            logger.warning(
                "impression_dropped", test_id=test_id, variant_id=variant_id, reason="unknown_variant"
            )
            return None

        impression = Impression(
            id=str(uuid.uuid4()),
            test_id=test_id,
            variant_id=variant_id,
            subject_key=subject_key,
            type=event_type,
            timestamp=self.registry.clock.now(),
            value=value,
            metadata=dict(metadata or {}),
        )
        async with self.registry.results.guard(test_id):
            await self.registry.store.save_impression(impression)
            await self.registry.results.observe(
                test_id, variant_id, event_type.value, impression.effective_value
            )
        self.recompute_significance(test)

        return impression

    def recompute_significance(self, test: ABTest) -> List[VariantMetricResult]:
        results = self.registry.results.snapshot(test.id)
        analysis.apply_significance(test, results)
        self.registry.results.update(test.id, results)
        return results

    async def record_view(self, test_id: str, variant_id: str, subject_key: str, **kwargs):
        return await self.record_impression(
            test_id, variant_id, ImpressionType.VIEW, subject_key, **kwargs
        )

    async def record_click(self, test_id: str, variant_id: str, subject_key: str, **kwargs):
        return await self.record_impression(
            test_id, variant_id, ImpressionType.CLICK, subject_key, **kwargs
        )

    async def record_conversion(
        self,
        test_id: str,
        variant_id: str,
        subject_key: str,
        value: Optional[float] = None,
        **kwargs,
    ):
        return await self.record_impression(
            test_id, variant_id, ImpressionType.CONVERSION, subject_key, value=value, **kwargs
        )
