import random
from collections import defaultdict
from typing import Dict, List, Optional, Union

import structlog

from app.models.schemas import (
    AudienceConfig,
    CreateTestRequest,
    MetricConfig,
    TestResponse,
    TestStats,
    TestSummary,
    VariantConfig,
    VariantPerformance,
)
from app.services.experiments.assigner import VariantAssigner
from app.services.experiments.audience import AudienceFilter
from app.services.experiments.collaborators import (
    Clock,
    ContentProvider,
    PersonalizedContent,
    SegmentProvider,
    StaticContentProvider,
    SubjectProfileProvider,
)
from app.services.experiments.domain import (
    ABTest,
    ABTestStatus,
    Impression,
    ImpressionType,
    MetricType,
    Variant,
    VariantMetricResult,
)
from app.services.experiments.monitor import CompletionMonitor
from app.services.experiments.recorder import EventRecorder
from app.services.experiments.registry import ABTestRegistry
from app.services.experiments.storage import ExperimentStore
from observability.alerts import AlertManager, get_alert_manager

logger = structlog.get_logger("experiments.service")

PERSONALIZED_SAMPLE_SIZE = 1000
PERSONALIZED_DURATION_HOURS = 168  # one week


def build_personalized_variants(content: PersonalizedContent) -> List[VariantConfig]:
    """Personalised content at 50%, up to two alternatives at 25%; the first absorbs any remainder."""
    variants = [
        VariantConfig(name="Personalized Content", content=content.content, traffic_allocation=50)
    ]
    for index, alternative in enumerate(content.alternatives[:2]):
        variants.append(
            VariantConfig(
                name=f"Alternative {index + 1}", content=alternative, traffic_allocation=25
            )
        )

    total = sum(v.traffic_allocation for v in variants)
    if total < 100:
        variants[0].traffic_allocation += 100 - total
    return variants


def _rate(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator > 0 else 0.0


class ExperimentService:
    """
    Entry point to the experimentation engine.

    Wires one registry (with its caches) to the audience filter, assigner,
    recorder and completion monitor. Every service instance has isolated
    state; ``close()`` stops the monitor and releases caches and storage.
    """

    def __init__(
        self,
        store: ExperimentStore,
        clock: Optional[Clock] = None,
        segment_provider: Optional[SegmentProvider] = None,
        profile_provider: Optional[SubjectProfileProvider] = None,
        content_provider: Optional[ContentProvider] = None,
        alerts: Optional[AlertManager] = None,
        rng: Optional[random.Random] = None,
        **monitor_options,
    ):
        self.store = store
        self.registry = ABTestRegistry(store, clock)
        self.audience = AudienceFilter(
            self.registry,
            segment_provider=segment_provider,
            profile_provider=profile_provider,
        )
        self.alerts = alerts or get_alert_manager()
        self.assigner = VariantAssigner(self.registry, self.audience, rng=rng, alerts=self.alerts)
        self.recorder = EventRecorder(self.registry)
        self.monitor = CompletionMonitor(self.registry, alerts=self.alerts, **monitor_options)
        self.content_provider = content_provider or StaticContentProvider()

    async def start(self, run_monitor: bool = True) -> None:
        await self.registry.load_active_tests()
        if run_monitor:
            await self.monitor.start()

    async def close(self) -> None:
        await self.monitor.stop()
        await self.registry.close()
        await self.store.close()

    # Test definitions

    async def create_test(self, request: CreateTestRequest) -> ABTest:
        return await self.registry.create_test(request)

    async def create_personalized_test(
        self, product_id: str, user_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> ABTest:
        content = await self.content_provider.get_personalized_content(
            product_id, user_id, session_id
        )

        request = CreateTestRequest(
            name=f"Personalized Content Test - {product_id}",
            description=f"A/B test for personalized content variants on product {product_id}",
            variants=build_personalized_variants(content),
            audience=AudienceConfig(
                segments=list(content.target_audience),
                criteria=[],
                sample_size=PERSONALIZED_SAMPLE_SIZE,
                duration=PERSONALIZED_DURATION_HOURS,
            ),
            metrics=[
                MetricConfig(
                    name="conversion",
                    type=MetricType.PRIMARY,
                    calculation="conversions / views",
                    target=0.05,
                ),
                MetricConfig(
                    name="click_through_rate",
                    type=MetricType.SECONDARY,
                    calculation="clicks / views",
                    target=0.1,
                ),
            ],
            status=ABTestStatus.DRAFT,
            significance=0.95,
        )

        test = await self.registry.create_test(request)
        logger.info("personalized_test_created", test_id=test.id, product_id=product_id)
        return test

    async def get_test(self, test_id: str) -> Optional[ABTest]:
        return await self.registry.get_test(test_id, refresh=True)

    async def get_active_tests(self) -> List[ABTest]:
        return await self.registry.get_active_tests()

    async def start_test(self, test_id: str) -> ABTest:
        return await self.registry.start_test(test_id)

    async def pause_test(self, test_id: str) -> ABTest:
        return await self.registry.pause_test(test_id)

    async def resume_test(self, test_id: str) -> ABTest:
        return await self.registry.resume_test(test_id)

    async def end_test(self, test_id: str, winner: Optional[str] = None) -> ABTest:
        return await self.registry.end_test(test_id, winner)

    async def delete_test(self, test_id: str, missing_ok: bool = False) -> bool:
        return await self.registry.delete_test(test_id, missing_ok=missing_ok)

    # Traffic

    async def assign_variant(
        self, test_id: str, user_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> Optional[Variant]:
        return await self.assigner.assign_variant(test_id, user_id, session_id)

    async def record_impression(
        self,
        test_id: str,
        variant_id: str,
        type: Union[ImpressionType, str],
        subject_key: str,
        value: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[Impression]:
        return await self.recorder.record_impression(
            test_id, variant_id, type, subject_key, value=value, metadata=metadata
        )

    # Reporting

    async def get_test_results(self, test_id: str) -> List[VariantMetricResult]:
        results = self.registry.results.snapshot(test_id)
        if results:
            return results
        # Cold cache (e.g. after a restart): fall back to the last persisted results
        return await self.store.get_results(test_id)

    async def get_test_summary(self, test_id: str) -> Optional[TestSummary]:
        test = await self.registry.get_test(test_id, refresh=True)
        if test is None:
            return None

        impressions = await self.store.list_impressions(test_id)

        counts: Dict[str, Dict[ImpressionType, int]] = defaultdict(lambda: defaultdict(int))
        values: Dict[str, List[float]] = defaultdict(list)
        for impression in impressions:
            counts[impression.variant_id][impression.type] += 1
            if impression.value is not None:
                values[impression.variant_id].append(impression.value)

        def total(event_type: ImpressionType) -> int:
            return sum(c[event_type] for c in counts.values())

        views = total(ImpressionType.VIEW)
        clicks = total(ImpressionType.CLICK)
        conversions = total(ImpressionType.CONVERSION)

        performance = {}
        for variant in test.variants:
            c = counts.get(variant.id, {})
            variant_values = values.get(variant.id, [])
            performance[variant.id] = VariantPerformance(
                variant_id=variant.id,
                name=variant.name,
                conversion_rate=_rate(
                    c.get(ImpressionType.CONVERSION, 0), c.get(ImpressionType.VIEW, 0)
                ),
                click_through_rate=_rate(
                    c.get(ImpressionType.CLICK, 0), c.get(ImpressionType.VIEW, 0)
                ),
                average_value=(
                    sum(variant_values) / len(variant_values) if variant_values else 0.0
                ),
                total_sample_size=sum(c.values()),
            )

        return TestSummary(
            test=TestResponse.model_validate(test),
            total_impressions=len(impressions),
            total_conversions=conversions,
            total_clicks=clicks,
            unique_users=len({i.subject_key for i in impressions}),
            conversion_rate=_rate(conversions, views),
            click_through_rate=_rate(clicks, views),
            variant_performance=performance,
        )

    async def get_test_stats(self) -> TestStats:
        status_counts = await self.store.count_tests_by_status()
        return TestStats(
            test_status=status_counts,
            total_impressions=await self.store.count_impressions(),
            total_assignments=await self.store.count_assignments(),
            active_tests=status_counts.get(ABTestStatus.RUNNING.value, 0),
        )

    async def get_test_history(self, subject_id: Optional[str], limit: int = 10) -> List[ABTest]:
        if not subject_id:
            return []
        return await self.store.get_subject_history(subject_id, limit)

    async def run_completion_cycle(self) -> List[ABTest]:
        return await self.monitor.run_once()
