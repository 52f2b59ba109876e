"""
Synthetic traffic simulator for the experimentation engine.

Drives a real ``ExperimentService`` (in-memory store, frozen clock) with
visitors arriving as a Poisson process. Each assigned visitor produces a
view, then a click and a conversion with per-variant probabilities. The
completion monitor runs once per simulated hour, so a simulation shows
when the engine would have called a winner.

- Reproducible results via seed (numpy ``default_rng``)
- Event log and per-variant summary as pandas DataFrames
"""

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from app.models.schemas import (
    AudienceConfig,
    CreateTestRequest,
    MetricConfig,
    VariantConfig,
)
from app.services.experiments.collaborators import FrozenClock
from app.services.experiments.domain import ABTest, ABTestStatus, MetricType
from app.services.experiments.service import ExperimentService
from app.services.experiments.storage import InMemoryExperimentStore


@dataclass
class ArmConfig:
    """Ground-truth behaviour of one variant."""

    name: str
    traffic_allocation: int
    conversion_rate: float
    click_rate: float = 0.2


@dataclass
class SimulationConfig:
    arms: List[ArmConfig] = field(
        default_factory=lambda: [
            ArmConfig("control", 50, conversion_rate=0.05),
            ArmConfig("treatment", 50, conversion_rate=0.07),
        ]
    )
    visitors: int = 10_000
    hours: float = 72.0
    sample_size: int = 1000
    duration_hours: int = 24
    average_order_value: float = 60.0
    seed: int = 42


@dataclass
class SimulationResult:
    test: ABTest
    events: pd.DataFrame
    completed_at_hour: Optional[float] = None

    def summary(self) -> pd.DataFrame:
        return summarize_events(self.events)


def summarize_events(events: pd.DataFrame) -> pd.DataFrame:
    """Per-variant counts and observed rates from an event log."""
    if events.empty:
        return pd.DataFrame(
            columns=["variant", "views", "clicks", "conversions", "ctr", "conversion_rate"]
        )

    counts = events.pivot_table(
        index="variant", columns="type", values="subject", aggfunc="count", fill_value=0
    )
    for column in ("view", "click", "conversion"):
        if column not in counts.columns:
            counts[column] = 0

    summary = pd.DataFrame(
        {
            "views": counts["view"],
            "clicks": counts["click"],
            "conversions": counts["conversion"],
        }
    )
    summary["ctr"] = np.where(summary["views"] > 0, summary["clicks"] / summary["views"], 0.0)
    summary["conversion_rate"] = np.where(
        summary["views"] > 0, summary["conversions"] / summary["views"], 0.0
    )
    return summary.reset_index()


def build_test_request(config: SimulationConfig) -> CreateTestRequest:
    return CreateTestRequest(
        name="Simulated checkout test",
        description="Synthetic traffic",
        variants=[
            VariantConfig(id=arm.name, name=arm.name, traffic_allocation=arm.traffic_allocation)
            for arm in config.arms
        ],
        audience=AudienceConfig(
            sample_size=config.sample_size, duration=config.duration_hours
        ),
        metrics=[
            MetricConfig(
                name="conversion", type=MetricType.PRIMARY, calculation="conversions / views"
            ),
            MetricConfig(name="click_through_rate", calculation="clicks / views"),
        ],
        status=ABTestStatus.RUNNING,
    )


class TrafficSimulator:
    def __init__(self, config: Optional[SimulationConfig] = None):
        self.config = config or SimulationConfig()
        self.rng = np.random.default_rng(self.config.seed)
        self.clock = FrozenClock()
        self.service = ExperimentService(
            InMemoryExperimentStore(),
            clock=self.clock,
            rng=_SeededRandom(self.rng),
            max_duration_hours=None,
        )

    async def run(self) -> SimulationResult:
        config = self.config
        arms = {arm.name: arm for arm in config.arms}

        test = await self.service.create_test(build_test_request(config))
        start = self.clock.now()

        # Exponential inter-arrival times spread visitors across the window
        gaps = self.rng.exponential(config.hours * 3600 / config.visitors, size=config.visitors)

        rows = []
        completed_at_hour = None
        next_check = 1.0

        for i, gap in enumerate(gaps):
            now = self.clock.advance(seconds=float(gap))
            elapsed_hours = (now - start).total_seconds() / 3600

            if completed_at_hour is None and elapsed_hours >= next_check:
                next_check = float(np.floor(elapsed_hours)) + 1
                if await self.service.run_completion_cycle():
                    completed_at_hour = elapsed_hours

            subject = f"visitor_{i}"
            variant = await self.service.assign_variant(test.id, user_id=subject)
            if variant is None:
                continue

            arm = arms[variant.id]
            rows.append(self._event(now, subject, variant.id, "view"))
            await self.service.record_impression(test.id, variant.id, "view", subject)

            if self.rng.random() < arm.click_rate:
                rows.append(self._event(now, subject, variant.id, "click"))
                await self.service.record_impression(test.id, variant.id, "click", subject)

            if self.rng.random() < arm.conversion_rate:
                # Order values follow a right-skewed distribution around the average
                value = float(self.rng.lognormal(np.log(config.average_order_value), 0.5))
                rows.append(self._event(now, subject, variant.id, "conversion", value))
                await self.service.record_impression(
                    test.id, variant.id, "conversion", subject, value=value
                )

        if completed_at_hour is None and await self.service.run_completion_cycle():
            completed_at_hour = (self.clock.now() - start).total_seconds() / 3600

        final = await self.service.get_test(test.id)
        await self.service.close()

        return SimulationResult(
            test=final,
            events=pd.DataFrame(rows, columns=["timestamp", "subject", "variant", "type", "value"]),
            completed_at_hour=completed_at_hour,
        )

    @staticmethod
    def _event(now, subject: str, variant_id: str, event_type: str, value=None) -> dict:
        return {
            "timestamp": now,
            "subject": subject,
            "variant": variant_id,
            "type": event_type,
            "value": value,
        }


class _SeededRandom:
    """Adapts a numpy Generator to the ``random()`` call the assigner makes."""

    def __init__(self, generator: np.random.Generator):
        self.generator = generator

    def random(self) -> float:
        return float(self.generator.random())
