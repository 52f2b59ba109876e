import random
from datetime import datetime, timezone

import pytest

from app.models.schemas import CreateTestRequest
from app.services.experiments.collaborators import FrozenClock
from app.services.experiments.registry import ABTestRegistry
from app.services.experiments.service import ExperimentService
from app.services.experiments.storage import InMemoryExperimentStore
from observability.alerts import AlertManager


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryExperimentStore()


@pytest.fixture
def registry(store, clock):
    return ABTestRegistry(store, clock)


@pytest.fixture
def alerts():
    return AlertManager(throttle_minutes=0)


@pytest.fixture
def service(store, clock, alerts):
    return ExperimentService(
        store,
        clock=clock,
        alerts=alerts,
        rng=random.Random(1234),
        max_duration_hours=None,
    )


@pytest.fixture
def make_request():
    """Factory for a valid two-arm test configuration; keyword overrides replace top-level fields."""

    def _make(**overrides) -> CreateTestRequest:
        data = {
            "name": "Checkout button color",
            "description": "Green vs orange checkout button",
            "variants": [
                {"id": "control", "name": "Green", "content": {"color": "green"}, "traffic_allocation": 50},
                {"id": "treatment", "name": "Orange", "content": {"color": "orange"}, "traffic_allocation": 50},
            ],
            "audience": {"segments": [], "criteria": [], "sample_size": 100, "duration": 24},
            "metrics": [
                {"name": "conversion", "type": "primary", "calculation": "conversions / views"},
                {"name": "click_through_rate", "type": "secondary", "calculation": "clicks / views"},
            ],
            "status": "running",
        }
        data.update(overrides)
        return CreateTestRequest(**data)

    return _make
