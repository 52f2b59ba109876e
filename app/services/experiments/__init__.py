"""
Experimentation engine for A/B testing.

This module provides:
- Test definitions and lifecycle (registry)
- Sticky, weighted variant assignment with audience targeting
- Impression recording with running statistics
- Two-proportion z-test significance and automatic completion
"""

from app.services.experiments.exceptions import (
    AssignmentConflict,
    ExperimentError,
    InvalidStateTransition,
    StorageFailure,
    TestNotFoundError,
    ValidationError,
)
from app.services.experiments.service import ExperimentService
from app.services.experiments.stats import (
    SignificanceResult,
    VariantSample,
    calculate_confidence_interval,
    calculate_lift,
    calculate_sample_size_requirement,
    normal_cdf,
    z_test,
)
from app.services.experiments.storage import ExperimentStore, InMemoryExperimentStore

__all__ = [
    "ExperimentService",
    "ExperimentStore",
    "InMemoryExperimentStore",
    "ExperimentError",
    "ValidationError",
    "TestNotFoundError",
    "InvalidStateTransition",
    "AssignmentConflict",
    "StorageFailure",
    "VariantSample",
    "SignificanceResult",
    "normal_cdf",
    "z_test",
    "calculate_lift",
    "calculate_confidence_interval",
    "calculate_sample_size_requirement",
]
