import random
import uuid
from datetime import timedelta
from typing import List, Optional

import structlog

from app.services.experiments.audience import AudienceFilter
from app.services.experiments.domain import ABTest, ABTestStatus, Assignment, Variant
from app.services.experiments.exceptions import AssignmentConflict, StorageFailure
from app.services.experiments.registry import ABTestRegistry
from observability.alerts import AlertManager, get_alert_manager

logger = structlog.get_logger("experiments.assigner")

MAX_ASSIGNMENT_ATTEMPTS = 3


def select_variant(variants: List[Variant], roll: float) -> Variant:
    """Pick the first variant whose cumulative allocation reaches ``roll`` (0 <= roll < 100)."""
    cumulative = 0
    for variant in variants:
        cumulative += variant.traffic_allocation
        if cumulative >= roll:
            return variant
    return variants[0]


def subject_key_for(user_id: Optional[str], session_id: Optional[str]) -> str:
    if user_id:
        return user_id
    if session_id:
        return session_id
    return f"session_{uuid.uuid4()}"


class VariantAssigner:
    """Sticky, weighted assignment of subjects to variants."""

    def __init__(
        self,
        registry: ABTestRegistry,
        audience: AudienceFilter,
        rng: Optional[random.Random] = None,
        alerts: Optional[AlertManager] = None,
    ):
        self.registry = registry
        self.audience = audience
        self.rng = rng or random.Random()
        self.alerts = alerts or get_alert_manager()

    async def assign_variant(
        self, test_id: str, user_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> Optional[Variant]:
        test = await self.registry.get_test(test_id, refresh=True)
        if test is None or test.status != ABTestStatus.RUNNING:
            return None

        subject_key = subject_key_for(user_id, session_id)
        now = self.registry.clock.now()

        for _ in range(MAX_ASSIGNMENT_ATTEMPTS):
            existing = await self.registry.store.get_live_assignment(test_id, subject_key, now)
            if existing is not None:
                return test.get_variant(existing.variant_id)

            if not await self.audience.is_eligible(test, subject_key, user_id, session_id):
                return None

            variant = self._draw(test)
            if variant is None:
                return None

            assignment = Assignment(
                test_id=test_id,
                subject_key=subject_key,
                variant_id=variant.id,
                assigned_at=now,
                expires_at=now + timedelta(hours=test.audience.duration),
                user_id=user_id,
                session_id=session_id,
            )

            try:
                await self.registry.store.insert_assignment_if_absent(assignment, now)
            except AssignmentConflict:
                # Another request assigned this subject first; its choice wins
                logger.debug("assignment_race_lost", test_id=test_id, subject_key=subject_key)
                continue
            except StorageFailure as e:
                logger.error(
                    "assignment_write_failed",
                    test_id=test_id,
                    subject_key=subject_key,
                    error=str(e),
                )
                self.alerts.emit_storage_failure(e.operation, str(e), test_id=test_id)
                raise

            logger.debug(
                "variant_assigned", test_id=test_id, subject_key=subject_key, variant_id=variant.id
            )
            return variant

        logger.warning("assignment_unresolved", test_id=test_id, subject_key=subject_key)
        return None

    def _draw(self, test: ABTest) -> Optional[Variant]:
        active = test.active_variants
        if not active:
            return None
        return select_variant(active, self.rng.random() * 100)
