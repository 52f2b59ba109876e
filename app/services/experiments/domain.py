"""
Domain types for the experimentation engine.

These are plain dataclasses shared by the registry, assigner, recorder and
monitor. Storage backends convert them to and from their own row formats;
``to_dict``/``from_dict`` produce the JSON-safe shape used for the
variant/audience/metric columns.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class ABTestStatus(str, enum.Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class MetricType(str, enum.Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class ImpressionType(str, enum.Enum):
    VIEW = "view"
    CLICK = "click"
    CONVERSION = "conversion"


NEW_VISITOR_SEGMENT = "new_visitor"


@dataclass
class Variant:
    id: str
    name: str
    content: Any = None
    traffic_allocation: int = 0
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "content": self.content,
            "traffic_allocation": self.traffic_allocation,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variant":
        return cls(
            id=data["id"],
            name=data["name"],
            content=data.get("content"),
            traffic_allocation=data.get("traffic_allocation", 0),
            is_active=data.get("is_active", True),
        )


@dataclass
class AudienceCriterion:
    """A named predicate such as ``total_purchases greater_than 3``."""

    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass
class Audience:
    segments: List[str] = field(default_factory=list)
    criteria: List[AudienceCriterion] = field(default_factory=list)
    sample_size: int = 100  # Minimum total events before a decision is considered
    duration: int = 24  # Minimum runtime in hours

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segments": list(self.segments),
            "criteria": [c.to_dict() for c in self.criteria],
            "sample_size": self.sample_size,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Audience":
        return cls(
            segments=list(data.get("segments") or []),
            criteria=[AudienceCriterion(**c) for c in data.get("criteria") or []],
            sample_size=data.get("sample_size", 100),
            duration=data.get("duration", 24),
        )


@dataclass
class Metric:
    name: str
    type: MetricType = MetricType.SECONDARY
    calculation: str = ""
    target: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "calculation": self.calculation,
            "target": self.target,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Metric":
        return cls(
            name=data["name"],
            type=MetricType(data.get("type", MetricType.SECONDARY.value)),
            calculation=data.get("calculation") or "",
            target=data.get("target"),
        )


@dataclass
class ABTest:
    """An experiment definition and its lifecycle state."""

    id: str
    name: str
    variants: List[Variant]
    audience: Audience
    metrics: List[Metric]
    description: str = ""
    status: ABTestStatus = ABTestStatus.DRAFT
    winner: Optional[str] = None
    significance: float = 0.95
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: str = "system"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def active_variants(self) -> List[Variant]:
        return [v for v in self.variants if v.is_active]

    @property
    def control(self) -> Optional[Variant]:
        # The first active variant is the control arm
        active = self.active_variants
        return active[0] if active else None

    @property
    def primary_metric(self) -> Optional[Metric]:
        for metric in self.metrics:
            if metric.type == MetricType.PRIMARY:
                return metric
        return None

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def is_similar_to(self, other: "ABTest") -> bool:
        """Two tests overlap when they share a metric name or an audience segment."""
        shared_metric = {m.name for m in self.metrics} & {m.name for m in other.metrics}
        shared_segment = set(self.audience.segments) & set(other.audience.segments)
        return bool(shared_metric or shared_segment)


@dataclass
class Assignment:
    test_id: str
    subject_key: str
    variant_id: str
    assigned_at: datetime
    expires_at: Optional[datetime] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass
class Impression:
    id: str
    test_id: str
    variant_id: str
    subject_key: str
    type: ImpressionType
    timestamp: datetime
    value: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def effective_value(self) -> float:
        # Count-style events contribute 1 when no explicit value is given
        return 1.0 if self.value is None else float(self.value)


@dataclass
class MetricAggregate:
    """Aggregate of raw impressions for one (variant, metric) pair."""

    variant_id: str
    metric_name: str
    count: int
    total: float

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


@dataclass
class VariantMetricResult:
    """Cached, recomputable statistics for one (variant, metric) pair."""

    variant_id: str
    metric_name: str
    value: float = 0.0
    total: float = 0.0
    sample_size: int = 0
    confidence: float = 0.0
    p_value: float = 1.0
    is_significant: bool = False

    def observe(self, value: float) -> None:
        # Welford-style running mean, no rescan of history
        self.sample_size += 1
        self.total += value
        self.value = self.value + (value - self.value) / self.sample_size

    @classmethod
    def from_aggregate(cls, aggregate: MetricAggregate) -> "VariantMetricResult":
        return cls(
            variant_id=aggregate.variant_id,
            metric_name=aggregate.metric_name,
            value=aggregate.mean,
            total=aggregate.total,
            sample_size=aggregate.count,
        )
