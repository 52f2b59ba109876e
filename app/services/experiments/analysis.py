"""
Control-vs-treatment analysis on a test's primary metric.

Shared by the event recorder (recomputes after every impression) and the
completion monitor (recomputes from storage aggregates, then decides).

Count-style metrics (click, conversion) are compared as rates over views:
``rate = events / views`` with ``n = views``. View counts and value metrics
use the running mean with ``n`` = number of events.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from app.services.experiments.domain import ABTest, ImpressionType, Metric, VariantMetricResult
from app.services.experiments.stats import SignificanceResult, VariantSample, z_test

RATE_EVENT_TYPES = {ImpressionType.CLICK, ImpressionType.CONVERSION}

# Plural/alias spellings seen in metric names and calculation descriptors
_EVENT_ALIASES = {
    "view": ImpressionType.VIEW,
    "views": ImpressionType.VIEW,
    "impressions": ImpressionType.VIEW,
    "click": ImpressionType.CLICK,
    "clicks": ImpressionType.CLICK,
    "conversion": ImpressionType.CONVERSION,
    "conversions": ImpressionType.CONVERSION,
}


@dataclass
class Comparison:
    control_id: str
    variant_id: str
    control: VariantSample
    treatment: VariantSample
    result: SignificanceResult


def primary_event_type(metric: Optional[Metric]) -> ImpressionType:
    """Event type whose counts drive the metric: name, else calculation numerator, else conversion."""
    if metric is None:
        return ImpressionType.CONVERSION

    by_name = _EVENT_ALIASES.get(metric.name.strip().lower())
    if by_name is not None:
        return by_name

    numerator = metric.calculation.split("/")[0].strip().lower()
    return _EVENT_ALIASES.get(numerator, ImpressionType.CONVERSION)


def _index(results: Iterable[VariantMetricResult]) -> Dict[Tuple[str, str], VariantMetricResult]:
    return {(r.variant_id, r.metric_name): r for r in results}


def variant_sample(
    indexed: Dict[Tuple[str, str], VariantMetricResult],
    variant_id: str,
    event_type: ImpressionType,
) -> VariantSample:
    events = indexed.get((variant_id, event_type.value))

    if event_type in RATE_EVENT_TYPES:
        views = indexed.get((variant_id, ImpressionType.VIEW.value))
        n = views.sample_size if views else 0
        if n == 0:
            return VariantSample(value=0.0, sample_size=0)
        count = events.sample_size if events else 0
        return VariantSample(value=min(count / n, 1.0), sample_size=n)

    if events is None:
        return VariantSample(value=0.0, sample_size=0)
    return VariantSample(value=events.value, sample_size=events.sample_size)


def compare_to_control(test: ABTest, results: Iterable[VariantMetricResult]) -> List[Comparison]:
    """z-test every active treatment arm against the control (first active variant)."""
    control = test.control
    if control is None:
        return []

    indexed = _index(results)
    event_type = primary_event_type(test.primary_metric)
    control_sample = variant_sample(indexed, control.id, event_type)

    comparisons = []
    for variant in test.active_variants[1:]:
        treatment_sample = variant_sample(indexed, variant.id, event_type)
        comparisons.append(
            Comparison(
                control_id=control.id,
                variant_id=variant.id,
                control=control_sample,
                treatment=treatment_sample,
                result=z_test(control_sample, treatment_sample, test.significance),
            )
        )
    return comparisons


def apply_significance(
    test: ABTest, results: List[VariantMetricResult]
) -> List[Comparison]:
    """Write each comparison's significance onto the treatment's primary-metric result in place."""
    comparisons = compare_to_control(test, results)
    metric_name = primary_event_type(test.primary_metric).value
    indexed = _index(results)

    for comparison in comparisons:
        entry = indexed.get((comparison.variant_id, metric_name))
        if entry is None:
            continue
        entry.confidence = comparison.result.confidence
        entry.p_value = comparison.result.p_value
        entry.is_significant = comparison.result.is_significant

    return comparisons


def total_events(results: Iterable[VariantMetricResult]) -> int:
    return sum(r.sample_size for r in results)


def should_complete(
    test: ABTest,
    results: Iterable[VariantMetricResult],
    comparisons: List[Comparison],
    now: datetime,
) -> bool:
    """Enough events, enough runtime, and at least one significant comparison."""
    if total_events(results) < test.audience.sample_size:
        return False
    if test.start_date is None or now - test.start_date < timedelta(hours=test.audience.duration):
        return False
    return any(c.result.is_significant for c in comparisons)


def pick_winner(comparisons: List[Comparison]) -> Optional[str]:
    """Highest observed value among the arms of significant comparisons."""
    best_id = None
    best_value = None
    for c in comparisons:
        if not c.result.is_significant:
            continue
        for variant_id, sample in ((c.control_id, c.control), (c.variant_id, c.treatment)):
            if best_value is None or sample.value > best_value:
                best_id, best_value = variant_id, sample.value
    return best_id
