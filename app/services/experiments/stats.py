import math
from dataclasses import dataclass
from typing import Tuple

from scipy import special as scipy_special
from scipy import stats as scipy_stats

DEFAULT_SIGNIFICANCE = 0.95


@dataclass
class VariantSample:
    """Observed value (rate or mean) of one arm and the number of observations behind it."""

    value: float
    sample_size: int


@dataclass
class SignificanceResult:
    p_value: float
    confidence: float
    is_significant: bool
    margin_of_error: float
    power: float
    z_score: float
    sample_size: int


def normal_cdf(z: float) -> float:
    """Standard normal CDF, computed from the complementary error function.

    erfc keeps full precision in both tails, where 1 - erf(x) would cancel.
    """
    return 0.5 * float(scipy_special.erfc(-z / math.sqrt(2.0)))


def critical_value(significance: float = DEFAULT_SIGNIFICANCE) -> float:
    # Two-sided critical z for the configured confidence level
    alpha = 1 - significance
    return float(scipy_stats.norm.ppf(1 - alpha / 2))


def calculate_pooled_rate(control: VariantSample, treatment: VariantSample) -> float:
    total = control.sample_size + treatment.sample_size
    if total == 0:
        return 0.0
    return (
        control.sample_size * control.value + treatment.sample_size * treatment.value
    ) / total


def calculate_standard_error(
    control: VariantSample, treatment: VariantSample, pooled: bool = True
) -> float:
    if control.sample_size <= 0 or treatment.sample_size <= 0:
        return 0.0

    if pooled:
        p = calculate_pooled_rate(control, treatment)
        variance = p * (1 - p) * (1 / control.sample_size + 1 / treatment.sample_size)
    else:
        p1 = control.value
        p2 = treatment.value
        variance = p1 * (1 - p1) / control.sample_size + p2 * (1 - p2) / treatment.sample_size

    # Means outside [0, 1] would give a negative "variance"; treat as undefined
    if variance <= 0:
        return 0.0
    return math.sqrt(variance)


def calculate_statistical_power(
    control: VariantSample,
    treatment: VariantSample,
    significance: float = DEFAULT_SIGNIFICANCE,
) -> float:
    """Power of a two-sided two-proportion z-test to detect the observed effect.

    power = Φ((|Δ| - z·SE₀) / SE₁) + Φ((-|Δ| - z·SE₀) / SE₁)

    where SE₀ is the pooled standard error under the null and SE₁ the
    unpooled standard error under the alternative.
    """
    alpha = 1 - significance
    effect = abs(treatment.value - control.value)

    if effect == 0:
        return alpha

    se_null = calculate_standard_error(control, treatment, pooled=True)
    se_alt = calculate_standard_error(control, treatment, pooled=False)

    if se_alt == 0:
        # Both arms deterministic (rates of exactly 0 or 1) with a real difference
        return 1.0

    z_crit = critical_value(significance)
    power = normal_cdf((effect - z_crit * se_null) / se_alt) + normal_cdf(
        (-effect - z_crit * se_null) / se_alt
    )

    return min(max(power, 0.0), 1.0)


def z_test(
    control: VariantSample,
    treatment: VariantSample,
    significance: float = DEFAULT_SIGNIFICANCE,
) -> SignificanceResult:
    sample_size = control.sample_size + treatment.sample_size
    se = calculate_standard_error(control, treatment, pooled=True)

    if se == 0:
        return SignificanceResult(
            p_value=1.0,
            confidence=0.0,
            is_significant=False,
            margin_of_error=0.0,
            power=calculate_statistical_power(control, treatment, significance),
            z_score=0.0,
            sample_size=sample_size,
        )

    z_score = (treatment.value - control.value) / se

    # Two-tailed p-value
    p_value = 2 * (1 - normal_cdf(abs(z_score)))
    p_value = min(max(p_value, 0.0), 1.0)

    return SignificanceResult(
        p_value=p_value,
        confidence=1 - p_value,
        is_significant=p_value < (1 - significance),
        margin_of_error=critical_value(significance) * se,
        power=calculate_statistical_power(control, treatment, significance),
        z_score=z_score,
        sample_size=sample_size,
    )


def calculate_lift(control_rate: float, treatment_rate: float) -> Tuple[float, float]:
    # Absolute lift in percentage points
    absolute_lift = (treatment_rate - control_rate) * 100

    # Relative lift as percentage improvement
    if control_rate == 0:
        relative_lift = float("inf") if treatment_rate > 0 else 0.0
    else:
        relative_lift = ((treatment_rate - control_rate) / control_rate) * 100

    return absolute_lift, relative_lift


def calculate_confidence_interval(
    control: VariantSample,
    treatment: VariantSample,
    significance: float = DEFAULT_SIGNIFICANCE,
) -> Tuple[float, float]:
    diff = treatment.value - control.value

    # Unpooled SE for the interval around the difference
    se = calculate_standard_error(control, treatment, pooled=False)
    margin = critical_value(significance) * se

    return diff - margin, diff + margin


def calculate_sample_size_requirement(
    baseline_rate: float,
    minimum_detectable_effect: float,
    significance: float = DEFAULT_SIGNIFICANCE,
    power: float = 0.80,
) -> int:
    """Per-arm sample size needed to detect an absolute lift of ``minimum_detectable_effect``."""
    if baseline_rate <= 0 or baseline_rate >= 1 or minimum_detectable_effect == 0:
        return 0

    p1 = baseline_rate
    p2 = baseline_rate + minimum_detectable_effect
    if p2 <= 0 or p2 >= 1:
        return 0

    z_alpha = critical_value(significance)
    z_beta = float(scipy_stats.norm.ppf(power))

    p_pooled = (p1 + p2) / 2

    numerator = (
        z_alpha * math.sqrt(2 * p_pooled * (1 - p_pooled))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2

    return math.ceil(numerator / (p2 - p1) ** 2)
