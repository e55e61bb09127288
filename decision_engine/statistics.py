"""Hashing and significance statistics for experiments."""

from __future__ import annotations

import math

from models.schemas import SignificanceResult

BUCKET_COUNT = 100


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def string_hash(key: str) -> int:
    """
    Stable 32-bit string hash (h * 31 + unit over UTF-16 code units).

    The running value wraps to a signed 32-bit integer after every step and
    the absolute value is returned, so -2**31 comes back as 2**31.
    """
    h = 0
    encoded = key.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = _to_int32(h * 31 + unit)
    return abs(h)


def assignment_bucket(user_id: str, experiment_id: str) -> int:
    """Bucket in [0, 100) for a user within an experiment."""
    return string_hash(f"{user_id}:{experiment_id}") % BUCKET_COUNT


def normal_cdf(x: float) -> float:
    """Standard normal cumulative distribution function."""
    return 0.5 * math.erfc(-x / math.sqrt(2))


def two_proportion_z_test(
    control_conversions: int,
    control_participants: int,
    variant_conversions: int,
    variant_participants: int,
) -> SignificanceResult:
    """
    Pooled two-proportion z-test with a two-tailed p-value.

    Degenerate inputs (an empty arm, or a pooled rate outside the open unit
    interval, which repeat conversions can push past 1) report z = 0 and
    p = 1.
    """
    if control_participants <= 0 or variant_participants <= 0:
        return SignificanceResult(z_score=0.0, p_value=1.0)

    p1 = control_conversions / control_participants
    p2 = variant_conversions / variant_participants
    pooled = (control_conversions + variant_conversions) / (
        control_participants + variant_participants
    )
    if pooled <= 0 or pooled >= 1:
        return SignificanceResult(z_score=0.0, p_value=1.0)

    se = math.sqrt(
        pooled * (1 - pooled) * (1 / control_participants + 1 / variant_participants)
    )
    if se == 0:
        return SignificanceResult(z_score=0.0, p_value=1.0)

    z = (p2 - p1) / se
    p_value = 2 * (1 - normal_cdf(abs(z)))
    return SignificanceResult(z_score=z, p_value=p_value)
