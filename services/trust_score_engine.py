"""
Trust Score Engine
Deterministic 0-100 trust score from verification, history and behaviour signals.

TrustScore = (
    verification * 0.25 + completed_tasks * 0.20 + rating * 0.20 +
    response_time * 0.10 + (1 - cancellation_rate) * 0.10 +
    endorsements * 0.10 + background_check * 0.05
) * 100

Inputs are expected inside their documented ranges; clamping negative counts
is the caller's job.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional

from config import Config
from models import PaymentMethod

logger = logging.getLogger(__name__)


class VerificationLevel(Enum):
    NONE = "none"
    BASIC = "basic"
    GOVERNMENT = "government"
    ENHANCED = "enhanced"
    COMMUNITY = "community"


class TrustLevel(Enum):
    EXCELLENT = "excellent"
    VERY_GOOD = "very_good"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


@dataclass
class TrustScoreFactors:
    """Signals for one party, as supplied by the identity verifier and ledger aggregates"""
    identity_verification_level: VerificationLevel
    completed_tasks_count: int
    average_client_rating: float  # 0-5 scale
    response_time_minutes: float
    cancelled_tasks_count: int
    total_tasks_count: int
    community_endorsements_count: int
    has_background_check: bool


# Factor weights (sum to 1)
WEIGHTS = {
    "verification": Decimal("0.25"),
    "completed_tasks": Decimal("0.20"),
    "rating": Decimal("0.20"),
    "response_time": Decimal("0.10"),
    "reliability": Decimal("0.10"),
    "endorsements": Decimal("0.10"),
    "background_check": Decimal("0.05"),
}

VERIFICATION_SCORES = {
    VerificationLevel.COMMUNITY: Decimal("1.0"),
    VerificationLevel.ENHANCED: Decimal("0.8"),
    VerificationLevel.GOVERNMENT: Decimal("0.6"),
    VerificationLevel.BASIC: Decimal("0.3"),
    VerificationLevel.NONE: Decimal("0.0"),
}

# (minimum completed tasks, score), checked top-down
COMPLETED_TASK_BUCKETS = [
    (50, Decimal("1.0")),
    (25, Decimal("0.9")),
    (10, Decimal("0.7")),
    (5, Decimal("0.5")),
    (1, Decimal("0.3")),
]

# (maximum response minutes, score); anything slower scores 0.2
RESPONSE_TIME_BUCKETS = [
    (5, Decimal("1.0")),
    (15, Decimal("0.9")),
    (30, Decimal("0.8")),
    (60, Decimal("0.6")),
    (120, Decimal("0.4")),
]
SLOW_RESPONSE_SCORE = Decimal("0.2")

ENDORSEMENT_BUCKETS = [
    (10, Decimal("1.0")),
    (5, Decimal("0.8")),
    (3, Decimal("0.6")),
    (1, Decimal("0.4")),
]

# (minimum score, level, display colour)
TRUST_LEVELS = [
    (95, TrustLevel.EXCELLENT, "#4CAF50"),
    (85, TrustLevel.VERY_GOOD, "#8BC34A"),
    (75, TrustLevel.GOOD, "#FFC107"),
    (60, TrustLevel.FAIR, "#FF9800"),
]
POOR_COLOR = "#FF5722"


def _to_decimal(value) -> Optional[Decimal]:
    """None for NaN, infinities and anything that is not a number"""
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def verification_score(level: VerificationLevel) -> Decimal:
    try:
        return VERIFICATION_SCORES.get(VerificationLevel(level), Decimal("0.0"))
    except ValueError:
        logger.debug(f"Unknown verification level {level!r}, scoring 0")
        return Decimal("0.0")


def completed_tasks_score(completed_tasks_count: int) -> Decimal:
    for minimum, score in COMPLETED_TASK_BUCKETS:
        if completed_tasks_count >= minimum:
            return score
    return Decimal("0.0")


def rating_score(average_rating) -> Decimal:
    """0-5 rating mapped onto 0-1; a rating that is not a number scores 0"""
    rating = _to_decimal(average_rating)
    if rating is None:
        return Decimal("0")
    return min(Decimal("1"), max(Decimal("0"), rating / Decimal("5")))


def response_time_score(response_time_minutes) -> Decimal:
    minutes = _to_decimal(response_time_minutes)
    if minutes is None:
        return SLOW_RESPONSE_SCORE
    for maximum, score in RESPONSE_TIME_BUCKETS:
        if minutes <= maximum:
            return score
    return SLOW_RESPONSE_SCORE


def cancellation_rate(cancelled_tasks_count: int, total_tasks_count: int) -> Decimal:
    if total_tasks_count == 0:
        return Decimal("0")
    return min(Decimal("1"), Decimal(cancelled_tasks_count) / Decimal(total_tasks_count))


def endorsements_score(endorsements_count: int) -> Decimal:
    for minimum, score in ENDORSEMENT_BUCKETS:
        if endorsements_count >= minimum:
            return score
    return Decimal("0.0")


def trust_score_breakdown(factors: TrustScoreFactors) -> Dict[str, Decimal]:
    """Every normalised sub-score (0-1), keyed like WEIGHTS"""
    return {
        "verification": verification_score(factors.identity_verification_level),
        "completed_tasks": completed_tasks_score(factors.completed_tasks_count),
        "rating": rating_score(factors.average_client_rating),
        "response_time": response_time_score(factors.response_time_minutes),
        "reliability": Decimal("1") - cancellation_rate(
            factors.cancelled_tasks_count, factors.total_tasks_count
        ),
        "endorsements": endorsements_score(factors.community_endorsements_count),
        "background_check": Decimal("1.0") if factors.has_background_check else Decimal("0.0"),
    }


def compute_trust_score(factors: TrustScoreFactors) -> int:
    """Weighted sum of the sub-scores, scaled to 0-100 and rounded half-up"""
    breakdown = trust_score_breakdown(factors)
    weighted = sum((breakdown[name] * weight for name, weight in WEIGHTS.items()), Decimal("0"))
    score = int((weighted * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, min(100, score))


def trust_level(score: int) -> TrustLevel:
    for minimum, level, _color in TRUST_LEVELS:
        if score >= minimum:
            return level
    return TrustLevel.POOR


def trust_score_color(score: int) -> str:
    for minimum, _level, color in TRUST_LEVELS:
        if score >= minimum:
            return color
    return POOR_COLOR


def allowed_payment_methods(score: int) -> List[PaymentMethod]:
    """
    Payment methods offered to a party with the given trust score.
    Cash settles outside any rail, so it is reserved for parties at or above
    CASH_PAYMENT_MIN_TRUST_SCORE.
    """
    methods = [method for method in PaymentMethod if method is not PaymentMethod.CASH]
    if score >= Config.CASH_PAYMENT_MIN_TRUST_SCORE:
        methods.append(PaymentMethod.CASH)
    else:
        logger.debug(f"🔒 CASH_GATED: score {score} below {Config.CASH_PAYMENT_MIN_TRUST_SCORE}")
    return methods
