"""Tier classification and scan prioritisation of repositories."""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from common.logging import LoggingManager
from ghintel.models.base import utcnow, as_naive_utc

logger = LoggingManager.get_logger('ghintel.classifier')

TIER_HOT = 1
TIER_RISING = 2
TIER_LONG_TAIL = 3
TIER_NAMES = {TIER_HOT: "hot", TIER_RISING: "rising", TIER_LONG_TAIL: "long-tail"}


@dataclass(frozen=True)
class TierThresholds:
    """Operator-tunable inputs of the tier decision and the priority formula."""
    high_stars: int = 100
    high_growth: float = 10.0
    mid_stars: int = 50
    moderate_growth: float = 2.0
    growth_weight: float = 0.5
    engagement_weight: float = 0.3
    stars_weight: float = 0.2
    keywords: Sequence[str] = field(default=("ai", "llm", "ml", "gpt"))

    @classmethod
    def from_config(cls, config) -> "TierThresholds":
        return cls(
            high_stars=config.tier1_min_stars,
            high_growth=config.tier1_min_growth,
            mid_stars=config.tier2_min_stars,
            moderate_growth=config.tier2_min_growth,
            growth_weight=config.scan_priority_growth_weight,
            engagement_weight=config.scan_priority_engagement_weight,
            stars_weight=config.scan_priority_stars_weight,
            keywords=tuple(config.engagement_keywords),
        )


@dataclass(frozen=True)
class TierResult:
    tier: int
    growth_velocity: float
    engagement_score: float
    scan_priority: float
    composite_score: float

    @property
    def tier_name(self) -> str:
        return TIER_NAMES[self.tier]


def score_by_ratio(ratio: float, optimal: float, acceptable: float) -> float:
    if acceptable <= ratio <= optimal:
        return 80.0
    if optimal < ratio <= optimal * 1.5:
        return 60.0
    if ratio >= acceptable * 0.5:
        return 40.0
    return 20.0


def score_issue_ratio(open_issues: int, stars: int) -> float:
    """Open-issues-to-stars ratio as a responsiveness proxy when no issue history is known."""
    if stars <= 0:
        return 0.0
    ratio = open_issues / stars
    if 0.01 < ratio < 0.05:
        return 100.0
    if 0.005 < ratio < 0.1:
        return 80.0
    if 0 < ratio < 0.2:
        return 60.0
    return 40.0 if ratio == 0 else 20.0


class TierClassifier:
    """Computes tier, growth velocity, engagement and scan priority.

    The same formula applies at every scan depth; the facts a deeper scan
    adds (issue history) only sharpen the engagement estimate.
    """

    def __init__(self, thresholds: Optional[TierThresholds] = None):
        self.thresholds = thresholds or TierThresholds()

    def growth_velocity(self, current, previous=None, now: Optional[datetime] = None) -> float:
        """Stars gained per day since `previous`; 0 without a usable previous snapshot."""
        if previous is None or previous.recorded_at is None:
            return 0.0
        now = as_naive_utc(now) or utcnow()
        elapsed_days = (now - as_naive_utc(previous.recorded_at)).total_seconds() / 86400
        if elapsed_days <= 0:
            return 0.0
        return ((current.stars or 0) - (previous.stars or 0)) / elapsed_days

    def engagement_score(self, current) -> float:
        stars = current.stars or 0
        forks = current.forks or 0

        fork_score = score_by_ratio(forks / stars, 0.3, 0.1) if stars > 0 else 0.0

        issues_total = getattr(current, "issues_total", None)
        if issues_total:
            closed = getattr(current, "issues_closed", None) or 0
            responded = getattr(current, "issues_with_response", None) or 0
            issue_score = min(100.0, 60.0 * closed / issues_total + 40.0 * responded / issues_total)
        else:
            issue_score = score_issue_ratio(current.open_issues or 0, stars)

        keywords = [k.lower() for k in self.thresholds.keywords]
        topics = getattr(current, "topics", None) or []
        matches = sum(1 for topic in topics if any(k in topic.lower() for k in keywords))
        topic_score = min(100.0, matches * 20.0)

        return 0.4 * fork_score + 0.3 * issue_score + 0.3 * topic_score

    def decide_tier(self, stars: int, growth_velocity: float) -> int:
        t = self.thresholds
        if stars >= t.high_stars and growth_velocity > t.high_growth:
            return TIER_HOT
        if stars >= t.mid_stars or growth_velocity > t.moderate_growth:
            return TIER_RISING
        return TIER_LONG_TAIL

    def growth_score(self, growth_velocity: float) -> float:
        t = self.thresholds
        if growth_velocity >= t.high_growth * 5:
            return 100.0
        if growth_velocity > t.high_growth:
            return 80.0
        if growth_velocity > t.moderate_growth:
            return 60.0
        if growth_velocity > 0:
            return 40.0
        return 20.0

    def classify(self, current, previous=None, now: Optional[datetime] = None) -> TierResult:
        """Classify `current` metrics against the `previous` snapshot, if any."""
        t = self.thresholds
        stars = max(0, current.stars or 0)
        velocity = self.growth_velocity(current, previous, now)
        engagement = self.engagement_score(current)
        tier = self.decide_tier(stars, velocity)
        priority = (t.growth_weight * velocity
                    + t.engagement_weight * engagement
                    + t.stars_weight * math.log10(stars + 1))
        popularity = min(100.0, math.log10(stars + 1) * 20)
        composite = 0.4 * self.growth_score(velocity) + 0.3 * engagement + 0.3 * popularity
        logger.debug(f"Classified stars={stars} velocity={velocity:.2f} as tier {tier} "
                     f"(engagement={engagement:.1f}, priority={priority:.2f})")
        return TierResult(tier=tier, growth_velocity=velocity, engagement_score=engagement,
                          scan_priority=priority, composite_score=composite)
