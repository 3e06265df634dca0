"""
Lead Scorer.

Computes a 0-100 buying-intent score for a matched post:
- Intent signals (max 40): phrases indicating buying intent
- Engagement (max 20): upvotes + comments on a diminishing scale
- Recency (max 15): age of the post at scoring time
- Author quality (max 15): karma and account age
- Category (max 10): conversation category from AI analysis

The total is the plain sum of the capped factors, so it can never leave
[0, 100]. Recency is measured when the result is scored, which keeps a stored
score stable.
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from .matcher import contains_term
from .models import RawPost, utcnow

HIGH_INTENT_PHRASES = [
    # Direct purchase intent
    "looking for",
    "need a tool",
    "need a solution",
    "recommend a",
    "recommend me",
    "suggestions for",
    "best tool for",
    "best software for",
    "best app for",
    "anyone use",
    "anyone using",
    "what do you use for",
    "what should i use",
    "what would you recommend",
    "can anyone recommend",
    "trying to find",
    "searching for",
    "in the market for",
    "want to buy",
    "ready to pay",
    "willing to pay",
    "budget for",
    # Comparison/evaluation
    "alternatives to",
    "alternative to",
    "vs",
    "compared to",
    "comparison",
    "which is better",
    "should i switch",
    "thinking of switching",
    "migrating from",
    # Problem statements
    "frustrated with",
    "struggling with",
    "pain point",
    "problem with",
    "issue with",
    "challenge with",
    "fed up with",
    "tired of",
]

MEDIUM_INTENT_PHRASES = [
    "how do you",
    "how does",
    "is there a way to",
    "does anyone know",
    "has anyone tried",
    "thoughts on",
    "opinions on",
    "experience with",
    "review of",
    "feedback on",
]

CATEGORY_SCORES = {
    "solution_request": 10,
    "money_talk": 8,
    "pain_point": 6,
    "advice_request": 4,
    "hot_discussion": 3,
}
DEFAULT_CATEGORY_SCORE = 2

MAX_INTENT = 40
MAX_ENGAGEMENT = 20
MAX_RECENCY = 15
MAX_AUTHOR_QUALITY = 15
MAX_CATEGORY = 10


@dataclass(frozen=True)
class LeadScoreFactors:
    intent: int
    engagement: int
    recency: int
    author_quality: int
    category: int

    @property
    def total(self) -> int:
        return self.intent + self.engagement + self.recency + self.author_quality + self.category

    def to_dict(self) -> dict[str, int]:
        data = asdict(self)
        data["total"] = self.total
        return data


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def intent_score(text: str) -> int:
    """15 for the first high-intent phrase, +5 each after (max 30); 5/+2 for medium (max 10)."""
    high = sum(1 for phrase in HIGH_INTENT_PHRASES if contains_term(text, phrase))
    medium = sum(1 for phrase in MEDIUM_INTENT_PHRASES if contains_term(text, phrase))

    score = 0
    if high > 0:
        score += 15 + min((high - 1) * 5, 15)
    if medium > 0:
        score += 5 + min((medium - 1) * 2, 5)
    return min(score, MAX_INTENT)


def engagement_factor(engagement: int | None) -> int:
    if not engagement or engagement <= 0:
        return 0
    if engagement <= 10:
        return _round_half_up(engagement / 10 * 5)
    if engagement <= 50:
        return 5 + _round_half_up((engagement - 10) / 40 * 5)
    if engagement <= 100:
        return 10 + _round_half_up((engagement - 50) / 50 * 5)
    return min(15 + _round_half_up(math.log10(engagement - 100) * 2), MAX_ENGAGEMENT)


def recency_factor(posted_at: datetime | None, now: datetime) -> int:
    if posted_at is None:
        return 7
    if posted_at.tzinfo is None:
        posted_at = posted_at.replace(tzinfo=timezone.utc)
    hours_old = (now - posted_at).total_seconds() / 3600

    if hours_old < 24:
        return 15
    if hours_old < 72:
        return 12
    if hours_old < 168:
        return 9
    if hours_old < 336:
        return 6
    if hours_old < 720:
        return 3
    return 1


def author_quality_factor(karma: int | None, account_age_days: int | None) -> int:
    if karma is None and account_age_days is None:
        return 7

    score = 0
    if karma is not None:
        if karma >= 10000:
            score += 10
        elif karma >= 5000:
            score += 8
        elif karma >= 1000:
            score += 6
        elif karma >= 500:
            score += 4
        elif karma >= 100:
            score += 2
        else:
            score += 1
    else:
        score += 5

    if account_age_days is not None:
        if account_age_days >= 365 * 2:
            score += 5
        elif account_age_days >= 365:
            score += 4
        elif account_age_days >= 180:
            score += 3
        elif account_age_days >= 30:
            score += 2
        else:
            score += 1
    else:
        score += 2

    return min(score, MAX_AUTHOR_QUALITY)


def category_factor(category: str | None) -> int:
    return CATEGORY_SCORES.get(category or "", DEFAULT_CATEGORY_SCORE)


def score_lead(
    post: RawPost,
    category: str | None = None,
    now: datetime | None = None,
) -> LeadScoreFactors:
    """
    Score a post's buying intent.

    Args:
        post: The matched post, including optional author signals.
        category: Conversation category, if AI analysis already ran.
        now: Scoring time used for recency (defaults to current UTC time).

    Returns:
        The five capped factors; .total is their sum.
    """
    return LeadScoreFactors(
        intent=intent_score(post.text),
        engagement=engagement_factor(post.engagement_score),
        recency=recency_factor(post.posted_at, now or utcnow()),
        author_quality=author_quality_factor(post.author_karma, post.author_account_age_days),
        category=category_factor(category),
    )


def rescore_category(factors: dict[str, int], category: str | None) -> dict[str, int]:
    """Swap the category factor of stored factors once AI analysis provides one."""
    updated = {k: v for k, v in factors.items() if k != "total"}
    updated["category"] = category_factor(category)
    updated["total"] = sum(updated.values())
    return updated


def lead_score_label(score: int) -> str:
    if score >= 70:
        return "Hot"
    if score >= 50:
        return "Warm"
    if score >= 30:
        return "Cool"
    return "Cold"
