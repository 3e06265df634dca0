"""
AI result analysis.

ContentAnalyzer asks the configured LLM for sentiment, a conversation
category and a one-line summary of each new result. AIDispatcher runs the
analyzer over a scan's new results, admitting every call through the
AIBudgetGate, writing each call to the usage ledger and each enrichment to
the result exactly once.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .ai_budget import AIBudgetGate
from .errors import BudgetExceeded
from .lead_scorer import rescore_category
from .llm import LLMProvider
from .models import Result
from .plans import PlanProvider, get_plan_limits
from .store import ResultStore

logger = logging.getLogger("sonar.analysis")

CATEGORIES = (
    "solution_request",
    "money_talk",
    "pain_point",
    "advice_request",
    "hot_discussion",
    "general",
)
SENTIMENTS = ("positive", "negative", "neutral")

# USD per million tokens: (prompt, completion). Matched by longest model-name prefix.
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1": (2.00, 8.00),
    "gemini-2.0-flash": (0.10, 0.40),
    "gemini-2.5-flash": (0.30, 2.50),
    "gemini-2.5-pro": (1.25, 10.00),
}
DEFAULT_PRICING = (1.00, 3.00)

MAX_CONTENT_CHARS = 2000
MAX_COMPLETION_TOKENS = 300

SYSTEM_PROMPT = (
    "You classify social media posts for a brand monitoring tool. "
    "Respond with ONLY a JSON object, no explanation."
)


def model_pricing(model: str) -> tuple[float, float]:
    for name in sorted(MODEL_PRICING, key=len, reverse=True):
        if model.startswith(name):
            return MODEL_PRICING[name]
    return DEFAULT_PRICING


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Cost of one call in USD."""
    prompt_rate, completion_rate = model_pricing(model)
    return (prompt_tokens * prompt_rate + completion_tokens * completion_rate) / 1_000_000


def estimate_tokens(text: str) -> int:
    """Rough token count for budgeting, about four characters per token."""
    return len(text) // 4 + 1


def _strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content
        content = content.rsplit("```", 1)[0] if "```" in content else content
        content = content.strip()
    return content


@dataclass
class Analysis:
    """Outcome of one analysis call. Fields are None when the reply was unusable."""
    model: str
    prompt_tokens: int
    completion_tokens: int
    latency_ms: int
    sentiment: str | None = None
    sentiment_score: float | None = None
    category: str | None = None
    summary: str | None = None

    @property
    def ok(self) -> bool:
        return self.sentiment is not None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def cost_usd(self) -> float:
        return estimate_cost(self.model, self.prompt_tokens, self.completion_tokens)


class ContentAnalyzer:
    """Sentiment, category and summary extraction for a single result."""

    def __init__(self, llm: LLMProvider):
        self.llm = llm

    def build_prompt(self, result: Result) -> str:
        content = (result.content or "")[:MAX_CONTENT_CHARS]
        return f"""Analyze this {result.platform} post.

TITLE: {result.title}
CONTENT: {content}

Return a JSON object with:
- "sentiment": one of {", ".join(SENTIMENTS)}
- "sentiment_score": number from -1.0 (very negative) to 1.0 (very positive)
- "category": one of {", ".join(CATEGORIES)}
  solution_request = asking for a tool or product recommendation
  money_talk = discussing pricing, budgets or purchasing
  pain_point = complaining about a problem with current tools
  advice_request = asking how to do something
  hot_discussion = a lively debate or thread with many opinions
  general = anything else
- "summary": one sentence, at most 30 words"""

    def estimate(self, result: Result) -> int:
        """Upper estimate of the tokens one analysis of result will consume."""
        return estimate_tokens(SYSTEM_PROMPT + self.build_prompt(result)) + MAX_COMPLETION_TOKENS

    def parse(self, content: str) -> dict[str, Any]:
        """
        Parse and normalize the model's JSON reply.

        Raises:
            ValueError: If the reply is not a JSON object with a known sentiment.
        """
        data = json.loads(_strip_code_fence(content))
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")

        sentiment = str(data.get("sentiment", "")).lower()
        if sentiment not in SENTIMENTS:
            raise ValueError(f"Unknown sentiment: {sentiment!r}")

        try:
            score = float(data.get("sentiment_score", 0.0))
        except (TypeError, ValueError):
            score = 0.0
        score = max(-1.0, min(1.0, score))

        category = str(data.get("category", "general")).lower()
        if category not in CATEGORIES:
            category = "general"

        summary = data.get("summary")
        return {
            "sentiment": sentiment,
            "sentiment_score": score,
            "category": category,
            "summary": str(summary).strip() if summary else None,
        }

    async def analyze(self, result: Result) -> Analysis:
        started = time.monotonic()
        response = await self.llm.generate(
            prompt=self.build_prompt(result),
            system_prompt=SYSTEM_PROMPT,
            temperature=0.2,
            max_tokens=MAX_COMPLETION_TOKENS,
            json_mode=True,
        )
        analysis = Analysis(
            model=response.model or self.llm.model_name,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        try:
            parsed = self.parse(response.content)
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning(f"Unusable analysis for result {result.id}: {e}")
            return analysis

        analysis.sentiment = parsed["sentiment"]
        analysis.sentiment_score = parsed["sentiment_score"]
        analysis.category = parsed["category"]
        analysis.summary = parsed["summary"]
        return analysis


@dataclass
class DispatchReport:
    analyzed: int = 0
    failed: int = 0
    skipped: int = 0
    budget_exhausted: bool = False
    tokens: int = 0
    cost_usd: float = 0.0
    errors: list[str] = field(default_factory=list)


class AIDispatcher:
    """Runs analysis over newly inserted results within the user's AI budget."""

    def __init__(
        self,
        analyzer: ContentAnalyzer,
        gate: AIBudgetGate,
        store: ResultStore,
        plans: PlanProvider,
    ):
        self.analyzer = analyzer
        self.gate = gate
        self.store = store
        self.plans = plans

    def _eligible(self, user_id: str, results: list[Result]) -> list[Result]:
        limits = get_plan_limits(self.plans.get_user_plan(user_id))
        if not limits.ai_features.sentiment:
            return []
        if limits.ai_features.unlimited_analysis:
            return results
        # Limited plans get one analyzed result, ever
        if self.store.count_analyzed_results_for_user(user_id) > 0:
            return []
        return results[:1]

    async def dispatch(self, user_id: str, results: list[Result]) -> DispatchReport:
        """
        Analyze results in order until done or the budget runs out.

        A failed call is logged and counted; the remaining results still run.
        Budget exhaustion stops dispatch for this batch.
        """
        report = DispatchReport()
        eligible = self._eligible(user_id, [r for r in results if r.id is not None])
        report.skipped = len(results) - len(eligible)
        if not eligible:
            return report

        categories_enabled = get_plan_limits(self.plans.get_user_plan(user_id)).ai_features.pain_point_categories

        for index, result in enumerate(eligible):
            try:
                async with self.gate.reserve(user_id, self.analyzer.estimate(result)):
                    analysis = await self.analyzer.analyze(result)
                    self.store.record_ai_usage(
                        user_id=user_id,
                        model=analysis.model,
                        prompt_tokens=analysis.prompt_tokens,
                        completion_tokens=analysis.completion_tokens,
                        cost_usd=analysis.cost_usd,
                        latency_ms=analysis.latency_ms,
                        result_id=result.id,
                    )
            except BudgetExceeded as e:
                logger.info(f"AI budget stop for user {user_id}: {e.reason}")
                report.budget_exhausted = True
                report.skipped += len(eligible) - index
                break
            except Exception as e:
                logger.error(f"Analysis failed for result {result.id}: {e}")
                report.failed += 1
                report.errors.append(f"result {result.id}: {e}")
                continue

            report.tokens += analysis.total_tokens
            report.cost_usd += analysis.cost_usd
            if not analysis.ok:
                report.failed += 1
                continue

            category = analysis.category if categories_enabled else None
            factors = rescore_category(result.lead_score_factors, category)
            written = self.store.write_enrichment(
                result.id,
                sentiment=analysis.sentiment,
                sentiment_score=analysis.sentiment_score,
                category=category,
                summary=analysis.summary,
                lead_score=factors["total"],
                lead_score_factors=factors,
            )
            if written:
                report.analyzed += 1
            else:
                logger.debug(f"Result {result.id} was already enriched")

        logger.info(
            f"AI dispatch for {user_id}: {report.analyzed} analyzed, {report.failed} failed, "
            f"{report.skipped} skipped, ${report.cost_usd:.4f}"
        )
        return report
