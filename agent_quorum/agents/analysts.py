"""
Template-driven analysts, one per agent type.

The text they produce is canned; the recommendation comes from a numeric
signal in the request context and, in later rounds, from the prevailing view
of the opinions the analyst was shown.
"""

from collections import Counter
from typing import Dict, Optional

from ..models.core import AgentType, Opinion, Recommendation
from .base import AnalysisProducer, AnalysisRequest, ProducerRegistry


FOCUS = {
    AgentType.TECHNICAL: "price action and momentum indicators",
    AgentType.FUNDAMENTAL: "earnings quality and valuation multiples",
    AgentType.SENTIMENT: "news flow and investor positioning",
    AgentType.RISK: "volatility and drawdown exposure",
    AgentType.MARKET: "sector rotation and index breadth",
    AgentType.DECISION: "the combined analyst evidence",
    AgentType.MONITORING: "data quality and system alerts",
}

OUTLOOK = {
    Recommendation.STRONG_BUY: "strongly positive",
    Recommendation.BUY: "positive",
    Recommendation.HOLD: "neutral",
    Recommendation.SELL: "negative",
    Recommendation.STRONG_SELL: "strongly negative",
}


def recommendation_for_signal(signal: float) -> Recommendation:
    """Map a signal in [-1, 1] to a recommendation."""
    if signal > 0.5:
        return Recommendation.STRONG_BUY
    if signal > 0.15:
        return Recommendation.BUY
    if signal < -0.5:
        return Recommendation.STRONG_SELL
    if signal < -0.15:
        return Recommendation.SELL
    return Recommendation.HOLD


class TemplateAnalyst(AnalysisProducer):
    """Produces a templated opinion for one agent type."""

    def __init__(self, agent_type: AgentType, base_confidence: float = 0.7,
                 name: Optional[str] = None):
        super().__init__(name or f"{agent_type.value}_analyst")
        if not 0.0 <= base_confidence <= 1.0:
            raise ValueError("base_confidence must be within [0, 1]")
        self.agent_type = agent_type
        self.base_confidence = base_confidence

    def _signal(self, request: AnalysisRequest) -> float:
        context = request.context
        raw = context.get(f"{self.agent_type.value}_signal", context.get("signal", 0.0))
        try:
            return max(-1.0, min(1.0, float(raw)))
        except (TypeError, ValueError):
            self.logger.warning(f"Ignoring non-numeric signal {raw!r}")
            return 0.0

    async def produce(self, request: AnalysisRequest) -> Opinion:
        focus = FOCUS[self.agent_type]
        own_view = recommendation_for_signal(self._signal(request))
        prior = Counter(o.recommendation for o in request.prior_opinions if o.recommendation)

        if prior:
            # Prefer the view most prior opinions share; ties keep the analyst's own view.
            top_count = prior.most_common(1)[0][1]
            leaders = [rec for rec, count in prior.items() if count == top_count]
            recommendation = own_view if own_view in leaders else leaders[0]
            confidence = min(0.95, self.base_confidence + 0.1)
            content = (
                f"{recommendation.value} on {request.topic}: the {OUTLOOK[recommendation]} "
                f"view holds after reviewing prior opinions"
            )
            reasoning = (
                f"Reviewed {len(request.prior_opinions)} prior opinions against {focus}; "
                f"own signal suggested {own_view.value}"
            )
        else:
            recommendation = own_view
            confidence = self.base_confidence
            content = (
                f"{recommendation.value} on {request.topic}: {focus} "
                f"point to a {OUTLOOK[recommendation]} outlook"
            )
            reasoning = f"{self.agent_type.value.capitalize()} review of {focus}"

        return Opinion.create(
            agent_id=request.agent_id,
            agent_type=request.agent_type,
            content=content,
            reasoning=reasoning,
            confidence=confidence,
            round=request.round,
            recommendation=recommendation,
        )


def register_template_analysts(registry: ProducerRegistry,
                               confidences: Optional[Dict[AgentType, float]] = None) -> ProducerRegistry:
    """Register a TemplateAnalyst for every agent type."""
    confidences = confidences or {}
    for agent_type in AgentType:
        registry.register(agent_type, TemplateAnalyst(agent_type, confidences.get(agent_type, 0.7)))
    return registry
