"""
Synthesis of per-agent opinions into one result.
"""

from collections import Counter
from typing import Dict, List, Optional, Sequence

from ..models.core import AgentType, ConsensusLevel, Opinion, Recommendation, Result
from ..models.errors import AllParticipantsFailed, PartialFailure
from ..utils.config import ConsensusConfig
from ..utils.logging import get_logger
from .consensus import weighted_consensus

# Price band around the current price per recommendation.
TARGET_PRICE_FACTORS = {
    Recommendation.STRONG_BUY: 1.2,
    Recommendation.BUY: 1.1,
    Recommendation.HOLD: 1.0,
    Recommendation.SELL: 0.9,
    Recommendation.STRONG_SELL: 0.8,
}


def majority_recommendation(opinions: Sequence[Opinion]) -> Recommendation:
    """Most frequent recommendation, the earliest one on ties; HOLD when nobody gave one."""
    counts = Counter(o.recommendation for o in opinions if o.recommendation is not None)
    if not counts:
        return Recommendation.HOLD
    # Counter preserves first-seen order, and max keeps the first of equal counts.
    return max(counts, key=lambda rec: counts[rec])


def target_price(current_price: float, recommendation: Recommendation) -> float:
    if current_price < 0:
        raise ValueError("current_price must not be negative")
    return round(current_price * TARGET_PRICE_FACTORS[recommendation], 4)


class Synthesizer:
    """Merges opinions into a Result with a confidence-weighted consensus level."""

    def __init__(self, config: Optional[ConsensusConfig] = None):
        self.config = config or ConsensusConfig()
        self.logger = get_logger(f"{__name__}.Synthesizer")

    def consensus_level(self, score: float) -> ConsensusLevel:
        if score > self.config.high_consensus:
            return ConsensusLevel.HIGH
        if score > self.config.medium_consensus:
            return ConsensusLevel.MEDIUM
        return ConsensusLevel.LOW

    def extract_insights(self, opinions: Sequence[Opinion]) -> List[str]:
        """High-confidence opinions first, then content that recurs across opinions."""
        insights: List[str] = []
        for opinion in opinions:
            if opinion.confidence > self.config.high_confidence:
                insights.append(f"High-confidence insight from {opinion.agent_id}: {opinion.content}")

        prefix_length = self.config.insight_prefix_length
        prefixes = Counter(o.content[:prefix_length] for o in opinions)
        for prefix, count in prefixes.items():
            if count >= 2:
                insights.append(f"Recurring insight ({count} opinions): {prefix}")

        return insights[:self.config.max_insights]

    def build_synthesis(self, topic: str, opinions: Sequence[Opinion],
                        recommendation: Recommendation, confidence: float) -> str:
        groups: Dict[str, List[Opinion]] = {}
        for opinion in opinions:
            key = opinion.agent_type.value if isinstance(opinion.agent_type, AgentType) else "unspecified"
            groups.setdefault(key, []).append(opinion)

        paragraphs = [f"Collaborative analysis of '{topic}'."]
        for agent_type, grouped in groups.items():
            lines = "; ".join(f"{o.agent_id} (confidence {o.confidence:.2f}): {o.content}" for o in grouped)
            paragraphs.append(f"{agent_type.capitalize()} perspective: {lines}")

        participants = len({o.agent_id for o in opinions})
        paragraphs.append(
            f"Overall recommendation: {recommendation.value}, based on {participants} "
            f"participating agents with an average confidence of {confidence:.2f}."
        )
        return "\n\n".join(paragraphs)

    def synthesize(self, opinions: Sequence[Opinion],
                   partial_failures: Sequence[PartialFailure] = (),
                   topic: str = "",
                   round_consensus: Sequence[float] = (),
                   current_price: Optional[float] = None) -> Result:
        """
        Build the result of a task.

        Args:
            opinions: Every opinion produced across all rounds
            partial_failures: Failures recorded during execution
            topic: Subject used in the synthesis text
            round_consensus: Per-round consensus scores of multi-round strategies
            current_price: Price of the analysed security, banded into a target price

        Returns:
            Result: Immutable synthesized outcome

        Raises:
            AllParticipantsFailed: If there are no opinions
            ValueError: If current_price is negative
        """
        if not opinions:
            raise AllParticipantsFailed("No opinions to synthesize", failures=partial_failures)

        confidence = sum(o.confidence for o in opinions) / len(opinions)
        score = weighted_consensus(opinions)
        recommendation = majority_recommendation(opinions)
        participants = {o.agent_id for o in opinions}
        failed = {f.agent_id for f in partial_failures} - participants

        result = Result(
            recommendation=recommendation,
            confidence=min(1.0, confidence),
            consensus_score=score,
            consensus_level=self.consensus_level(score),
            participant_count=len(participants),
            failed_count=len(failed),
            key_insights=self.extract_insights(opinions),
            synthesis=self.build_synthesis(topic, opinions, recommendation, confidence),
            round_consensus=list(round_consensus),
            target_price=None if current_price is None else target_price(current_price, recommendation),
        )
        self.logger.info(
            "Synthesized result",
            recommendation=recommendation.value,
            confidence=round(result.confidence, 3),
            consensus=result.consensus_level.value,
            participants=result.participant_count
        )
        return result
