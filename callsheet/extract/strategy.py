"""
Strategy selection.

A pure function of (structure analysis, pattern confidence, token estimate,
AI availability): identical inputs always give the same strategy.

Decision policy, one canonical threshold set (0.9 for skipping AI):
1. No AI provider                                   -> PATTERN_FAST_PATH
2. Tabular, structure > 0.9, pattern conf > 0.9     -> PATTERN_FAST_PATH
3. Tabular, structure > 0.9, pattern conf <= 0.9    -> HYBRID
4. Estimated tokens below the single-call ceiling   -> AI_PRIMARY
5. Otherwise                                        -> CHUNKED

PATTERN_PRIMARY_WITH_AI_SUPPLEMENT is never chosen up front; the engine
switches to it at run time when AI finds nothing in the first chunks but
the pattern engine did.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..parse.models import StructureAnalysis
from .schemas import Strategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyDecision:
    strategy: Strategy
    reason: str


@dataclass(frozen=True)
class SelectorThresholds:
    structure_score: float = 0.9
    pattern_confidence: float = 0.9
    single_call_max_tokens: int = 12000


class StrategySelector:
    """Chooses how a document is extracted. Never raises."""

    def __init__(self, thresholds: Optional[SelectorThresholds] = None):
        self.thresholds = thresholds or SelectorThresholds()

    def select(
        self,
        analysis: StructureAnalysis,
        pattern_confidence: float,
        estimated_tokens: int,
        ai_available: bool = True,
    ) -> StrategyDecision:
        """
        Pick a strategy for one document.

        Args:
            analysis: Preprocessor output
            pattern_confidence: Pattern engine self-confidence
            estimated_tokens: Token estimate of the normalized text
            ai_available: Whether a completion provider is configured

        Returns:
            StrategyDecision with a human-readable reason
        """
        t = self.thresholds

        if not ai_available:
            return StrategyDecision(Strategy.PATTERN_FAST_PATH, "no AI provider configured")

        structured = analysis.is_tabular and analysis.structure_score > t.structure_score
        if structured and pattern_confidence > t.pattern_confidence:
            return StrategyDecision(
                Strategy.PATTERN_FAST_PATH,
                f"tabular layout (score {analysis.structure_score:.2f}) and pattern "
                f"confidence {pattern_confidence:.2f} above {t.pattern_confidence}",
            )
        if structured:
            return StrategyDecision(
                Strategy.HYBRID,
                f"tabular layout (score {analysis.structure_score:.2f}) but pattern "
                f"confidence {pattern_confidence:.2f} not above {t.pattern_confidence}",
            )
        if estimated_tokens < t.single_call_max_tokens:
            return StrategyDecision(
                Strategy.AI_PRIMARY,
                f"{estimated_tokens} tokens fit a single call (< {t.single_call_max_tokens})",
            )
        return StrategyDecision(
            Strategy.CHUNKED,
            f"{estimated_tokens} tokens exceed single-call ceiling {t.single_call_max_tokens}",
        )

    def select_on_failure(self, ai_available: bool) -> StrategyDecision:
        """Default when structure analysis itself failed."""
        if ai_available:
            return StrategyDecision(Strategy.AI_PRIMARY, "structure analysis failed, AI available")
        return StrategyDecision(Strategy.PATTERN_FAST_PATH, "structure analysis failed, no AI")


def uses_ai(strategy: Strategy) -> bool:
    """Whether a strategy's primary step calls the AI extractor."""
    if strategy == Strategy.PATTERN_FAST_PATH:
        return False
    elif strategy in (
        Strategy.AI_PRIMARY,
        Strategy.CHUNKED,
        Strategy.HYBRID,
        Strategy.PATTERN_PRIMARY_WITH_AI_SUPPLEMENT,
    ):
        return True
    raise ValueError(f"Unhandled strategy: {strategy}")
