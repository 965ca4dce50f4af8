"""
Decision tracing for the extraction pipeline.

Every stage (preprocessing, strategy selection, pattern engine, AI chunks,
fallbacks, reconciliation, normalization) records a LayerDecision so a
result can be explained after the fact.

Usage:
    trace = ExtractionTrace()
    trace.add(LayerDecision(
        layer_name="strategy",
        decision=DecisionType.SELECT,
        output_value="ai_primary",
        evidence="structure_score=0.42 below fast-path threshold",
    ))
    print(trace.explain())
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class DecisionType(str, Enum):
    """Type of decision made by a pipeline layer."""
    EXTRACT = "extract"     # Contacts extracted
    SELECT = "select"       # Strategy chosen
    SKIP = "skip"           # Layer skipped (not applicable)
    RETRY = "retry"         # Request retried after a provider error
    FALLBACK = "fallback"   # Fell back to an alternative strategy
    ABORT = "abort"         # Remaining work abandoned (timeout, early exit, auth)
    MERGE = "merge"         # Candidate sets reconciled
    REJECT = "reject"       # Candidates dropped
    VALIDATE = "validate"   # AI sanity check of pattern output


@dataclass
class LayerDecision:
    """Single decision from one pipeline layer."""
    layer_name: str              # "preprocess", "strategy", "ai_chunk_2", ...
    decision: DecisionType
    output_value: Any = None
    confidence: Optional[float] = None
    evidence: str = ""           # Why this decision was made
    metadata: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "layer_name": self.layer_name,
            "decision": self.decision.value,
            "output_value": _serialize_value(self.output_value),
            "confidence": self.confidence,
            "evidence": self.evidence,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ExtractionTrace:
    """Ordered decision log for one extraction request."""
    decisions: list[LayerDecision] = field(default_factory=list)

    def add(self, decision: LayerDecision):
        self.decisions.append(decision)
        logger.debug(
            f"[{decision.layer_name}] {decision.decision.value}: {decision.evidence}"
        )

    def record(self, layer_name: str, decision: DecisionType, evidence: str = "", **kwargs):
        """Shorthand for add(LayerDecision(...))."""
        self.add(LayerDecision(layer_name=layer_name, decision=decision, evidence=evidence, **kwargs))

    def find(self, decision: DecisionType) -> list[LayerDecision]:
        return [d for d in self.decisions if d.decision == decision]

    def explain(self) -> str:
        """Human-readable summary of the decision path."""
        lines = []
        for i, d in enumerate(self.decisions, 1):
            line = f"{i}. [{d.layer_name}] {d.decision.value.upper()}"
            if d.output_value is not None:
                line += f" -> {_serialize_value(d.output_value)}"
            if d.evidence:
                line += f" ({d.evidence})"
            lines.append(line)
        return "\n".join(lines)

    def to_dicts(self) -> list[dict]:
        return [d.to_dict() for d in self.decisions]


def _serialize_value(value: Any) -> Any:
    """Serialize a value for JSON output."""
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _serialize_value(v) for k, v in value.items()}
    return str(value)
