"""
Tests for strategy selection and the step pipeline runner.
"""

import pytest

from callsheet.extract.errors import (
    FatalErr,
    InputError,
    Ok,
    RecoverableErr,
    Step,
    run_steps,
)
from callsheet.extract.schemas import Strategy
from callsheet.extract.strategy import (
    SelectorThresholds,
    StrategySelector,
    uses_ai,
)
from callsheet.parse.models import StructureAnalysis


TABULAR = StructureAnalysis(is_tabular=True, structure_score=0.95)
FREE_FORM = StructureAnalysis(is_tabular=False, structure_score=0.4)


class TestStrategySelector:
    """Tests for StrategySelector.select()."""

    def test_no_ai(self):
        """Without a provider the fast path is the only option."""
        decision = StrategySelector().select(FREE_FORM, 0.1, 50000, ai_available=False)
        assert decision.strategy == Strategy.PATTERN_FAST_PATH

    def test_fast_path(self):
        """Tabular, well-structured, confident pattern results skip AI extraction."""
        decision = StrategySelector().select(TABULAR, 0.95, 500)
        assert decision.strategy == Strategy.PATTERN_FAST_PATH

    def test_hybrid(self):
        """Tabular layout with weak pattern results goes hybrid."""
        decision = StrategySelector().select(TABULAR, 0.6, 500)
        assert decision.strategy == Strategy.HYBRID

    def test_thresholds_are_strict(self):
        """Exactly 0.9 is not above the threshold."""
        at_threshold = StructureAnalysis(is_tabular=True, structure_score=0.9)
        assert StrategySelector().select(at_threshold, 0.95, 500).strategy == Strategy.AI_PRIMARY
        assert StrategySelector().select(TABULAR, 0.9, 500).strategy == Strategy.HYBRID

    def test_not_tabular_never_fast(self):
        """High scores without a tabular layout still go to AI."""
        analysis = StructureAnalysis(is_tabular=False, structure_score=0.99)
        assert StrategySelector().select(analysis, 0.99, 500).strategy == Strategy.AI_PRIMARY

    def test_token_ceiling(self):
        """Documents at or above the single-call ceiling are chunked."""
        selector = StrategySelector(SelectorThresholds(single_call_max_tokens=1000))
        assert selector.select(FREE_FORM, 0.2, 999).strategy == Strategy.AI_PRIMARY
        assert selector.select(FREE_FORM, 0.2, 1000).strategy == Strategy.CHUNKED

    def test_deterministic(self):
        """Identical inputs give identical decisions."""
        selector = StrategySelector()
        first = selector.select(TABULAR, 0.6, 500)
        assert all(selector.select(TABULAR, 0.6, 500) == first for _ in range(5))

    def test_reason_given(self):
        """Each decision explains itself."""
        decision = StrategySelector().select(FREE_FORM, 0.2, 20000)
        assert "20000" in decision.reason

    def test_on_failure(self):
        """Analysis failure defaults to AI primary when AI is available."""
        selector = StrategySelector()
        assert selector.select_on_failure(True).strategy == Strategy.AI_PRIMARY
        assert selector.select_on_failure(False).strategy == Strategy.PATTERN_FAST_PATH


class TestUsesAI:
    """Tests for uses_ai()."""

    def test_every_strategy(self):
        """Only the fast path avoids AI extraction."""
        assert not uses_ai(Strategy.PATTERN_FAST_PATH)
        for strategy in Strategy:
            if strategy != Strategy.PATTERN_FAST_PATH:
                assert uses_ai(strategy)

    def test_unknown(self):
        """Values outside the enum are rejected."""
        with pytest.raises(ValueError):
            uses_ai("not_a_strategy")


class TestRunSteps:
    """Tests for run_steps()."""

    def test_first_ok_wins(self):
        """Later steps do not run after an Ok."""
        ran = []

        def step(name, outcome):
            def run(previous):
                ran.append(name)
                return outcome
            return Step(name, run)

        outcome, name, reasons = run_steps([step("a", Ok(1)), step("b", Ok(2))])
        assert outcome == Ok(1)
        assert name == "a"
        assert reasons == []
        assert ran == ["a"]

    def test_recoverable_falls_through(self):
        """Recoverable failures pass to the next step with their reason."""
        seen = []

        def second(previous):
            seen.append(previous)
            return Ok("fallback")

        outcome, name, reasons = run_steps([
            Step("ai", lambda previous: RecoverableErr("ai_error")),
            Step("pattern", second),
        ])
        assert outcome.value == "fallback"
        assert name == "pattern"
        assert reasons == ["ai_error"]
        assert seen[0].reason == "ai_error"

    def test_fatal_stops(self):
        """A fatal error ends the pipeline."""
        outcome, name, _ = run_steps([
            Step("validate", lambda previous: FatalErr(InputError("empty"))),
            Step("never", lambda previous: Ok(None)),
        ])
        assert isinstance(outcome, FatalErr)
        assert name == "validate"

    def test_all_recoverable(self):
        """When every step falls through the last failure is returned."""
        outcome, _, reasons = run_steps([
            Step("a", lambda previous: RecoverableErr("x")),
            Step("b", lambda previous: RecoverableErr("y")),
        ])
        assert isinstance(outcome, RecoverableErr)
        assert reasons == ["x", "y"]

    def test_empty(self):
        """At least one step is required."""
        with pytest.raises(ValueError):
            run_steps([])
