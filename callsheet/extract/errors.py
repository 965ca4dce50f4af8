"""
Error taxonomy and step outcomes for the extraction pipeline.

Only InputError reaches the caller (as success=False). Provider, parse and
timeout errors are absorbed inside the pipeline: each strategy step returns
an outcome instead of raising, and run_steps() moves on to the next step
only when the previous one reports a recoverable failure.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExtractionError(Exception):
    """Base class for all extraction errors."""


class InputError(ExtractionError):
    """Empty or over-length input text. Surfaced to the caller."""


class ProviderError(ExtractionError):
    """Base class for errors raised by an AI completion provider."""


class ProviderAuthError(ProviderError):
    """Credentials rejected. Disables AI for the rest of the request."""


class ProviderRateLimited(ProviderError):
    """Provider throttled the request. Retried with backoff."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    """Network failure, timeout or 5xx. Retried with backoff."""


class ProviderRequestError(ProviderError):
    """Request rejected for a non-retryable reason (bad request, context too long)."""


class ResponseParseError(ExtractionError):
    """Model output was not the expected JSON object."""


class ExtractionTimeout(ExtractionError):
    """Request deadline passed before all work finished."""


class AdmissionRejected(ExtractionError):
    """Admission queue is full (backpressure)."""


RETRYABLE_ERRORS = (ProviderRateLimited, TransientProviderError)


# =============================================================================
# Step outcomes
# =============================================================================


@dataclass
class Ok(Generic[T]):
    """Step produced a usable result."""
    value: T


@dataclass
class RecoverableErr:
    """Step failed in a way the next step can make up for."""
    reason: str
    error: Optional[BaseException] = None
    partial: Any = None  # data gathered before failing, handed to the next step


@dataclass
class FatalErr:
    """Step failed and no later step should run."""
    error: ExtractionError


StepOutcome = Union[Ok, RecoverableErr, FatalErr]


@dataclass
class Step:
    """A named pipeline step. ``run`` receives the previous RecoverableErr (or None)."""
    name: str
    run: Callable[[Optional[RecoverableErr]], StepOutcome]


def run_steps(steps: list[Step]) -> tuple[StepOutcome, Optional[str], list[str]]:
    """
    Run steps in order until one returns Ok or FatalErr.

    Args:
        steps: Ordered strategy steps

    Returns:
        (final outcome, name of the step that produced it, fallback reasons
        collected from every RecoverableErr along the way)
    """
    if not steps:
        raise ValueError("run_steps() needs at least one step")

    reasons: list[str] = []
    previous: Optional[RecoverableErr] = None
    outcome: StepOutcome = RecoverableErr("no step ran")
    name: Optional[str] = None

    for step in steps:
        name = step.name
        outcome = step.run(previous)
        if isinstance(outcome, RecoverableErr):
            logger.warning(f"Step '{step.name}' fell through: {outcome.reason}")
            reasons.append(outcome.reason)
            previous = outcome
            continue
        return outcome, name, reasons

    return outcome, name, reasons
