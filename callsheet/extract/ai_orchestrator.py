"""
AI extraction orchestrator.

Sends call sheet text to a completion provider one chunk at a time:
- Single call when the text fits the single-call ceiling, otherwise
  section-aligned chunks (at most max_chunks)
- Every request (including retries) passes through the shared RateBudget
- Rate-limit and transient errors are retried with backoff; exhausted
  retries count as a failed chunk
- A response that is not {"contacts": [...]} makes that chunk contribute
  zero contacts; later chunks still run
- Auth failures stop the loop and disable AI for the request
- Early exit when nothing was found in the first min(3, total) chunks
- Chunks still pending at the request deadline are abandoned

Contacts are concatenated across chunks without deduplication.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..parse.chunker import ChunkingConfig, TextChunker
from ..parse.models import ChunkPlan, DocumentType
from ..parse.preprocessor import estimate_tokens
from .errors import (
    ExtractionError,
    ExtractionTimeout,
    ProviderAuthError,
    ProviderError,
    ResponseParseError,
)
from .llm_provider import (
    CompletionProvider,
    CompletionResponse,
    RateBudget,
    RateLimitConfig,
    call_with_retries,
)
from .observability import DecisionType, ExtractionTrace
from .prompts import (
    SYSTEM_PROMPT,
    VALIDATION_MAX_CONTACTS,
    VALIDATION_SYSTEM_PROMPT,
    build_chunk_prompt,
    build_validation_prompt,
    parse_contacts_response,
    parse_validation_response,
)
from .reconciliation import identity_keys
from .schemas import ContactCandidate

logger = logging.getLogger(__name__)


EARLY_EXIT_CHUNKS = 3
VALIDATION_MAX_OUTPUT_TOKENS = 1000


@dataclass
class AIExtractionOutcome:
    """Result of running the AI extractor over a document."""
    contacts: list[ContactCandidate] = field(default_factory=list)
    contacts_per_chunk: list[int] = field(default_factory=list)
    tokens_used: int = 0
    chunks_total: int = 0  # chunks in the plan before the max_chunks cap
    chunks_planned: int = 0  # chunks after the cap
    chunks_processed: int = 0
    chunks_dropped: int = 0
    failed_chunks: int = 0
    parse_failures: int = 0
    early_exit: bool = False
    timed_out: bool = False
    auth_failed: bool = False
    error: Optional[str] = None

    def zero_in_first(self, n: int) -> bool:
        """True when the first min(n, processed) processed chunks found nothing."""
        if not self.contacts_per_chunk:
            return False
        return sum(self.contacts_per_chunk[:n]) == 0


@dataclass
class AIValidationOutcome:
    """Result of the fast-path sanity check."""
    ok: bool = False
    checked: int = 0
    confirmed: int = 0
    confirmed_keys: set[str] = field(default_factory=set)
    confidence: Optional[float] = None
    tokens_used: int = 0
    error: Optional[str] = None


class AIExtractionOrchestrator:
    """
    Rate-limited, chunked LLM contact extraction.

    Usage:
        orchestrator = AIExtractionOrchestrator(provider, RateBudget())
        outcome = orchestrator.extract(text, chunked=True, deadline=clock() + 45)
    """

    def __init__(
        self,
        provider: CompletionProvider,
        rate_budget: RateBudget,
        rate_limit: Optional[RateLimitConfig] = None,
        max_output_tokens: int = 4000,
        temperature: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.rate_budget = rate_budget
        self.rate_limit = rate_limit or RateLimitConfig()
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------

    def plan(
        self,
        text: str,
        chunked: bool,
        chunk_size_chars: int = 4000,
        max_chunks: int = 20,
        boundaries: Optional[list[int]] = None,
    ) -> ChunkPlan:
        chunker = TextChunker(ChunkingConfig(chunk_size_chars=chunk_size_chars, max_chunks=max_chunks))
        if not chunked:
            return chunker.single_chunk(text)
        return chunker.chunk_text(text, boundaries=boundaries)

    def extract(
        self,
        text: str,
        chunked: bool = False,
        chunk_size_chars: int = 4000,
        max_chunks: int = 20,
        early_exit_on_zero: bool = True,
        deadline: Optional[float] = None,
        role_preferences: Optional[list[str]] = None,
        boundaries: Optional[list[int]] = None,
        trace: Optional[ExtractionTrace] = None,
        document_type: Optional[DocumentType] = None,
    ) -> AIExtractionOutcome:
        """
        Extract contacts with the model.

        Args:
            text: Normalized document text
            chunked: Split into section-aligned chunks instead of one call
            chunk_size_chars: Maximum characters per chunk
            max_chunks: Chunks beyond this count are not sent
            early_exit_on_zero: Stop if the first min(3, total) chunks find nothing
            deadline: Clock value after which remaining chunks are abandoned
            role_preferences: Roles to emphasize in the prompt
            boundaries: Section header offsets from the preprocessor
            trace: Decision trace to append to
            document_type: Classified document type for prompt guidance

        Returns:
            AIExtractionOutcome (never raises for provider or parse errors)
        """
        trace = trace or ExtractionTrace()
        plan = self.plan(text, chunked, chunk_size_chars, max_chunks, boundaries)
        outcome = AIExtractionOutcome(
            chunks_total=plan.total_chunks,
            chunks_planned=len(plan.chunks),
            chunks_dropped=plan.total_chunks - len(plan.chunks),
        )
        if plan.truncated:
            trace.record(
                "ai_chunking", DecisionType.SKIP,
                f"{outcome.chunks_dropped} chunks ({plan.dropped_chars} chars) beyond max_chunks={max_chunks}",
            )

        total = len(plan.chunks)
        early_exit_after = min(EARLY_EXIT_CHUNKS, total)

        for chunk in plan.chunks:
            layer = f"ai_chunk_{chunk.index + 1}"

            if deadline is not None and self._clock() >= deadline:
                outcome.timed_out = True
                trace.record(layer, DecisionType.ABORT, "request deadline reached")
                logger.warning(f"Deadline reached, abandoning chunks {chunk.index + 1}-{total}")
                break

            user_prompt = build_chunk_prompt(
                chunk.content,
                chunk_index=chunk.index,
                total_chunks=total,
                context_section=chunk.context_section,
                role_preferences=role_preferences,
                document_type=document_type,
            )
            estimated = estimate_tokens(SYSTEM_PROMPT) + estimate_tokens(user_prompt) + self.max_output_tokens

            try:
                response = self._request_with_retries(
                    SYSTEM_PROMPT, user_prompt, estimated, deadline, trace=trace, layer=layer,
                )
            except ProviderAuthError as e:
                outcome.auth_failed = True
                outcome.error = str(e)
                trace.record(layer, DecisionType.ABORT, f"provider auth failed: {e}")
                logger.error(f"AI provider rejected credentials, disabling AI for this request: {e}")
                break
            except ExtractionTimeout as e:
                outcome.timed_out = True
                trace.record(layer, DecisionType.ABORT, str(e))
                logger.warning(f"Chunk {chunk.index + 1}/{total} abandoned: {e}")
                break
            except ProviderError as e:
                response = None
                outcome.failed_chunks += 1
                trace.record(layer, DecisionType.SKIP, f"{type(e).__name__}: {e}")
                logger.warning(f"Chunk {chunk.index + 1}/{total} failed: {e}")

            items = []
            if response is not None:
                outcome.tokens_used += response.total_tokens or estimated
                try:
                    items = parse_contacts_response(response.content)
                except ResponseParseError as e:
                    outcome.failed_chunks += 1
                    outcome.parse_failures += 1
                    trace.record(layer, DecisionType.SKIP, f"unparseable response: {e}")
                    logger.warning(f"Chunk {chunk.index + 1}/{total}: {e}")

            found = [item.to_candidate() for item in items]
            outcome.contacts.extend(found)
            outcome.contacts_per_chunk.append(len(found))
            outcome.chunks_processed += 1
            if items:
                trace.record(layer, DecisionType.EXTRACT, f"{len(found)} contacts", output_value=len(found))

            if (
                early_exit_on_zero
                and outcome.chunks_processed == early_exit_after
                and outcome.chunks_processed < total
                and not outcome.contacts
            ):
                outcome.early_exit = True
                trace.record(
                    "ai_chunking", DecisionType.ABORT,
                    f"no contacts in first {early_exit_after} chunks, skipping {total - early_exit_after}",
                )
                logger.info(f"Early exit: no contacts after {early_exit_after} of {total} chunks")
                break

        logger.info(
            f"AI extraction: {len(outcome.contacts)} contacts from "
            f"{outcome.chunks_processed}/{total} chunks "
            f"({outcome.failed_chunks} failed, {outcome.tokens_used} tokens)"
        )
        return outcome

    def validate_contacts(
        self,
        contacts: list[ContactCandidate],
        text: str,
        deadline: Optional[float] = None,
        trace: Optional[ExtractionTrace] = None,
    ) -> AIValidationOutcome:
        """
        Ask the model to confirm pattern-extracted contacts.

        Only the first few contacts and a short excerpt are sent. Any failure
        returns ok=False and the caller keeps the unvalidated contacts.
        """
        checked = contacts[:VALIDATION_MAX_CONTACTS]
        outcome = AIValidationOutcome(checked=len(checked))
        if not checked:
            return outcome

        user_prompt = build_validation_prompt(text, checked)
        estimated = (
            estimate_tokens(VALIDATION_SYSTEM_PROMPT)
            + estimate_tokens(user_prompt)
            + VALIDATION_MAX_OUTPUT_TOKENS
        )
        try:
            response = self._request_with_retries(
                VALIDATION_SYSTEM_PROMPT, user_prompt, estimated, deadline,
                max_output_tokens=VALIDATION_MAX_OUTPUT_TOKENS,
                trace=trace,
                layer="ai_validation",
            )
            confirmed, confidence = parse_validation_response(response.content)
        except ExtractionError as e:
            outcome.error = str(e)
            logger.warning(f"AI validation failed, keeping unvalidated pattern contacts: {e}")
            return outcome
        except Exception as e:
            # SDK or response-shape failures outside the error taxonomy
            outcome.error = f"{type(e).__name__}: {e}"
            logger.exception(f"AI validation crashed, keeping unvalidated pattern contacts: {e}")
            return outcome

        keys: set[str] = set()
        for item in confirmed:
            keys |= identity_keys(item.to_candidate())

        outcome.ok = True
        outcome.confirmed_keys = keys
        outcome.confirmed = sum(1 for c in checked if identity_keys(c) & keys)
        outcome.confidence = confidence
        outcome.tokens_used = response.total_tokens or estimated
        logger.info(f"AI validation confirmed {outcome.confirmed}/{outcome.checked} contacts")
        return outcome

    # ------------------------------------------------------------------

    def _request_with_retries(
        self,
        system_prompt: str,
        user_prompt: str,
        estimated_tokens: int,
        deadline: Optional[float],
        max_output_tokens: Optional[int] = None,
        trace: Optional[ExtractionTrace] = None,
        layer: str = "ai_request",
    ) -> CompletionResponse:
        def attempt() -> CompletionResponse:
            if not self.rate_budget.acquire(estimated_tokens, deadline=deadline):
                raise ExtractionTimeout("rate budget wait would pass the deadline")
            response = self.provider.complete(
                system_prompt,
                user_prompt,
                max_output_tokens or self.max_output_tokens,
                self.temperature,
            )
            if response.total_tokens:
                self.rate_budget.record_usage(estimated_tokens, response.total_tokens)
            return response

        def record_retry(attempt_number: int, error: Exception, sleep_time: float):
            if trace is not None:
                trace.record(
                    layer, DecisionType.RETRY,
                    f"{type(error).__name__}: {error}; retry {attempt_number} in {sleep_time:.1f}s",
                    metadata={"attempt": attempt_number, "sleep_seconds": round(sleep_time, 3)},
                )

        return call_with_retries(
            attempt,
            rate_limit=self.rate_limit,
            sleep=self._sleep,
            clock=self._clock,
            deadline=deadline,
            on_retry=record_retry,
        )
