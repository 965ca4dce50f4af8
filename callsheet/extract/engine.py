"""
Contact extraction engine: the pipeline entry point.

Pipeline:
1. Validate input and resolve per-request options (InputError -> success=False)
2. Normalize text, analyze structure
3. Run the pattern engine (always; cheap and offline)
4. Select a strategy
5. Acquire an admission permit before any AI work (rejection -> pattern only)
6. Run the strategy as an ordered step pipeline:
     AI extraction -> pattern-primary with AI supplement -> pattern only
   each step returning Ok / RecoverableErr / FatalErr
7. Reconcile, score, normalize, and return an ExtractionResult

Apart from InputError every failure is absorbed, so a well-formed
ExtractionResult always comes back.
"""

import dataclasses
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from ..parse.models import RawDocument, StructureAnalysis
from ..parse.preprocessor import analyze_structure, estimate_tokens, normalize_text
from ..service.admission import AdmissionController, Permit
from ..service.cache import ExtractionCache
from ..service.config import EngineConfig, ExtractionOptions
from .ai_orchestrator import AIExtractionOrchestrator, AIExtractionOutcome, AIValidationOutcome
from .errors import (
    AdmissionRejected,
    FatalErr,
    InputError,
    Ok,
    RecoverableErr,
    Step,
    StepOutcome,
    run_steps,
)
from .llm_provider import CompletionProvider, RateBudget, RateLimitConfig, create_completion_provider
from .normalization import normalize_contacts
from .observability import DecisionType, ExtractionTrace
from .patterns import PatternExtractionResult, PatternExtractor
from .reconciliation import ReconciliationReport, identity_keys, reconcile, score_quality
from .schemas import ExtractionMetadata, ExtractionRequest, ExtractionResult, Strategy
from .strategy import SelectorThresholds, StrategyDecision, StrategySelector, uses_ai

logger = logging.getLogger(__name__)


UNCONFIRMED_CONFIDENCE_FACTOR = 0.85


@dataclass
class _RunState:
    """Mutable bookkeeping for one request's strategy pipeline."""
    text: str
    options: ExtractionOptions
    analysis: Optional[StructureAnalysis]
    pattern: PatternExtractionResult
    decision: StrategyDecision
    deadline: float
    trace: ExtractionTrace
    strategy: Strategy
    ai_enabled: bool = True
    ai_outcome: Optional[AIExtractionOutcome] = None
    validation: Optional[AIValidationOutcome] = None
    fallback_reasons: list[str] = field(default_factory=list)
    confidence_override: Optional[float] = None
    scoring_report: Optional[ReconciliationReport] = None


class ContactExtractionEngine:
    """
    Adaptive pattern/AI contact extractor.

    Usage:
        engine = create_engine()
        result = engine.extract("PHOTOGRAPHER: Jane Doe / 555-123-4567 / jane@x.com")
        for contact in result.contacts:
            print(contact.name, contact.role, contact.phone)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        provider: Optional[CompletionProvider] = None,
        rate_budget: Optional[RateBudget] = None,
        admission: Optional[AdmissionController] = None,
        cache: Optional[ExtractionCache] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or EngineConfig()
        self.provider = provider
        self.admission = admission
        self.cache = cache
        self._clock = clock

        rl = self.config.rate_limit
        self.rate_limit = RateLimitConfig(
            requests_per_minute=rl.requests_per_minute,
            tokens_per_minute=rl.tokens_per_minute,
            max_retries=rl.max_retries,
            initial_retry_delay=rl.initial_retry_delay,
            max_retry_delay=rl.max_retry_delay,
        )
        self.rate_budget = rate_budget or RateBudget.from_config(self.rate_limit, clock=clock, sleep=sleep)

        self.orchestrator: Optional[AIExtractionOrchestrator] = None
        if provider is not None:
            self.orchestrator = AIExtractionOrchestrator(
                provider,
                self.rate_budget,
                rate_limit=self.rate_limit,
                max_output_tokens=self.config.provider.max_output_tokens,
                temperature=self.config.provider.temperature,
                clock=clock,
                sleep=sleep,
            )

        self.pattern_extractor = PatternExtractor()

    @property
    def ai_available(self) -> bool:
        return self.orchestrator is not None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def extract(
        self,
        request: Union[ExtractionRequest, RawDocument, str],
        user_id: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Extract contacts from decoded document text.

        Args:
            request: ExtractionRequest, RawDocument, or plain text
            user_id: Caller identity for per-user admission control

        Returns:
            ExtractionResult; success=False only for unusable input
        """
        start = self._clock()
        trace = ExtractionTrace()

        if isinstance(request, str):
            request = ExtractionRequest(text=request)
        elif isinstance(request, RawDocument):
            request = ExtractionRequest(
                text=request.text,
                mime_hint=request.mime_hint,
                file_name_hint=request.file_name_hint,
            )

        try:
            options = self.resolve_options(request)
            text = self._validate_input(request.text, options)
        except InputError as e:
            logger.warning(f"Rejected input: {e}")
            return self._failure(str(e), start, trace)

        cache_key = None
        if self.cache is not None:
            cache_key = ExtractionCache.make_key(text, self._options_fingerprint(options))
            cached = self.cache.get(cache_key)
            if cached is not None:
                metadata = cached.metadata.model_copy(update={"cached": True})
                return cached.model_copy(update={"metadata": metadata})

        logger.info(
            f"Extracting contacts from {request.file_name_hint or 'document'} "
            f"({len(text)} chars, AI {'on' if self.ai_available else 'off'})"
        )

        analysis = self._analyze(text, trace)
        pattern = self.pattern_extractor.extract(text)
        trace.record(
            "pattern_engine", DecisionType.EXTRACT,
            f"{len(pattern.contacts)} contacts from {pattern.drafts} drafts"
            + (f" (error: {pattern.error})" if pattern.error else ""),
            output_value=len(pattern.contacts),
            confidence=pattern.confidence,
        )

        decision = self._select(analysis, pattern, text, options)
        trace.record("strategy", DecisionType.SELECT, decision.reason, output_value=decision.strategy)

        state = _RunState(
            text=text,
            options=options,
            analysis=analysis,
            pattern=pattern,
            decision=decision,
            deadline=start + options.max_processing_time_ms / 1000.0,
            trace=trace,
            strategy=decision.strategy,
            ai_enabled=self.ai_available,
        )

        permit = self._admit(state, user_id)
        try:
            outcome, _, reasons = run_steps(self._steps_for(state))
        finally:
            if permit is not None:
                permit.release()
        state.fallback_reasons.extend(reasons)

        if isinstance(outcome, FatalErr):
            return self._failure(str(outcome.error), start, trace)
        if not isinstance(outcome, Ok):
            # Every pipeline ends in the pattern-only step, which always succeeds
            raise RuntimeError(f"Strategy pipeline ended without a result: {outcome}")

        result = self._finalize(state, outcome.value, start)
        if self.cache is not None and cache_key is not None:
            self.cache.put(cache_key, result)
        return result

    def resolve_options(self, request: ExtractionRequest) -> ExtractionOptions:
        """Merge request overrides onto configured defaults, validated once."""
        try:
            return self.config.extraction.with_overrides(
                max_processing_time_ms=request.max_processing_time_ms,
                max_chunks=request.max_chunks,
                chunk_size_chars=request.chunk_size_chars,
                early_exit_on_zero=request.early_exit_on_zero,
                role_preferences=request.role_preferences,
            )
        except ValueError as e:
            raise InputError(f"Invalid extraction options: {e}") from e

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def _validate_input(self, raw_text: str, options: ExtractionOptions) -> str:
        if not isinstance(raw_text, str):
            raise InputError(f"Document text must be a string, got {type(raw_text).__name__}")
        if len(raw_text) > options.max_input_chars:
            raise InputError(
                f"Document text is {len(raw_text)} chars, over the {options.max_input_chars} limit"
            )
        text = normalize_text(raw_text)
        if not text:
            raise InputError("Document text is empty")
        return text

    def _analyze(self, text: str, trace: ExtractionTrace) -> Optional[StructureAnalysis]:
        try:
            analysis = analyze_structure(text)
        except Exception as e:
            logger.exception(f"Structure analysis failed: {e}")
            trace.record("preprocess", DecisionType.SKIP, f"structure analysis failed: {e}")
            return None
        trace.record(
            "preprocess", DecisionType.EXTRACT,
            f"structure_score={analysis.structure_score:.2f}, tabular={analysis.is_tabular}, "
            f"{len(analysis.section_boundaries)} section headers, "
            f"type={analysis.document_type.value} ({analysis.document_type_confidence:.2f})",
            output_value=analysis.structure_score,
        )
        return analysis

    def _select(
        self,
        analysis: Optional[StructureAnalysis],
        pattern: PatternExtractionResult,
        text: str,
        options: ExtractionOptions,
    ) -> StrategyDecision:
        selector = StrategySelector(SelectorThresholds(
            structure_score=options.fast_path_structure_threshold,
            pattern_confidence=options.fast_path_confidence_threshold,
            single_call_max_tokens=self.config.provider.single_call_max_tokens,
        ))
        if analysis is None:
            return selector.select_on_failure(self.ai_available)
        return selector.select(analysis, pattern.confidence, estimate_tokens(text), self.ai_available)

    def _admit(self, state: _RunState, user_id: Optional[str]) -> Optional[Permit]:
        """Acquire a permit before AI work; on rejection the request goes pattern-only."""
        needs_ai = state.ai_enabled and (
            uses_ai(state.strategy) or state.options.ai_sanity_validation
        )
        if not needs_ai or self.admission is None:
            return None
        try:
            return self.admission.acquire(user_id, timeout=self.config.admission.acquire_timeout_seconds)
        except AdmissionRejected as e:
            state.ai_enabled = False
            state.fallback_reasons.append("admission_rejected")
            state.trace.record("admission", DecisionType.FALLBACK, f"{e}; continuing pattern-only")
            logger.warning(f"Admission rejected for {user_id or 'anonymous'}: {e}")
            return None

    def _steps_for(self, state: _RunState) -> list[Step]:
        """Ordered steps for the chosen strategy (exhaustive over Strategy)."""
        pattern_only = Step("pattern_only", lambda prev: self._pattern_only_step(state, prev))

        if not state.ai_enabled:
            return [pattern_only]

        strategy = state.strategy
        if strategy == Strategy.PATTERN_FAST_PATH:
            return [Step("pattern_fast_path", lambda prev: self._fast_path_step(state)), pattern_only]
        elif strategy in (Strategy.AI_PRIMARY, Strategy.CHUNKED, Strategy.HYBRID):
            return [
                Step("ai_extraction", lambda prev: self._ai_step(state)),
                Step("pattern_primary_with_ai_supplement", lambda prev: self._supplement_step(state, prev)),
                pattern_only,
            ]
        elif strategy == Strategy.PATTERN_PRIMARY_WITH_AI_SUPPLEMENT:
            return [
                Step("pattern_primary_with_ai_supplement", lambda prev: self._supplement_step(state, prev)),
                pattern_only,
            ]
        raise ValueError(f"Unhandled strategy: {strategy}")

    def _ai_step(self, state: _RunState) -> StepOutcome:
        options = state.options
        chunked = estimate_tokens(state.text) >= self.config.provider.single_call_max_tokens
        try:
            outcome = self.orchestrator.extract(
                state.text,
                chunked=chunked,
                chunk_size_chars=options.chunk_size_chars,
                max_chunks=options.max_chunks,
                early_exit_on_zero=options.early_exit_on_zero,
                deadline=state.deadline,
                role_preferences=options.role_preferences or None,
                boundaries=list(state.analysis.section_boundaries) if state.analysis else None,
                trace=state.trace,
                document_type=state.analysis.document_type if state.analysis else None,
            )
        except Exception as e:
            logger.exception(f"AI extraction crashed: {e}")
            return RecoverableErr("ai_error", e)

        state.ai_outcome = outcome
        if outcome.auth_failed:
            state.ai_enabled = False
            return RecoverableErr("ai_auth_failed")

        n = options.zero_contact_fallback_chunks
        if outcome.zero_in_first(n) and state.pattern.contacts:
            return RecoverableErr(f"ai_found_no_contacts_in_first_{min(n, outcome.chunks_processed)}_chunks")

        report = reconcile(outcome.contacts, state.pattern.contacts, ai_primary=True)
        state.trace.record(
            "reconciliation", DecisionType.MERGE,
            f"{report.matches} matches, {report.discrepancies} discrepancies",
            output_value=len(report.contacts),
        )
        return Ok(report)

    def _supplement_step(self, state: _RunState, previous: Optional[RecoverableErr]) -> StepOutcome:
        if not state.ai_enabled and previous is not None:
            # AI disabled mid-request (auth failure): straight to pattern only
            return previous
        ai_contacts = state.ai_outcome.contacts if state.ai_outcome else []
        if not state.pattern.contacts and not ai_contacts:
            return RecoverableErr("no contacts from pattern or AI extraction")

        state.strategy = Strategy.PATTERN_PRIMARY_WITH_AI_SUPPLEMENT
        report = reconcile(
            ai_contacts if state.ai_outcome else None,
            state.pattern.contacts,
            ai_primary=False,
        )
        state.trace.record(
            "fallback", DecisionType.FALLBACK,
            f"pattern-primary with AI supplement ({previous.reason if previous else 'selected'})",
            output_value=len(report.contacts),
        )
        return Ok(report)

    def _pattern_only_step(self, state: _RunState, previous: Optional[RecoverableErr]) -> StepOutcome:
        state.strategy = Strategy.PATTERN_FAST_PATH
        ai_contacts = None
        if state.ai_outcome is not None and state.ai_outcome.contacts:
            ai_contacts = state.ai_outcome.contacts
        report = reconcile(ai_contacts, state.pattern.contacts, ai_primary=False)
        if previous is not None:
            state.trace.record("fallback", DecisionType.FALLBACK, f"pattern only ({previous.reason})")
        return Ok(report)

    def _fast_path_step(self, state: _RunState) -> StepOutcome:
        report = reconcile(None, state.pattern.contacts, ai_primary=False)
        if not (state.options.ai_sanity_validation and report.contacts):
            return Ok(report)

        validation = self.orchestrator.validate_contacts(
            report.contacts, state.text, state.deadline, trace=state.trace,
        )
        state.validation = validation
        if not validation.ok:
            state.trace.record("ai_validation", DecisionType.SKIP, f"validation failed: {validation.error}")
            return Ok(report)

        adjusted = []
        for index, contact in enumerate(report.contacts):
            if index < validation.checked and not identity_keys(contact) & validation.confirmed_keys:
                contact = contact.model_copy(update={
                    "confidence": round(contact.confidence * UNCONFIRMED_CONFIDENCE_FACTOR, 4),
                })
            adjusted.append(contact)
        report.contacts = adjusted
        report.matches = validation.confirmed
        report.compared = True
        state.scoring_report = dataclasses.replace(report, pattern_contact_count=validation.checked)
        state.confidence_override = validation.confidence
        state.trace.record(
            "ai_validation", DecisionType.VALIDATE,
            f"AI confirmed {validation.confirmed}/{validation.checked} pattern contacts",
            confidence=validation.confidence,
        )
        return Ok(report)

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _finalize(self, state: _RunState, report: ReconciliationReport, start: float) -> ExtractionResult:
        quality = score_quality(report.contacts, state.scoring_report or report)
        contacts = normalize_contacts(report.contacts, state.options.role_preferences)
        state.trace.record(
            "normalization", DecisionType.REJECT,
            f"{len(report.contacts)} reconciled -> {len(contacts)} valid contacts",
            output_value=len(contacts),
        )

        confidence = quality.confidence
        if state.confidence_override is not None:
            confidence = state.confidence_override
        if not contacts:
            confidence = 0.0

        ai = state.ai_outcome
        validation = state.validation
        tokens = None
        if ai is not None or validation is not None:
            tokens = (ai.tokens_used if ai else 0) + (validation.tokens_used if validation else 0)

        metadata = ExtractionMetadata(
            strategy=state.strategy,
            processing_time_ms=int((self._clock() - start) * 1000),
            quality_score=quality.quality_score,
            confidence=confidence,
            tokens_used=tokens,
            pattern_matches=report.matches if report.compared else None,
            ai_contacts=report.ai_contact_count if ai is not None else None,
            discrepancies=report.discrepancies if report.compared else None,
            chunks_processed=ai.chunks_processed if ai else None,
            chunks_total=ai.chunks_total if ai else None,
            failed_chunks=ai.failed_chunks if ai else None,
            timed_out=bool(ai and ai.timed_out),
            early_exit=bool(ai and ai.early_exit),
            ai_validated=bool(validation and validation.ok),
            fallback_reason="; ".join(dict.fromkeys(state.fallback_reasons)) or None,
            structure_score=state.analysis.structure_score if state.analysis else None,
            document_type=state.analysis.document_type.value if state.analysis else None,
            decisions=state.trace.to_dicts(),
        )
        logger.info(
            f"Extraction complete: {len(contacts)} contacts via {state.strategy.value} "
            f"(quality={quality.quality_score:.2f}, confidence={confidence:.2f}, "
            f"{metadata.processing_time_ms}ms)"
        )
        return ExtractionResult(success=True, contacts=contacts, metadata=metadata)

    def _failure(self, message: str, start: float, trace: ExtractionTrace) -> ExtractionResult:
        metadata = ExtractionMetadata(
            strategy=Strategy.PATTERN_FAST_PATH,
            processing_time_ms=int((self._clock() - start) * 1000),
            decisions=trace.to_dicts(),
        )
        return ExtractionResult(success=False, contacts=[], metadata=metadata, error=message)

    def _options_fingerprint(self, options: ExtractionOptions) -> str:
        payload = "|".join([
            options.model_dump_json(),
            self.config.provider.model if self.ai_available else "pattern-only",
            str(self.config.provider.single_call_max_tokens),
        ])
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def create_engine(
    config: Optional[EngineConfig] = None,
    provider: Optional[CompletionProvider] = None,
    pattern_only: bool = False,
) -> ContactExtractionEngine:
    """
    Build an engine with provider, rate budget, admission control and cache
    wired from config.

    Args:
        config: Engine configuration (defaults if None)
        provider: Completion provider; created from config when None
        pattern_only: Skip provider creation entirely

    Returns:
        ContactExtractionEngine
    """
    config = config or EngineConfig()
    if provider is None and not pattern_only:
        provider = create_completion_provider(
            provider=config.provider.provider,
            model=config.provider.model,
            timeout=config.provider.request_timeout_seconds,
        )

    return ContactExtractionEngine(
        config=config,
        provider=None if pattern_only else provider,
        admission=AdmissionController.from_settings(config.admission),
        cache=ExtractionCache.from_settings(config.cache),
    )
