"""
Contact extraction package for call sheets.

This package extracts contacts from normalized call sheet text with a
rule-table pattern engine and a rate-limited LLM orchestrator, picks a
strategy per document, and reconciles, normalizes and scores the result.

The pipeline entry point, ContactExtractionEngine, lives in
callsheet.extract.engine; it depends on the service layer and is not
imported here.
"""

from .schemas import (
    Strategy,
    ContactSource,
    ContactCandidate,
    ExtractionMetadata,
    ExtractionResult,
    ExtractionRequest,
    AIContact,
)

from .errors import (
    ExtractionError,
    InputError,
    ProviderError,
    ProviderAuthError,
    ProviderRateLimited,
    TransientProviderError,
    ProviderRequestError,
    ResponseParseError,
    ExtractionTimeout,
    AdmissionRejected,
    Ok,
    RecoverableErr,
    FatalErr,
    Step,
    run_steps,
)

from .patterns import (
    PatternRule,
    PATTERN_RULES,
    PatternExtractor,
    PatternExtractionResult,
    extract_with_patterns,
)

from .normalization import (
    normalize_name,
    normalize_phone,
    normalize_role,
    normalize_email,
    normalize_contacts,
    ROLE_SYNONYMS,
)

from .reconciliation import (
    dedup_key,
    merge_candidates,
    deduplicate,
    reconcile,
    score_quality,
    ReconciliationReport,
    QualityScore,
)

from .strategy import (
    StrategySelector,
    StrategyDecision,
    SelectorThresholds,
)

from .llm_provider import (
    LLMProvider,
    RateLimitConfig,
    RateBudget,
    CompletionProvider,
    CompletionResponse,
    OpenAICompletionProvider,
    AnthropicCompletionProvider,
    create_completion_provider,
    call_with_retries,
)

from .observability import (
    DecisionType,
    LayerDecision,
    ExtractionTrace,
)

from .ai_orchestrator import (
    AIExtractionOrchestrator,
    AIExtractionOutcome,
    AIValidationOutcome,
)
