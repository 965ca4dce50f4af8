"""
Configuration management for the contact extraction engine.

Supports:
- Documented defaults for every setting (Pydantic models)
- Loading overrides from YAML and deep-merging them over the defaults
- Environment variable overrides (AI_MAX_CHUNKS, EXTRACTION_TIMEOUT, ...)
- Config validation with human-readable warnings
- Config hashing for cache keys and reproducibility
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Config Models
# =============================================================================


class ProviderSettings(BaseModel):
    """LLM provider settings."""

    model: str = "gpt-4o-mini"
    provider: Optional[str] = None  # openai | anthropic (auto-detected from model if None)
    max_output_tokens: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    single_call_max_tokens: int = Field(
        default=12000, gt=0,
        description="Documents estimated below this many tokens go out in one request",
    )
    request_timeout_seconds: float = Field(default=60.0, gt=0)


class RateLimitSettings(BaseModel):
    """Provider request/token budget."""

    requests_per_minute: Optional[int] = Field(default=3, gt=0)  # 3 RPM -> 20s between requests
    tokens_per_minute: Optional[int] = Field(default=60000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    initial_retry_delay: float = Field(default=2.0, ge=0.0)
    max_retry_delay: float = Field(default=60.0, ge=0.0)


class ExtractionOptions(BaseModel):
    """Per-request extraction options. Request fields override these defaults."""

    max_processing_time_ms: int = Field(default=45000, gt=0)
    max_chunks: int = Field(default=20, gt=0)
    chunk_size_chars: int = Field(default=4000, gt=0)
    early_exit_on_zero: bool = True
    zero_contact_fallback_chunks: int = Field(
        default=3, gt=0,
        description="Switch to pattern-primary when AI finds nothing in this many leading chunks",
    )
    fast_path_structure_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    fast_path_confidence_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    max_input_chars: int = Field(default=1_000_000, gt=0)
    ai_sanity_validation: bool = True
    role_preferences: list[str] = Field(default_factory=list)

    def with_overrides(self, **overrides: Any) -> "ExtractionOptions":
        """Copy with non-None overrides applied and re-validated."""
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ExtractionOptions.model_validate(values)


class AdmissionSettings(BaseModel):
    """Concurrency caps for simultaneous extractions."""

    global_limit: int = Field(default=10, gt=0)
    per_user_limit: int = Field(default=2, gt=0)
    max_queue_depth: int = Field(default=20, ge=0)
    acquire_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class CacheSettings(BaseModel):
    """Result cache sizing."""

    enabled: bool = True
    maxsize: int = Field(default=256, gt=0)
    ttl_seconds: float = Field(default=3600.0, gt=0)


class EngineConfig(BaseModel):
    """Complete engine configuration."""

    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    extraction: ExtractionOptions = Field(default_factory=ExtractionOptions)
    admission: AdmissionSettings = Field(default_factory=AdmissionSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @field_validator("provider", mode="before")
    @classmethod
    def _provider_from_name(cls, value: Any) -> Any:
        # Allow "provider: anthropic" shorthand in YAML
        if isinstance(value, str):
            return {"provider": value}
        return value

    def config_hash(self) -> str:
        """
        Generate hash of config for reproducibility tracking.

        Returns:
            SHA256 hash of serialized config (first 12 chars)
        """
        config_json = self.model_dump_json()
        return hashlib.sha256(config_json.encode()).hexdigest()[:12]


# =============================================================================
# Config Loading Functions
# =============================================================================


def load_yaml(path: Union[str, Path]) -> dict[str, Any]:
    """Load YAML file and return as dict."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.

    Args:
        base: Base dictionary
        override: Override dictionary

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env var -> (section, key, parser)
ENV_OVERRIDES = {
    "EXTRACTION_MODEL": ("provider", "model", str),
    "EXTRACTION_PROVIDER": ("provider", "provider", str),
    "AI_MAX_OUTPUT_TOKENS": ("provider", "max_output_tokens", int),
    "AI_REQUESTS_PER_MINUTE": ("rate_limit", "requests_per_minute", int),
    "AI_TOKENS_PER_MINUTE": ("rate_limit", "tokens_per_minute", int),
    "AI_MAX_CHUNKS": ("extraction", "max_chunks", int),
    "AI_CHUNK_SIZE": ("extraction", "chunk_size_chars", int),
    "AI_EARLY_EXIT_ON_ZERO_CONTACTS": ("extraction", "early_exit_on_zero", _env_bool),
    "EXTRACTION_TIMEOUT": ("extraction", "max_processing_time_ms", int),
    "MAX_CONCURRENT_EXTRACTIONS": ("admission", "global_limit", int),
    "MAX_CONCURRENT_PER_USER": ("admission", "per_user_limit", int),
}


def apply_env_overrides(config_dict: dict, environ: Optional[dict] = None) -> dict:
    """
    Overlay environment variables onto a config dict.

    Args:
        config_dict: Config values (not modified)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        New dict with overrides applied
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, dict] = {}
    for var, (section, key, parse) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            overrides.setdefault(section, {})[key] = parse(raw)
        except ValueError:
            logger.warning(f"Ignoring {var}={raw!r}: not a valid {parse.__name__}")
    if overrides:
        logger.info(f"Applied environment overrides: {sorted(overrides)}")
    return deep_merge(config_dict, overrides)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    use_env: bool = True,
    environ: Optional[dict] = None,
) -> EngineConfig:
    """
    Load engine configuration.

    Defaults come from the Pydantic models; the YAML file (if given) is
    deep-merged over them, then environment variables over that.

    Args:
        config_path: Optional YAML file
        use_env: Apply environment variable overrides
        environ: Environment mapping for overrides (defaults to os.environ)

    Returns:
        EngineConfig with all settings resolved
    """
    config_dict = EngineConfig().model_dump()

    if config_path is not None:
        file_dict = load_yaml(config_path)
        config_dict = deep_merge(config_dict, file_dict)
        logger.info(f"Merged config from {config_path}")

    if use_env:
        config_dict = apply_env_overrides(config_dict, environ)

    config = EngineConfig.model_validate(config_dict)
    logger.info(f"Loaded config (hash: {config.config_hash()})")
    return config


def save_config(config: EngineConfig, output_path: Union[str, Path]) -> Path:
    """Save resolved config to YAML file."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w", encoding="utf-8") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)

    logger.info(f"Saved config to {output_path}")
    return output_path


# =============================================================================
# Config Validation
# =============================================================================


def validate_config(config: EngineConfig) -> list[str]:
    """
    Validate config and return list of warnings/issues.

    Args:
        config: EngineConfig to validate

    Returns:
        List of warning messages (empty if all good)
    """
    warnings = []

    valid_providers = [None, "openai", "anthropic"]
    if config.provider.provider not in valid_providers:
        warnings.append(
            f"Invalid provider: {config.provider.provider}. "
            f"Valid options: {valid_providers[1:]}"
        )

    extraction = config.extraction
    if extraction.chunk_size_chars < 500:
        warnings.append(
            f"chunk_size_chars={extraction.chunk_size_chars} is very low, "
            "contacts may be split across chunks"
        )

    if extraction.chunk_size_chars / 4 > config.provider.single_call_max_tokens:
        warnings.append(
            f"chunk_size_chars={extraction.chunk_size_chars} exceeds the single-call "
            f"ceiling of {config.provider.single_call_max_tokens} tokens"
        )

    rpm = config.rate_limit.requests_per_minute
    if rpm:
        worst_case_ms = extraction.max_chunks * 60000 / rpm
        if worst_case_ms > extraction.max_processing_time_ms:
            warnings.append(
                f"max_chunks={extraction.max_chunks} at {rpm} RPM needs up to "
                f"{worst_case_ms / 1000:.0f}s, longer than max_processing_time_ms="
                f"{extraction.max_processing_time_ms}; large documents will time out"
            )

    if config.admission.per_user_limit > config.admission.global_limit:
        warnings.append(
            f"per_user_limit={config.admission.per_user_limit} exceeds "
            f"global_limit={config.admission.global_limit}"
        )

    if extraction.fast_path_confidence_threshold < 0.7:
        warnings.append(
            f"fast_path_confidence_threshold={extraction.fast_path_confidence_threshold} "
            "is low, AI will be skipped for weak pattern results"
        )

    return warnings
