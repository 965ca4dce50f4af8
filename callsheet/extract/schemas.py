"""
Pydantic schemas for contact extraction.

Defines the contact candidate record shared by every extractor, the
strategy enum, the engine's request/result envelopes, and the item schema
for contacts returned by the LLM.

A contact is valid when it has a non-empty name and either an email of the
shape local@domain.tld or a phone with at least 10 digits.
"""

import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")
MIN_PHONE_DIGITS = 10


def phone_digits(phone: Optional[str]) -> str:
    """Digits-only form of a phone string ("" for None)."""
    if not phone:
        return ""
    return re.sub(r"\D", "", phone)


def is_valid_email(email: Optional[str]) -> bool:
    """RFC-shaped email check (local@domain.tld)."""
    return bool(email) and bool(EMAIL_RE.match(email.strip()))


def has_valid_phone(phone: Optional[str]) -> bool:
    return len(phone_digits(phone)) >= MIN_PHONE_DIGITS


class Strategy(str, Enum):
    """Extraction method chosen for a document."""
    PATTERN_FAST_PATH = "pattern_fast_path"
    AI_PRIMARY = "ai_primary"
    CHUNKED = "chunked"
    PATTERN_PRIMARY_WITH_AI_SUPPLEMENT = "pattern_primary_with_ai_supplement"
    HYBRID = "hybrid"


class ContactSource(str, Enum):
    """Which extractor produced a candidate."""
    PATTERN = "pattern"
    AI = "ai"
    HYBRID = "hybrid"  # merged from both


class ContactCandidate(BaseModel):
    """A single extracted contact. Immutable; use model_copy(update=...)."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    role: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source_strategy: ContactSource = ContactSource.PATTERN
    section: Optional[str] = Field(
        default=None,
        description="Department/section header the contact was found under",
    )

    def is_valid(self) -> bool:
        """Non-empty name and (valid email or phone with >= 10 digits)."""
        if not self.name or not self.name.strip():
            return False
        return is_valid_email(self.email) or has_valid_phone(self.phone)

    def populated_fields(self) -> int:
        """Count of non-empty contact fields (name, role, email, phone, company)."""
        return sum(
            1 for value in (self.name, self.role, self.email, self.phone, self.company)
            if value
        )


class ExtractionMetadata(BaseModel):
    """How a result was produced."""

    strategy: Strategy
    processing_time_ms: int = 0
    quality_score: float = 0.0
    confidence: float = 0.0
    tokens_used: Optional[int] = None
    pattern_matches: Optional[int] = None
    ai_contacts: Optional[int] = None
    discrepancies: Optional[int] = None
    chunks_processed: Optional[int] = None
    chunks_total: Optional[int] = None
    failed_chunks: Optional[int] = None
    timed_out: bool = False
    early_exit: bool = False
    ai_validated: bool = False
    fallback_reason: Optional[str] = None
    structure_score: Optional[float] = None
    document_type: Optional[str] = None
    cached: bool = False
    decisions: list[dict[str, Any]] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    """Terminal engine output. Always returned, never raised."""

    success: bool
    contacts: list[ContactCandidate] = Field(default_factory=list)
    metadata: ExtractionMetadata
    error: Optional[str] = None

    @model_validator(mode="after")
    def _contacts_are_valid(self) -> "ExtractionResult":
        invalid = [c.name or "<unnamed>" for c in self.contacts if not c.is_valid()]
        if invalid:
            raise ValueError(f"Result carries invalid contacts: {invalid}")
        return self


class ExtractionRequest(BaseModel):
    """Engine input. Optional fields fall back to configured defaults."""

    text: str
    file_name_hint: Optional[str] = None
    mime_hint: Optional[str] = None
    role_preferences: Optional[list[str]] = None
    max_processing_time_ms: Optional[int] = Field(default=None, gt=0)
    max_chunks: Optional[int] = Field(default=None, gt=0)
    chunk_size_chars: Optional[int] = Field(default=None, gt=0)
    early_exit_on_zero: Optional[bool] = None


# =============================================================================
# LLM response items
# =============================================================================


class AIContact(BaseModel):
    """One contact as returned by the model. Lenient: unknown keys ignored."""

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    confidence: Optional[float] = None

    @field_validator("name", "role", "email", "phone", "company", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, (int, float)):
            value = str(int(value)) if isinstance(value, float) else str(value)
        if not isinstance(value, str):
            raise ValueError(f"expected text, got {type(value).__name__}")
        value = value.strip()
        if value.lower() in ("", "null", "none", "n/a", "unknown"):
            return None
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
        return min(1.0, max(0.0, value))

    def heuristic_confidence(self) -> float:
        """Confidence from field coverage when the model gives none."""
        score = 0.0
        if self.name:
            score += 0.3
        if self.email:
            score += 0.3
        if self.phone:
            score += 0.2
        if self.role:
            score += 0.1
        if self.company:
            score += 0.1
        return min(1.0, score)

    def to_candidate(self, section: Optional[str] = None) -> ContactCandidate:
        return ContactCandidate(
            name=self.name or "",
            role=self.role,
            email=self.email,
            phone=self.phone,
            company=self.company,
            confidence=self.confidence if self.confidence is not None else self.heuristic_confidence(),
            source_strategy=ContactSource.AI,
            section=section,
        )
