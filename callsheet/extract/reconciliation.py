"""
Reconciliation of pattern and AI candidate sets, plus quality scoring.

Identity of a contact (dedup key), in precedence order:
1. lower-cased email
2. digits-only phone with >= 10 digits (11-digit numbers with a leading 1
   fold to their 10-digit form)
3. lower-cased alphanumeric name with >= 4 characters
4. None: the candidate is kept as-is and never merged

Merging combines non-null fields from both sides, preferring the side with
more populated fields, and keeps the higher confidence.

Quality score = validity*0.4 + completeness*0.3 + pattern_match*0.3, with a
+0.1 confidence bonus when AI and pattern results agree on any contact.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .schemas import ContactCandidate, ContactSource, is_valid_email, phone_digits

logger = logging.getLogger(__name__)


VALIDITY_WEIGHT = 0.4
COMPLETENESS_WEIGHT = 0.3
PATTERN_MATCH_WEIGHT = 0.3
NEUTRAL_PATTERN_MATCH = 0.5
AGREEMENT_BONUS = 0.1

MIN_NAME_KEY_LENGTH = 4


# =============================================================================
# Identity
# =============================================================================


def email_key(candidate: ContactCandidate) -> Optional[str]:
    email = (candidate.email or "").strip().lower()
    return f"email:{email}" if is_valid_email(email) else None


def phone_key(candidate: ContactCandidate) -> Optional[str]:
    digits = phone_digits(candidate.phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return f"phone:{digits}" if len(digits) >= 10 else None


def name_key(candidate: ContactCandidate) -> Optional[str]:
    name = re.sub(r"[^a-z0-9]", "", (candidate.name or "").lower())
    return f"name:{name}" if len(name) >= MIN_NAME_KEY_LENGTH else None


def dedup_key(candidate: ContactCandidate) -> Optional[str]:
    """Primary identity: email, then phone, then name, else None."""
    return email_key(candidate) or phone_key(candidate) or name_key(candidate)


def identity_keys(candidate: ContactCandidate) -> set[str]:
    """Every identity key the candidate carries (used for cross-set matching)."""
    keys = {email_key(candidate), phone_key(candidate), name_key(candidate)}
    keys.discard(None)
    return keys


def _merge_identifiers(candidate: ContactCandidate) -> list[str]:
    """Keys that make two candidates the same contact during deduplication."""
    keys = [k for k in (email_key(candidate), phone_key(candidate)) if k]
    if keys:
        return keys
    name = name_key(candidate)
    return [name] if name else []


# =============================================================================
# Merge / dedupe
# =============================================================================


def merge_candidates(a: ContactCandidate, b: ContactCandidate) -> ContactCandidate:
    """
    Combine two candidates for the same contact.

    Fields come from the side with more populated fields, gaps are filled
    from the other side. Ties prefer ``a``.
    """
    if b.populated_fields() > a.populated_fields():
        rich, other = b, a
    else:
        rich, other = a, b

    if a.source_strategy == b.source_strategy:
        source = a.source_strategy
    else:
        source = ContactSource.HYBRID

    return ContactCandidate(
        name=rich.name or other.name,
        role=rich.role or other.role,
        email=rich.email or other.email,
        phone=rich.phone or other.phone,
        company=rich.company or other.company,
        confidence=max(a.confidence, b.confidence),
        source_strategy=source,
        section=rich.section or other.section,
    )


def deduplicate(candidates: list[ContactCandidate]) -> list[ContactCandidate]:
    """
    Merge candidates that share an email or phone (or, lacking both, a name).

    Output order follows first appearance. A candidate bridging two existing
    entries (e.g. email of one, phone of the other) folds them together, so
    no two output contacts share an email or a phone.
    """
    entries: list[Optional[ContactCandidate]] = []
    owner: dict[str, int] = {}

    for candidate in candidates:
        keys = _merge_identifiers(candidate)
        if not keys:
            entries.append(candidate)
            continue

        hits = sorted({owner[k] for k in keys if k in owner})
        if not hits:
            entries.append(candidate)
            target = len(entries) - 1
        else:
            target = hits[0]
            merged = entries[target]
            for index in hits[1:]:
                merged = merge_candidates(merged, entries[index])
                entries[index] = None
                for key, value in owner.items():
                    if value == index:
                        owner[key] = target
            entries[target] = merge_candidates(merged, candidate)

        for key in keys + _merge_identifiers(entries[target]):
            owner[key] = target

    result = [entry for entry in entries if entry is not None]
    if len(result) < len(candidates):
        logger.debug(f"Deduplicated {len(candidates)} candidates to {len(result)}")
    return result


# =============================================================================
# Reconciliation
# =============================================================================


@dataclass
class ReconciliationReport:
    """Merged contacts plus agreement statistics between the two sets."""
    contacts: list[ContactCandidate] = field(default_factory=list)
    matches: int = 0  # pattern contacts the AI also found
    discrepancies: int = 0  # AI contacts the pattern engine did not find
    pattern_contact_count: int = 0
    ai_contact_count: int = 0
    compared: bool = False  # both extractors actually ran


def reconcile(
    ai_contacts: Optional[list[ContactCandidate]],
    pattern_contacts: Optional[list[ContactCandidate]],
    ai_primary: bool = True,
) -> ReconciliationReport:
    """
    Merge AI and pattern candidate sets.

    Args:
        ai_contacts: AI candidates, or None when the AI path did not run
        pattern_contacts: Pattern candidates, or None when not available
        ai_primary: AI results lead and pattern results fill gaps; when
            False the roles are swapped (pattern-primary strategies)

    Returns:
        ReconciliationReport with deduplicated contacts
    """
    ai = list(ai_contacts or [])
    pattern = list(pattern_contacts or [])

    ai_keys: set[str] = set()
    for candidate in ai:
        ai_keys |= identity_keys(candidate)
    pattern_keys: set[str] = set()
    for candidate in pattern:
        pattern_keys |= identity_keys(candidate)

    matches = sum(1 for c in pattern if identity_keys(c) & ai_keys)
    discrepancies = sum(1 for c in ai if not identity_keys(c) & pattern_keys)

    ordered = ai + pattern if ai_primary else pattern + ai
    contacts = deduplicate(ordered)

    report = ReconciliationReport(
        contacts=contacts,
        matches=matches,
        discrepancies=discrepancies,
        pattern_contact_count=len(pattern),
        ai_contact_count=len(ai),
        compared=ai_contacts is not None and pattern_contacts is not None,
    )
    logger.info(
        f"Reconciled {len(ai)} AI + {len(pattern)} pattern candidates -> "
        f"{len(contacts)} contacts ({matches} matches, {discrepancies} discrepancies)"
    )
    return report


# =============================================================================
# Quality
# =============================================================================


@dataclass
class QualityScore:
    quality_score: float = 0.0
    confidence: float = 0.0
    validity_ratio: float = 0.0
    completeness_ratio: float = 0.0
    pattern_match_ratio: float = 0.0


def score_quality(
    contacts: list[ContactCandidate],
    report: Optional[ReconciliationReport] = None,
) -> QualityScore:
    """
    Score a contact set.

    The pattern-match ratio is neutral (0.5) when there are no pattern
    contacts or when only one extractor ran, since there was nothing to
    agree with.
    """
    if not contacts:
        return QualityScore()

    n = len(contacts)
    validity = sum(1 for c in contacts if c.is_valid()) / n
    completeness = sum(1 for c in contacts if c.email and c.phone) / n

    matches = report.matches if report else 0
    if report is None or not report.compared or report.pattern_contact_count == 0:
        pattern_match = NEUTRAL_PATTERN_MATCH
    else:
        pattern_match = min(1.0, matches / report.pattern_contact_count)

    quality = (
        validity * VALIDITY_WEIGHT
        + completeness * COMPLETENESS_WEIGHT
        + pattern_match * PATTERN_MATCH_WEIGHT
    )
    confidence = min(1.0, quality + (AGREEMENT_BONUS if matches > 0 else 0.0))

    return QualityScore(
        quality_score=round(quality, 4),
        confidence=round(confidence, 4),
        validity_ratio=validity,
        completeness_ratio=completeness,
        pattern_match_ratio=pattern_match,
    )
