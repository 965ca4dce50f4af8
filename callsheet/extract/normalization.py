"""
Canonicalization and validation of contact candidates.

Last stage before a result is finalized:
- Names: parenthetical notes ("(NOT ON SET)") and C/O prefixes removed,
  all-caps / all-lowercase names title-cased
- Phones: 10-15 digits required; North American numbers formatted as
  +1 (AAA) BBB-CCCC, others as +<digits>
- Roles: upper-cased and mapped through ROLE_SYNONYMS ("MUA" -> "MAKEUP")
- Emails: lower-cased, must look like local@domain.tld

Candidates that fail the contact invariant after canonicalization are
dropped, and the survivors are deduplicated.
"""

import logging
import re
from typing import Iterable, Optional

from .reconciliation import deduplicate
from .schemas import ContactCandidate, is_valid_email, phone_digits

logger = logging.getLogger(__name__)


# Canonical role vocabulary. Keys are upper-cased, whitespace-collapsed.
ROLE_SYNONYMS = {
    "MUA": "MAKEUP",
    "MAKE UP": "MAKEUP",
    "MAKE-UP": "MAKEUP",
    "MAKEUP ARTIST": "MAKEUP",
    "MAKE UP ARTIST": "MAKEUP",
    "HMU": "HAIR & MAKEUP",
    "MUAH": "HAIR & MAKEUP",
    "HAIR/MAKEUP": "HAIR & MAKEUP",
    "HAIR / MAKEUP": "HAIR & MAKEUP",
    "HAIR AND MAKEUP": "HAIR & MAKEUP",
    "HAIR & MAKE UP": "HAIR & MAKEUP",
    "HAIR STYLIST": "HAIR",
    "HAIRSTYLIST": "HAIR",
    "HAIR ARTIST": "HAIR",
    "PHOTO": "PHOTOGRAPHER",
    "PHOTOG": "PHOTOGRAPHER",
    "STYL": "STYLIST",
    "WARDROBE STYLIST": "STYLIST",
    "FASHION STYLIST": "STYLIST",
    "PROD": "PRODUCER",
    "DIR": "DIRECTOR",
    "CD": "CREATIVE DIRECTOR",
    "EP": "EXECUTIVE PRODUCER",
    "DP": "DIRECTOR OF PHOTOGRAPHY",
    "DOP": "DIRECTOR OF PHOTOGRAPHY",
    "PA": "PRODUCTION ASSISTANT",
    "PROD ASSISTANT": "PRODUCTION ASSISTANT",
    "DIGI": "DIGITECH",
    "DIGI TECH": "DIGITECH",
    "DIGITAL TECH": "DIGITECH",
    "DIGITAL TECHNICIAN": "DIGITECH",
    "1ST ASSISTANT": "FIRST ASSISTANT",
    "1ST ASST": "FIRST ASSISTANT",
    "2ND ASSISTANT": "SECOND ASSISTANT",
    "2ND ASST": "SECOND ASSISTANT",
    "NAILS": "MANICURIST",
    "MANI": "MANICURIST",
    "GROOMER": "GROOMING",
}

_PARENTHETICAL_RE = re.compile(r"\([^)]*\)|\[[^\]]*\]")
_CARE_OF_RE = re.compile(r"^\s*c\s*/\s*o\s+", re.IGNORECASE)
_EXTENSION_RE = re.compile(r"\s*(?:ext\.?|x)\s*\d{1,6}\s*$", re.IGNORECASE)
_EDGE_PUNCT = " \t-:/|,;.*•"


def normalize_name(name: Optional[str]) -> str:
    """Strip annotations and C/O prefixes; title-case shouting or lowercase names."""
    if not name:
        return ""
    cleaned = _PARENTHETICAL_RE.sub(" ", name)
    cleaned = _CARE_OF_RE.sub("", cleaned)
    cleaned = " ".join(cleaned.split()).strip(_EDGE_PUNCT)
    if cleaned.isupper() or cleaned.islower():
        cleaned = cleaned.title()
    return cleaned


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Format a phone number for display.

    Returns None when fewer than 10 or more than 15 digits remain after
    dropping any trailing extension.
    """
    if not phone:
        return None
    digits = phone_digits(_EXTENSION_RE.sub("", phone))
    if len(digits) < 10 or len(digits) > 15:
        return None
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"+1 ({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return f"+{digits}"


def normalize_role(role: Optional[str]) -> Optional[str]:
    """Upper-case, collapse whitespace, and map known synonyms."""
    if not role:
        return None
    cleaned = " ".join(role.replace(":", " ").split()).upper()
    if not cleaned:
        return None
    return ROLE_SYNONYMS.get(cleaned, cleaned)


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lower-case and strip mailto:/angle brackets; None if not email-shaped."""
    if not email:
        return None
    cleaned = email.strip().lower()
    if cleaned.startswith("mailto:"):
        cleaned = cleaned[len("mailto:"):]
    cleaned = cleaned.strip("<>()[]{} ,;:'\"").rstrip(".")
    return cleaned if is_valid_email(cleaned) else None


def normalize_company(company: Optional[str]) -> Optional[str]:
    if not company:
        return None
    cleaned = " ".join(company.split()).strip(_EDGE_PUNCT)
    return cleaned or None


def normalize_candidate(candidate: ContactCandidate) -> Optional[ContactCandidate]:
    """Canonicalize one candidate; None if it fails the contact invariant."""
    normalized = candidate.model_copy(update={
        "name": normalize_name(candidate.name),
        "role": normalize_role(candidate.role),
        "email": normalize_email(candidate.email),
        "phone": normalize_phone(candidate.phone),
        "company": normalize_company(candidate.company),
    })
    if not normalized.is_valid():
        return None
    return normalized


def order_by_role_preference(
    contacts: list[ContactCandidate],
    role_preferences: Optional[Iterable[str]],
) -> list[ContactCandidate]:
    """Stable sort putting contacts with a preferred role first, in preference order."""
    preferences = [normalize_role(r) for r in (role_preferences or [])]
    preferences = [p for p in preferences if p]
    if not preferences:
        return contacts
    rank = {role: i for i, role in enumerate(preferences)}
    return sorted(contacts, key=lambda c: rank.get(c.role, len(rank)))


def normalize_contacts(
    candidates: Iterable[ContactCandidate],
    role_preferences: Optional[Iterable[str]] = None,
) -> list[ContactCandidate]:
    """
    Canonicalize, validate and deduplicate a candidate list.

    Args:
        candidates: Reconciled candidates from any strategy
        role_preferences: Roles to list first in the output

    Returns:
        Valid, deduplicated contacts
    """
    kept = []
    dropped = 0
    for candidate in candidates:
        normalized = normalize_candidate(candidate)
        if normalized is None:
            dropped += 1
            continue
        kept.append(normalized)

    if dropped:
        logger.info(f"Dropped {dropped} candidates failing name/email/phone validation")

    return order_by_role_preference(deduplicate(kept), role_preferences)
