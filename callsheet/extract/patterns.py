"""
Rule-table pattern extraction for call sheets.

Always available, fully offline, and never raises: any internal failure is
logged and an empty result is returned so the rest of the pipeline keeps
going.

Layouts handled:
- Role on the same line:   "PHOTOGRAPHER: Jane Doe / 555-123-4567 / jane@x.com"
- Role on its own line:    "HAIR" then "Sam Lee  555-987-6543"
- C/O lines inherit the role of the contact above them:
                           "C/O BECKY LEWIS / 212.206.0737 / BLEWIS@ARTANDCOMMERCE.COM"
- Tabular rows:            "Jane Doe | Photographer | 555-123-4567 | jane@x.com"
- Multi-line blocks:       name line followed by phone / email lines

Text is segmented at department/role header lines. Each segment is scanned
on its own and its header role is inherited by unlabeled contact lines
until the next header.

Self-confidence = valid_ratio * 0.7 + min(count / 10, 1) * 0.3, where
valid_ratio is the share of drafted contacts carrying an email or phone.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Optional

from ..parse.preprocessor import header_title, is_section_header
from .schemas import ContactCandidate, ContactSource, has_valid_phone, is_valid_email

logger = logging.getLogger(__name__)


# =============================================================================
# Rule table
# =============================================================================


@dataclass(frozen=True)
class PatternRule:
    """One declarative extraction rule."""
    name: str
    regex: re.Pattern
    target_field: str
    weight: float

    def find(self, text: str) -> list[str]:
        """All values this rule extracts from ``text`` (named group 'value' if present)."""
        values = []
        for match in self.regex.finditer(text):
            if "value" in self.regex.groupindex:
                value = match.group("value")
            else:
                value = match.group(0)
            if value and value.strip():
                values.append(value.strip())
        return values

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None


PATTERN_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        name="email",
        regex=re.compile(r"(?:mailto:)?[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}"),
        target_field="email",
        weight=0.25,
    ),
    PatternRule(
        name="phone",
        regex=re.compile(
            r"\+\d{1,3}[\s.\-]?(?:\(?\d{1,4}\)?[\s.\-]?){2,4}\d{2,4}"
            r"|(?:\b1[\s.\-]?)?\(?\b\d{3}\)?[\s.\-]?\d{3}[\s.\-]?\d{4}\b"
        ),
        target_field="phone",
        weight=0.3,
    ),
    PatternRule(
        name="role_inline",
        regex=re.compile(r"^\s*(?P<value>[A-Z0-9][A-Z0-9\s&/\-.']*?)\s*:\s*(?=\S)"),
        target_field="role",
        weight=0.15,
    ),
    PatternRule(
        name="role_header",
        regex=re.compile(r"^\s*(?P<value>[A-Z][A-Za-z0-9\s&/\-.']*?)\s*:?\s*$"),
        target_field="role_header",
        weight=0.15,
    ),
    PatternRule(
        name="care_of",
        regex=re.compile(r"^\s*c\s*/\s*o\b[\s:.\-]*(?P<value>.*)$", re.IGNORECASE),
        target_field="care_of",
        weight=0.0,
    ),
    PatternRule(
        name="name",
        regex=re.compile(
            r"^(?P<value>[^\W\d_][\w'\-.]*(?:\s+[^\W\d_][\w'\-.]*){0,4})$"
        ),
        target_field="name",
        weight=0.3,
    ),
)

RULES_BY_NAME = {rule.name: rule for rule in PATTERN_RULES}

EMAIL_RULE = RULES_BY_NAME["email"]
PHONE_RULE = RULES_BY_NAME["phone"]
ROLE_INLINE_RULE = RULES_BY_NAME["role_inline"]
ROLE_HEADER_RULE = RULES_BY_NAME["role_header"]
CARE_OF_RULE = RULES_BY_NAME["care_of"]
NAME_RULE = RULES_BY_NAME["name"]

SECTION_CONTEXT_BONUS = 0.1
VALID_RATIO_WEIGHT = 0.7
COUNT_WEIGHT = 0.3
COUNT_SATURATION = 10

SEGMENT_SPLIT_RE = re.compile(r"\s*(?:[/|\t,;•]|\s[-–—]\s|\s{2,})\s*")
# Inline notes such as "(NOT ON SET)" or "[day 2 only]"
PARENTHETICAL_RE = re.compile(r"\([^)]*\)|\[[^\]]*\]")

# Words that, alone or combined, form a role title
ROLE_WORDS = {
    "PHOTOGRAPHER", "PHOTO", "PHOTOG", "ASSISTANT", "ASSISTANTS", "ASST",
    "DIRECTOR", "PRODUCER", "PRODUCERS", "STYLIST", "STYLISTS", "STYLING",
    "WARDROBE", "HAIR", "MAKEUP", "MUA", "HMU", "MUAH", "GROOMING", "GROOMER",
    "MANICURIST", "NAILS", "DIGITECH", "DIGI", "DIGITAL", "TECH", "TECHNICIAN",
    "DESIGNER", "PROP", "PROPS", "LIGHTING", "GAFFER", "GRIP", "ELECTRIC",
    "CAMERA", "OPERATOR", "VIDEO", "VIDEOGRAPHER", "CASTING", "TALENT",
    "MODEL", "AGENT", "CLIENT", "MANAGER", "COORDINATOR", "RETOUCHER",
    "EDITOR", "CATERING", "CATERER", "CRAFT", "SCOUT", "DP", "DOP", "CD",
    "EP", "PA", "PAS", "ART", "SET", "MOTION", "BTS", "DRIVER", "MEDIC",
    "SECURITY", "TAILOR", "SEAMSTRESS", "MAKE", "UP", "ARTIST", "AC",
}
ROLE_MODIFIERS = {
    "FIRST", "SECOND", "THIRD", "1ST", "2ND", "3RD", "LEAD", "KEY", "HEAD",
    "SENIOR", "JUNIOR", "EXECUTIVE", "LINE", "CREATIVE", "PRODUCTION",
    "ASSOCIATE", "AND", "OF", "&", "/", "+", "-", "BRAND", "ACCOUNT",
}

# Field labels that precede values ("Cell: 555...", "E: jane@...")
LABEL_WORDS = {
    "CELL", "MOBILE", "MOB", "TEL", "TELEPHONE", "PHONE", "PH", "OFFICE",
    "EMAIL", "E-MAIL", "FAX", "C", "M", "E", "P", "O", "T", "W", "WORK",
    "HOME", "DIRECT",
}

# Segments that are never person names
NON_NAME_WORDS = LABEL_WORDS | {
    "NAME", "ROLE", "POSITION", "TITLE", "COMPANY", "AGENCY", "TBD", "TBA",
    "NA", "N/A", "CALL", "TIME", "CALLTIME", "LOCATION", "ADDRESS", "NOTES",
    "NOTE", "WRAP", "LUNCH", "BREAKFAST", "PARKING", "DATE", "WEATHER",
    "SUNRISE", "SUNSET", "CONTACT", "CONTACTS", "CREW", "SCHEDULE", "DAY",
    "NOT", "ON", "THE", "AND",
}

TABLE_HEADER_WORDS = {
    "NAME", "ROLE", "POSITION", "TITLE", "PHONE", "CELL", "MOBILE", "EMAIL",
    "E-MAIL", "COMPANY", "AGENCY", "CALL", "CALL TIME", "CONTACT", "DEPARTMENT",
    "DEPT", "NOTES",
}


def _words(text: str) -> list[str]:
    return [w for w in re.split(r"[\s&/+\-]+", text.upper()) if w]


def is_role_phrase(text: str) -> bool:
    """True when every word is role vocabulary and at least one is not a modifier."""
    words = _words(text.strip().rstrip(":"))
    if not words or len(words) > 5:
        return False
    if not all(w in ROLE_WORDS or w in ROLE_MODIFIERS for w in words):
        return False
    return any(w in ROLE_WORDS for w in words)


def _is_label(text: str) -> bool:
    return text.strip().rstrip(":.").upper() in LABEL_WORDS


def _is_table_header(segments: list[str]) -> bool:
    return len(segments) >= 2 and all(s.strip().upper() in TABLE_HEADER_WORDS for s in segments)


def _count(hits: dict[str, int], rule_name: str, count: int = 1):
    hits[rule_name] = hits.get(rule_name, 0) + count


def _looks_like_name(segment: str) -> bool:
    if not NAME_RULE.matches(segment):
        return False
    words = segment.upper().split()
    if all(w.strip(".") in NON_NAME_WORDS for w in words):
        return False
    return not is_role_phrase(segment)


# =============================================================================
# Results
# =============================================================================


@dataclass
class TextSegment:
    """A run of lines under one header."""
    title: Optional[str]
    role: Optional[str]
    start: int
    end: int
    lines: list[str] = field(default_factory=list)


@dataclass
class PatternExtractionResult:
    """Pattern engine output."""
    contacts: list[ContactCandidate] = field(default_factory=list)
    confidence: float = 0.0
    drafts: int = 0  # contact-like records found, valid or not
    valid_drafts: int = 0  # drafts carrying an email or phone
    rule_hits: dict[str, int] = field(default_factory=dict)
    sections: list[str] = field(default_factory=list)
    processing_time_ms: int = 0
    error: Optional[str] = None


@dataclass
class _Draft:
    name: str = ""
    role: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    section: Optional[str] = None

    def has_contact_info(self) -> bool:
        return bool(self.email or self.phone)

    def confidence(self) -> float:
        score = 0.0
        if self.name:
            score += NAME_RULE.weight
        if has_valid_phone(self.phone):
            score += PHONE_RULE.weight
        if is_valid_email(self.email):
            score += EMAIL_RULE.weight
        if self.role:
            score += ROLE_INLINE_RULE.weight
        if self.section:
            score += SECTION_CONTEXT_BONUS
        return min(1.0, score)

    def to_candidate(self) -> ContactCandidate:
        return ContactCandidate(
            name=self.name,
            role=self.role,
            email=self.email,
            phone=self.phone,
            company=self.company,
            confidence=round(self.confidence(), 4),
            source_strategy=ContactSource.PATTERN,
            section=self.section,
        )


@dataclass
class _ParsedLine:
    role: Optional[str] = None
    care_of: bool = False
    name: Optional[str] = None
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    company: Optional[str] = None
    is_table_header: bool = False


# =============================================================================
# Segmentation
# =============================================================================


def _header_role(title: str) -> Optional[str]:
    """Role carried by a header, or None for department headers like CREW."""
    return title if is_role_phrase(title) else None


def _is_header_line(line: str) -> bool:
    stripped = line.strip()
    if is_section_header(stripped):
        return True
    # Mixed-case role titles on their own line ("Photographer")
    return (
        bool(ROLE_HEADER_RULE.matches(stripped))
        and "@" not in stripped
        and not PHONE_RULE.matches(stripped)
        and is_role_phrase(stripped)
    )


def segment_sections(text: str) -> list[TextSegment]:
    """
    Split text at header lines.

    The first segment (before any header) has no title. Header lines are
    not part of any segment's lines.
    """
    segments = [TextSegment(title=None, role=None, start=0, end=0)]
    offset = 0
    for line in text.split("\n"):
        if _is_header_line(line):
            segments[-1].end = offset
            title = header_title(line)
            segments.append(TextSegment(title=title, role=_header_role(title), start=offset, end=offset))
        else:
            segments[-1].lines.append(line)
        offset += len(line) + 1
    segments[-1].end = len(text)
    return [s for s in segments if s.title is not None or any(l.strip() for l in s.lines)]


# =============================================================================
# Engine
# =============================================================================


class PatternExtractor:
    """
    Extracts contacts with the rule table.

    Usage:
        result = PatternExtractor().extract(text)
        result.contacts, result.confidence
    """

    def __init__(self, rules: tuple[PatternRule, ...] = PATTERN_RULES):
        self.rules = rules

    def extract(self, text: str) -> PatternExtractionResult:
        """Run the rule table over ``text``. Never raises."""
        start = time.monotonic()
        try:
            result = self._extract(text)
        except Exception as e:
            logger.exception(f"Pattern extraction failed, returning empty result: {e}")
            result = PatternExtractionResult(error=str(e))
        result.processing_time_ms = int((time.monotonic() - start) * 1000)
        return result

    def _extract(self, text: str) -> PatternExtractionResult:
        hits = {rule.name: 0 for rule in self.rules}
        drafts: list[_Draft] = []
        segments = segment_sections(text)
        for segment in segments:
            if segment.title:
                _count(hits, ROLE_HEADER_RULE.name)
            drafts.extend(self._scan_segment(segment, hits))

        valid = [d for d in drafts if d.has_contact_info()]
        confidence = self.self_confidence(len(valid), len(drafts))
        contacts = [d.to_candidate() for d in drafts if d.name]
        contacts = [c for c in contacts if c.is_valid()]

        logger.info(
            f"Pattern engine: {len(contacts)} contacts from {len(drafts)} drafts "
            f"in {len(segments)} segments (confidence={confidence:.2f})"
        )
        return PatternExtractionResult(
            contacts=contacts,
            confidence=confidence,
            drafts=len(drafts),
            valid_drafts=len(valid),
            rule_hits=hits,
            sections=[s.title for s in segments if s.title],
        )

    @staticmethod
    def self_confidence(valid_count: int, total_count: int) -> float:
        """valid_ratio * 0.7 + min(count / 10, 1) * 0.3 (0 for no drafts)."""
        if total_count == 0:
            return 0.0
        valid_ratio = valid_count / total_count
        volume = min(total_count / COUNT_SATURATION, 1.0)
        return round(valid_ratio * VALID_RATIO_WEIGHT + volume * COUNT_WEIGHT, 4)

    # ------------------------------------------------------------------

    def _scan_segment(self, segment: TextSegment, hits: dict[str, int]) -> list[_Draft]:
        drafts: list[_Draft] = []
        pending: Optional[_Draft] = None
        last_role = segment.role

        def flush():
            nonlocal pending
            if pending is not None and (pending.name or pending.has_contact_info()):
                drafts.append(pending)
            pending = None

        for line in segment.lines:
            if not line.strip():
                flush()
                continue

            parsed = self.parse_line(line, hits)
            if parsed.is_table_header:
                continue

            role = parsed.role
            if parsed.care_of and not role:
                role = last_role
            role = role or segment.role

            if parsed.name:
                flush()
                pending = _Draft(
                    name=parsed.name,
                    role=role,
                    email=parsed.emails[0] if parsed.emails else None,
                    phone=parsed.phones[0] if parsed.phones else None,
                    company=parsed.company,
                    section=segment.title,
                )
                last_role = role or last_role
            elif parsed.emails or parsed.phones:
                email = parsed.emails[0] if parsed.emails else None
                phone = parsed.phones[0] if parsed.phones else None
                if (
                    pending is not None
                    and not (email and pending.email)
                    and not (phone and pending.phone)
                ):
                    # Continuation line of a multi-line block
                    pending.email = pending.email or email
                    pending.phone = pending.phone or phone
                    pending.company = pending.company or parsed.company
                else:
                    flush()
                    pending = _Draft(role=role, email=email, phone=phone, section=segment.title)
            else:
                flush()

        flush()
        return drafts

    def parse_line(self, line: str, hits: Optional[dict[str, int]] = None) -> _ParsedLine:
        """
        Split one line into role / name / email / phone / company parts.

        Rule hits are added to ``hits`` when given.
        """
        if hits is None:
            hits = {}
        parsed = _ParsedLine()
        rest = line.strip()

        care_of = CARE_OF_RULE.regex.match(rest)
        if care_of:
            parsed.care_of = True
            rest = care_of.group("value")
            _count(hits, CARE_OF_RULE.name)

        role_match = ROLE_INLINE_RULE.regex.match(rest)
        if role_match:
            value = role_match.group("value").strip()
            if re.search(r"[A-Z]", value) and not _is_label(value):
                parsed.role = value
                rest = rest[role_match.end():]
                _count(hits, ROLE_INLINE_RULE.name)

        emails = EMAIL_RULE.find(rest)
        for email in emails:
            rest = rest.replace(email, " / ")
        parsed.emails = [e[len("mailto:"):] if e.lower().startswith("mailto:") else e for e in emails]

        phones = []
        for phone in PHONE_RULE.find(rest):
            digits = re.sub(r"\D", "", phone)
            if 10 <= len(digits) <= 15:
                phones.append(phone)
                rest = rest.replace(phone, " / ")
        parsed.phones = phones
        if emails:
            _count(hits, EMAIL_RULE.name, len(emails))
        if phones:
            _count(hits, PHONE_RULE.name, len(phones))

        segments = [
            " ".join(PARENTHETICAL_RE.sub(" ", s).split()).strip(" :.-")
            for s in SEGMENT_SPLIT_RE.split(rest)
        ]
        segments = [s for s in segments if s and not _is_label(s)]

        if not emails and not phones and _is_table_header(segments):
            parsed.is_table_header = True
            return parsed

        leftovers = []
        for segment in segments:
            # First name-like segment wins; later ones may be company names
            if parsed.name is None and _looks_like_name(segment):
                parsed.name = segment
                _count(hits, NAME_RULE.name)
            elif parsed.role is None and is_role_phrase(segment):
                parsed.role = segment.upper()
                _count(hits, ROLE_INLINE_RULE.name)
            else:
                leftovers.append(segment)

        if parsed.name:
            companies = [s for s in leftovers if re.search(r"[^\W\d_]", s) and len(s) <= 60]
            if companies:
                parsed.company = companies[0]

        return parsed


def extract_with_patterns(text: str) -> PatternExtractionResult:
    """Convenience wrapper around PatternExtractor().extract()."""
    return PatternExtractor().extract(text)
