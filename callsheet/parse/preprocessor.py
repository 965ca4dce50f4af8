"""
Text preprocessing and layout analysis for call sheets.

Normalizes line endings and blank-line runs, then scores how regular the
layout is so the strategy selector can decide whether pattern matching alone
is trustworthy.

Structure score is a weighted sum:
- separator consistency (0.4): best ratio of lines holding | tab / or :
- line-length consistency (0.3): 1 - mean relative deviation from mean length
- role-header ratio (0.3): lines shaped like "ROLE:" headers

The document is also classified (call sheet, contact list, crew list, talent
sheet, production schedule) by the share of each type's indicator phrases
it contains; the type tailors the AI extraction prompt.
"""

import logging
import math
import re
from typing import Union

from .models import DocumentType, RawDocument, StructureAnalysis

logger = logging.getLogger(__name__)


SEPARATORS = ("|", "\t", "/", ":")
TABULAR_DELIMITERS = ("|", "\t")

SEPARATOR_WEIGHT = 0.4
LINE_LENGTH_WEIGHT = 0.3
ROLE_HEADER_WEIGHT = 0.3

TABULAR_RATIO_THRESHOLD = 0.5
MIN_TABULAR_LINES = 3
MAX_HEADER_LENGTH = 50

ROLE_HEADER_RE = re.compile(r"^[A-Z][A-Z\s&/\-]+:")
BARE_HEADER_RE = re.compile(r"^[A-Z][A-Za-z\s&/\-.']*:$")
PHONE_LIKE_RE = re.compile(r"\d{3}[\s.\-)]*\d{3}[\s.\-]*\d{4}")

# Words that mark a department or role header line in call sheets
SECTION_KEYWORDS = (
    "CREW", "TALENT", "CAST", "MODELS", "PRODUCTION", "VENDORS", "CLIENT",
    "AGENCY", "CONTACTS", "PHOTOGRAPHER", "PHOTO", "VIDEO", "CAMERA", "HAIR",
    "MAKEUP", "GROOMING", "MUA", "HMU", "STYLIST", "STYLING", "WARDROBE",
    "DIRECTOR", "PRODUCER", "ASSISTANT", "ASSISTANTS", "DIGITECH",
    "LIGHTING", "GRIP", "GAFFER", "ELECTRIC", "CATERING", "CRAFT", "ART",
    "PROPS", "SET", "LOCATION", "LOCATIONS", "RETOUCHER", "MANICURIST",
    "CASTING", "EDITOR", "COORDINATOR", "MANAGER", "DP",
)
_KEYWORD_RE = re.compile(r"\b(" + "|".join(SECTION_KEYWORDS) + r")\b")

# Document type -> indicator phrases. A type wins when more than half of its
# phrases appear; earlier entries win ties.
DOCUMENT_TYPE_KEYWORDS = {
    DocumentType.CALL_SHEET: ("call sheet", "call time", "location", "crew", "talent", "production"),
    DocumentType.CONTACT_LIST: ("contacts", "directory", "phone list", "email list"),
    DocumentType.PRODUCTION_SCHEDULE: ("schedule", "timeline", "shooting", "call times"),
    DocumentType.CREW_LIST: ("crew", "department", "photographer", "stylist", "mua"),
    DocumentType.TALENT_SHEET: ("talent", "model", "actor", "agency", "representation"),
}
DOCUMENT_TYPE_MIN_RATIO = 0.5

_DOCUMENT_TYPE_RES = {
    doc_type: [re.compile(r"\b" + re.escape(kw) + r"s?\b") for kw in keywords]
    for doc_type, keywords in DOCUMENT_TYPE_KEYWORDS.items()
}


def estimate_tokens(text: str) -> int:
    """Rough token count used for budgeting: one token per four chars."""
    return math.ceil(len(text) / 4)


def normalize_text(text: str) -> str:
    """
    Normalize line endings and collapse runs of blank lines.

    CRLF and bare CR become LF; three or more consecutive newlines become a
    single blank line; leading/trailing whitespace is stripped.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n[ \t]*\n(?:[ \t]*\n)+", "\n\n", text)
    return text.strip()


def is_section_header(line: str) -> bool:
    """
    True for short lines that introduce a department or role block.

    Accepts "ROLE:" lines with nothing after the colon, and upper-case
    lines containing a known department/role keyword. Lines with an email
    address or a phone number are contact lines, never headers.
    """
    stripped = line.strip()
    if not stripped or len(stripped) >= MAX_HEADER_LENGTH:
        return False
    if "@" in stripped or PHONE_LIKE_RE.search(stripped):
        return False
    if BARE_HEADER_RE.match(stripped):
        return True
    letters = [c for c in stripped if c.isalpha()]
    if not letters or not stripped.isupper():
        return False
    return bool(_KEYWORD_RE.search(stripped.rstrip(":")))


def header_title(line: str) -> str:
    """Canonical title for a header line ("  Hair & Makeup: " -> "HAIR & MAKEUP")."""
    return " ".join(line.strip().rstrip(":").split()).upper()


def find_section_boundaries(text: str) -> list[int]:
    """Character offsets of every header line in ``text``."""
    boundaries = []
    offset = 0
    for line in text.split("\n"):
        if is_section_header(line):
            boundaries.append(offset)
        offset += len(line) + 1
    return boundaries


def classify_document(text: str) -> tuple[DocumentType, float]:
    """
    Classify a document by the share of each type's indicator phrases it contains.

    Returns:
        (document type, matched-phrase ratio); UNKNOWN with 0.0 when no type
        has more than half of its phrases present
    """
    lowered = text.lower()
    best, best_ratio = DocumentType.UNKNOWN, DOCUMENT_TYPE_MIN_RATIO
    for doc_type, patterns in _DOCUMENT_TYPE_RES.items():
        ratio = sum(1 for pattern in patterns if pattern.search(lowered)) / len(patterns)
        if ratio > best_ratio:
            best, best_ratio = doc_type, ratio
    if best == DocumentType.UNKNOWN:
        return best, 0.0
    return best, round(best_ratio, 4)


def analyze_structure(text: str) -> StructureAnalysis:
    """
    Score layout regularity of normalized text.

    Args:
        text: Output of normalize_text()

    Returns:
        StructureAnalysis with the weighted structure score, tabular flag and
        header offsets
    """
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    if not lines:
        return StructureAnalysis()

    n = len(lines)

    separator_ratio = max(
        sum(1 for line in lines if sep in line) / n for sep in SEPARATORS
    )
    tabular_ratio = max(
        sum(1 for line in lines if sep in line) / n for sep in TABULAR_DELIMITERS
    )

    lengths = [len(line) for line in lines]
    avg_len = sum(lengths) / n
    if avg_len > 0:
        mean_dev = sum(abs(length - avg_len) / avg_len for length in lengths) / n
        line_consistency = max(0.0, 1.0 - mean_dev)
    else:
        line_consistency = 0.0

    role_header_ratio = sum(1 for line in lines if ROLE_HEADER_RE.match(line)) / n

    score = (
        separator_ratio * SEPARATOR_WEIGHT
        + line_consistency * LINE_LENGTH_WEIGHT
        + role_header_ratio * ROLE_HEADER_WEIGHT
    )
    score = min(1.0, max(0.0, score))

    is_tabular = n >= MIN_TABULAR_LINES and tabular_ratio > TABULAR_RATIO_THRESHOLD
    document_type, type_confidence = classify_document(text)

    return StructureAnalysis(
        is_tabular=is_tabular,
        structure_score=score,
        section_boundaries=tuple(find_section_boundaries(text)),
        separator_ratio=separator_ratio,
        tabular_ratio=tabular_ratio,
        line_length_consistency=line_consistency,
        role_header_ratio=role_header_ratio,
        line_count=n,
        document_type=document_type,
        document_type_confidence=type_confidence,
    )


def preprocess(document: Union[RawDocument, str]) -> tuple[str, StructureAnalysis]:
    """Normalize a document and analyze its structure in one pass."""
    raw = document.text if isinstance(document, RawDocument) else document
    text = normalize_text(raw)
    analysis = analyze_structure(text)
    logger.debug(
        f"Preprocessed {len(raw)} -> {len(text)} chars: "
        f"score={analysis.structure_score:.2f}, tabular={analysis.is_tabular}, "
        f"{len(analysis.section_boundaries)} headers"
    )
    return text, analysis
