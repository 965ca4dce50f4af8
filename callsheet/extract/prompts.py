"""
Prompts and response parsing for LLM contact extraction.

The model must answer with a single JSON object {"contacts": [...]}. Markdown
code fences around the JSON are tolerated; anything else that cannot be
parsed raises ResponseParseError, which the orchestrator absorbs as a chunk
that contributed zero contacts.
"""

import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from ..parse.models import DocumentType
from .errors import ResponseParseError
from .schemas import AIContact, ContactCandidate

logger = logging.getLogger(__name__)


# =============================================================================
# SYSTEM PROMPTS
# =============================================================================

SYSTEM_PROMPT = """You extract contact information from film, photo and video production call sheets.

Return ONLY a JSON object of the form:
{"contacts": [{"name": "...", "role": "...", "email": "...", "phone": "...", "company": "...", "confidence": 0.0}]}

Rules:
1. Include a person only if the text gives their name AND at least one of email or phone
2. Copy emails and phone numbers exactly as written; never invent or complete them
3. Use null for any field that is not present
4. "role" is the person's job on the shoot (PHOTOGRAPHER, MAKEUP, STYLIST, PRODUCER, ...)
5. "company" is an agency or company named next to the person, otherwise null
6. "confidence" is your certainty between 0 and 1 that the record is correct
7. If there are no contacts, return {"contacts": []}

Call sheets lay out roles in several ways:

Role on the same line:
PHOTOGRAPHER: Jane Doe / 555-123-4567 / jane@example.com
-> {"name": "Jane Doe", "role": "PHOTOGRAPHER", "phone": "555-123-4567", "email": "jane@example.com"}

Role on its own line, contacts below it:
HAIR
Sam Lee  555-987-6543  sam@example.com
-> {"name": "Sam Lee", "role": "HAIR", "phone": "555-987-6543", "email": "sam@example.com"}

C/O lines are representatives and inherit the role of the person above them:
PHOTOGRAPHER: Jane Doe / 555-123-4567
C/O BECKY LEWIS / 212.206.0737 / BLEWIS@ARTANDCOMMERCE.COM
-> {"name": "Becky Lewis", "role": "PHOTOGRAPHER", "phone": "212.206.0737", "email": "BLEWIS@ARTANDCOMMERCE.COM"}"""


VALIDATION_SYSTEM_PROMPT = """You check contact lists that were extracted from production call sheets by a rule-based parser.

Return ONLY a JSON object of the form:
{"contacts": [{"name": "...", "role": "...", "email": "...", "phone": "..."}], "confidence": 0.0}

List only the contacts that are correctly supported by the document text, with any
field the parser got wrong corrected. "confidence" is your overall certainty (0 to 1)
that the confirmed list is accurate."""


# =============================================================================
# USER PROMPTS
# =============================================================================

CHUNK_PROMPT = """Extract every contact from this call sheet text.{guidance}{position}{context}{preferences}

TEXT:
{text}"""


VALIDATION_PROMPT = """Document excerpt:
{excerpt}

Contacts found by the parser:
{contacts}

Confirm or correct these contacts."""


# Extra instructions per document type; UNKNOWN gets none
DOCUMENT_TYPE_GUIDANCE = {
    DocumentType.CALL_SHEET: (
        "This is a production call sheet. Cover crew members (photographer, makeup, "
        "stylist, assistants), talent with their agencies, the production team, and "
        "location contacts and vendors."
    ),
    DocumentType.CONTACT_LIST: (
        "This is a contact list or directory. Every row is usually one person; "
        "keep any role or company given next to the name."
    ),
    DocumentType.PRODUCTION_SCHEDULE: (
        "This is a production schedule. Contacts are mixed in with call times and "
        "scene notes; ignore times and locations that are not attached to a person."
    ),
    DocumentType.CREW_LIST: (
        "This is a crew list. Record each person's department or role as their role."
    ),
    DocumentType.TALENT_SHEET: (
        "This is a talent sheet. Record models and actors with role TALENT and put "
        "their agency or representation in company; agents listed under them are "
        "separate contacts."
    ),
}

VALIDATION_EXCERPT_CHARS = 500
VALIDATION_MAX_CONTACTS = 10


def build_chunk_prompt(
    text: str,
    chunk_index: int = 0,
    total_chunks: int = 1,
    context_section: Optional[str] = None,
    role_preferences: Optional[list[str]] = None,
    document_type: Optional[DocumentType] = None,
) -> str:
    """
    Build the user prompt for one chunk.

    Args:
        text: Chunk content
        chunk_index: Zero-based chunk position
        total_chunks: Number of chunks in the plan
        context_section: Section the previous chunk ended in; contacts at the
            top of this chunk without their own header belong to it
        role_preferences: Roles the caller cares most about
        document_type: Classified document type; adds type-specific guidance
    """
    guidance = ""
    if document_type in DOCUMENT_TYPE_GUIDANCE:
        guidance = "\n" + DOCUMENT_TYPE_GUIDANCE[document_type]
    position = ""
    if total_chunks > 1:
        position = f"\nThis is part {chunk_index + 1} of {total_chunks} of the document."
    context = ""
    if context_section:
        context = (
            f"\nThe previous part ended in the \"{context_section}\" section; lines before "
            f"the first header here belong to that section."
        )
    preferences = ""
    if role_preferences:
        preferences = f"\nPay particular attention to these roles: {', '.join(role_preferences)}."
    return CHUNK_PROMPT.format(
        guidance=guidance,
        position=position,
        context=context,
        preferences=preferences,
        text=text,
    )


def build_validation_prompt(text: str, contacts: list[ContactCandidate]) -> str:
    """Prompt for the fast-path sanity check: short excerpt plus the first few contacts."""
    listed = [
        {"name": c.name, "role": c.role, "email": c.email, "phone": c.phone}
        for c in contacts[:VALIDATION_MAX_CONTACTS]
    ]
    return VALIDATION_PROMPT.format(
        excerpt=text[:VALIDATION_EXCERPT_CHARS],
        contacts=json.dumps(listed, indent=2),
    )


# =============================================================================
# RESPONSE PARSING
# =============================================================================

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?|\n?\s*```\s*$")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def strip_code_fences(content: str) -> str:
    """Remove a surrounding ```json ... ``` wrapper if present."""
    return _FENCE_RE.sub("", content.strip()).strip()


def parse_json_object(content: Optional[str]) -> dict:
    """
    Parse a JSON object out of a model response.

    Tries the fence-stripped text first, then the outermost {...} span.

    Raises:
        ResponseParseError: If no JSON object can be recovered
    """
    if not content or not content.strip():
        raise ResponseParseError("Empty response")

    cleaned = strip_code_fences(content)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _OBJECT_RE.search(cleaned)
        if not match:
            raise ResponseParseError(f"No JSON object in response: {content[:200]}")
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"Could not parse JSON from response: {content[:200]}") from e

    if not isinstance(data, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_contacts_response(content: Optional[str]) -> list[AIContact]:
    """
    Parse {"contacts": [...]} into AIContact items.

    Malformed individual items are skipped; a missing or non-list
    "contacts" key is a parse error.
    """
    data = parse_json_object(content)
    items = data.get("contacts")
    if not isinstance(items, list):
        raise ResponseParseError("Response has no 'contacts' array")

    contacts = []
    for item in items:
        if not isinstance(item, dict):
            logger.debug(f"Skipping non-object contact item: {item!r}")
            continue
        try:
            contacts.append(AIContact.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Skipping malformed contact item {item!r}: {e}")
    return contacts


def parse_validation_response(content: Optional[str]) -> tuple[list[AIContact], Optional[float]]:
    """Parse the sanity-check answer into confirmed contacts and overall confidence."""
    data = parse_json_object(content)
    contacts = parse_contacts_response(json.dumps({"contacts": data.get("contacts", [])}))
    confidence = data.get("confidence")
    try:
        confidence = None if confidence is None else min(1.0, max(0.0, float(confidence)))
    except (TypeError, ValueError):
        confidence = None
    return contacts, confidence
