"""
Offline Entity Extraction  —  Deterministic Heuristics
══════════════════════════════════════════════════════

Used when no LLM provider is configured, and as the fallback when the
provider call fails. No network, no randomness.

  Pattern                                   Type              Confidence
  ────────────────────────────────────────  ────────────────  ──────────
  Capitalized word sequences (not stopword) guessed (below)   0.6
  Dates (3/14/2024, 2024-03-14, March 14…)  date              0.9
  Currency ($1,200.50, $3 million)          money             0.95

Candidates are deduplicated on (lowercased name, type), keeping the most
confident instance. No relationships are produced.
"""

from __future__ import annotations

import math
import re
import time

from documind.entities.types import ExtractedEntity, ExtractionResult
from documind.models.entities import EntityType

NAME_CONFIDENCE  = 0.6
DATE_CONFIDENCE  = 0.9
MONEY_CONFIDENCE = 0.95

_CAPITALIZED_RE = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\b")

_DATE_RE = re.compile(
    r"\b(\d{1,2}/\d{1,2}/\d{2,4}"
    r"|\d{4}-\d{2}-\d{2}"
    r"|(?:January|February|March|April|May|June|July|August|September|October|November|December)"
    r"\s+\d{1,2},?\s+\d{4})\b",
    re.IGNORECASE,
)

_MONEY_RE = re.compile(
    r"\$[\d,]+(?:\.\d{2})?(?:\s*(?:million|billion|trillion))?",
    re.IGNORECASE,
)

_ORGANIZATION_RE = re.compile(
    r"\b(Inc|Corp|LLC|Ltd|Company|Co|Group|Holdings|Partners|Associates|Foundation|Institute"
    r"|University|College|School|Hospital|Bank|Technologies|Solutions|Systems|Services)\b",
    re.IGNORECASE,
)
_LOCATION_RE = re.compile(
    r"\b(Street|Avenue|Road|Boulevard|City|State|County|Country|North|South|East|West|New|San|Los|Las)\b",
    re.IGNORECASE,
)
_TECHNOLOGY_RE = re.compile(
    r"\b(API|SDK|Framework|Platform|Software|Hardware|Cloud|AI|ML|Database|Server|Network)\b",
    re.IGNORECASE,
)

_STOPWORDS = frozenset({
    "The", "This", "That", "These", "Those", "What", "Which", "When", "Where",
    "Why", "How", "For", "And", "But", "With", "About", "From", "Into",
    "During", "Before", "After", "Above", "Below", "Between", "Under", "Again",
    "Further", "Then", "Once", "Here", "There", "All", "Each", "Few", "More",
    "Most", "Other", "Some", "Such", "Only", "Own", "Same", "Than", "Very",
    "Just", "Also", "Now", "However", "Therefore", "Although", "Because",
    "While", "If", "Or", "As", "Until", "So", "Yet", "Both", "Either",
    "Neither", "Not", "Can", "Will", "Should", "Would", "Could", "Must",
    "May", "Might", "Shall",
})


def guess_entity_type(name: str) -> EntityType:
    if _ORGANIZATION_RE.search(name):
        return EntityType.ORGANIZATION
    if _LOCATION_RE.search(name):
        return EntityType.LOCATION
    if _TECHNOLOGY_RE.search(name):
        return EntityType.TECHNOLOGY
    # Short proper-noun runs are most often people's names
    if len(name.split()) <= 3:
        return EntityType.PERSON
    return EntityType.CONCEPT


def extract_offline(text: str) -> ExtractionResult:
    t0 = time.monotonic()
    candidates: list[ExtractedEntity] = []

    for match in _CAPITALIZED_RE.finditer(text):
        name = match.group(1)
        if len(name) <= 2 or name in _STOPWORDS:
            continue
        candidates.append(ExtractedEntity(
            name=name,
            entity_type=guess_entity_type(name),
            mention_text=name,
            start_offset=match.start(1),
            end_offset=match.end(1),
            confidence=NAME_CONFIDENCE,
        ))

    for match in _DATE_RE.finditer(text):
        value = match.group(1)
        candidates.append(ExtractedEntity(
            name=value,
            entity_type=EntityType.DATE,
            mention_text=value,
            start_offset=match.start(1),
            end_offset=match.end(1),
            confidence=DATE_CONFIDENCE,
        ))

    for match in _MONEY_RE.finditer(text):
        value = match.group(0)
        candidates.append(ExtractedEntity(
            name=value,
            entity_type=EntityType.MONEY,
            mention_text=value,
            start_offset=match.start(),
            end_offset=match.end(),
            confidence=MONEY_CONFIDENCE,
        ))

    return ExtractionResult(
        entities=deduplicate_entities(candidates),
        relationships=[],
        tokens_used=math.ceil(len(text) / 4),
        latency_ms=(time.monotonic() - t0) * 1000,
        provider="offline",
    )


def deduplicate_entities(entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
    """Keep the most confident entity per (lowercased name, type); first-seen order."""
    best: dict[tuple[str, EntityType], ExtractedEntity] = {}
    for entity in entities:
        key = (entity.name.lower(), entity.entity_type)
        current = best.get(key)
        if current is None or entity.confidence > current.confidence:
            best[key] = entity
    return list(best.values())
