"""
LLM Entity & Relationship Extractor
════════════════════════════════════

Asks the configured chat model for a JSON document of entities and
relationships found in one chunk of text.

Provider selection comes from ExtractionConfig (resolved once from
credentials):
  openai        → langchain_openai.ChatOpenAI
  azure_openai  → langchain_openai.AzureChatOpenAI
  mock          → offline heuristics only (see offline.py)

Degradation contract:
  Extraction is best-effort enrichment. A provider timeout, provider error,
  or unparsable response never propagates: the offline heuristic extractor
  runs instead and its (possibly empty) result is returned with
  used_fallback=True.

Normalization:
  • entity types       → EntityType (unknown → other)
  • relationship types → RelationshipType (unknown → relates_to)
  • confidences        → clamped to [0, 1], default 0.5 when missing
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from typing import Any, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from documind.core.config import ExtractionConfig, Provider
from documind.entities.offline import extract_offline
from documind.entities.types import ExtractedEntity, ExtractedRelationship, ExtractionResult
from documind.models.entities import EntityType, RelationshipType

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5

SYSTEM_PROMPT = (
    "You are an expert entity extractor. "
    "Always respond with valid JSON only, no markdown formatting."
)

EXTRACTION_PROMPT = """You are an expert entity and relationship extractor. Analyze the following text and extract:

1. **Named Entities**: People, organizations, locations, dates, concepts, products, events, topics, monetary values, and technologies mentioned in the text.

2. **Relationships**: Connections between the entities you identify.

For each entity, provide:
- name: The canonical/normalized name
- type: One of PERSON, ORGANIZATION, LOCATION, DATE, CONCEPT, PRODUCT, EVENT, TOPIC, MONEY, TECHNOLOGY, OTHER
- mentionText: The exact text as it appears in the document
- startOffset: Character position where the mention starts (0-indexed)
- endOffset: Character position where the mention ends
- confidence: Your confidence score from 0.0 to 1.0

For each relationship, provide:
- sourceEntityName: The name of the source entity
- sourceEntityType: The type of the source entity
- targetEntityName: The name of the target entity
- targetEntityType: The type of the target entity
- relationshipType: One of WORKS_FOR, REPORTS_TO, COLLABORATES, AUTHORED, MENTIONED, SUBSIDIARY_OF, PARTNER_OF, COMPETES_WITH, DISCUSSES, RELATES_TO, LOCATED_IN, OCCURRED_ON, INVOLVES, ASSOCIATED, OTHER
- confidence: Your confidence score from 0.0 to 1.0
- description: Brief description of the relationship

Return your response as valid JSON with this exact structure:
{
  "entities": [...],
  "relationships": [...]
}

Important guidelines:
- Be precise with character offsets - count from the beginning of the provided text
- Normalize names (e.g., "John Smith" not "john smith" or "JOHN SMITH")
- Extract dates in ISO format when possible (e.g., "2024-01-15")
- Include monetary values with currency symbols
- Only extract entities that are clearly named/identified in the text
- For relationships, only include those explicitly stated or strongly implied
- Assign higher confidence to explicit mentions, lower to inferences

TEXT TO ANALYZE:
"""


class ExtractionParseError(ValueError):
    """The provider answered, but not with the JSON document we asked for."""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def clamp_confidence(value: Any, default: float = DEFAULT_CONFIDENCE) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return min(1.0, max(0.0, number))


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _field(item: dict, *names: str) -> Any:
    for name in names:
        if item.get(name) not in (None, ""):
            return item[name]
    return None


def _text_field(item: dict, *names: str) -> Optional[str]:
    value = _field(item, *names)
    return value if isinstance(value, str) else None


def _strip_code_fences(raw: str) -> str:
    cleaned = raw.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_extraction_response(raw: str) -> tuple[list[ExtractedEntity], list[ExtractedRelationship]]:
    """
    Parse the model's JSON answer. Accepts camelCase (as prompted) and
    snake_case keys.

    Raises:
        ExtractionParseError on invalid JSON or a non-object top level.
    """
    try:
        parsed = json.loads(_strip_code_fences(raw))
    except json.JSONDecodeError as exc:
        raise ExtractionParseError(f"Invalid JSON from extraction provider: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ExtractionParseError(f"Expected a JSON object, got {type(parsed).__name__}")

    entities: list[ExtractedEntity] = []
    for item in parsed.get("entities") or []:
        if not isinstance(item, dict):
            continue
        name    = _field(item, "name")
        mention = _field(item, "mentionText", "mention_text")
        if not isinstance(name, str) or not isinstance(mention, str) or not name.strip():
            continue
        entities.append(ExtractedEntity(
            name=name.strip(),
            entity_type=EntityType.normalize(_field(item, "type", "entityType", "entity_type")),
            mention_text=mention,
            start_offset=_as_int(_field(item, "startOffset", "start_offset")),
            end_offset=_as_int(_field(item, "endOffset", "end_offset")),
            confidence=clamp_confidence(item.get("confidence")),
            context_before=_text_field(item, "contextBefore", "context_before"),
            context_after=_text_field(item, "contextAfter", "context_after"),
        ))

    relationships: list[ExtractedRelationship] = []
    for item in parsed.get("relationships") or []:
        if not isinstance(item, dict):
            continue
        source = _field(item, "sourceEntityName", "source_entity_name", "source")
        target = _field(item, "targetEntityName", "target_entity_name", "target")
        if not isinstance(source, str) or not isinstance(target, str):
            continue
        if not source.strip() or not target.strip():
            continue
        relationships.append(ExtractedRelationship(
            source_name=source.strip(),
            source_type=EntityType.normalize(_field(item, "sourceEntityType", "source_entity_type")),
            target_name=target.strip(),
            target_type=EntityType.normalize(_field(item, "targetEntityType", "target_entity_type")),
            relationship_type=RelationshipType.normalize(
                _field(item, "relationshipType", "relationship_type", "type")
            ),
            confidence=clamp_confidence(item.get("confidence")),
            description=_text_field(item, "description"),
        ))

    return entities, relationships


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

def build_chat_model(config: ExtractionConfig) -> BaseChatModel:
    if config.provider is Provider.AZURE_OPENAI:
        from langchain_openai import AzureChatOpenAI
        return AzureChatOpenAI(
            azure_deployment=config.model,
            azure_endpoint=config.endpoint,
            api_key=config.api_key,   # type: ignore[arg-type]
            api_version=config.api_version,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            model_kwargs={"response_format": {"type": "json_object"}},
        )

    from langchain_openai import ChatOpenAI
    return ChatOpenAI(
        model=config.model,
        api_key=config.api_key,   # type: ignore[arg-type]
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        model_kwargs={"response_format": {"type": "json_object"}},
    )


class EntityExtractor:
    """
    Chunk text → ExtractionResult. Never raises for provider problems.

    Usage::

        extractor = EntityExtractor(resolve_extraction_config(settings))
        result    = await extractor.extract(chunk.content)
    """

    def __init__(
        self,
        config: ExtractionConfig,
        llm:    Optional[BaseChatModel] = None,
    ) -> None:
        self._config = config
        self._llm    = llm

    @property
    def provider(self) -> Provider:
        return self._config.provider

    def _get_llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = build_chat_model(self._config)
        return self._llm

    async def extract(self, text: str) -> ExtractionResult:
        if not text or not text.strip():
            return ExtractionResult(provider=self._config.provider.value)

        if self._config.provider is Provider.MOCK:
            return extract_offline(text)

        t0 = time.monotonic()
        try:
            raw, tokens_used = await asyncio.wait_for(
                self._invoke(text),
                timeout=self._config.timeout_seconds,
            )
            entities, relationships = parse_extraction_response(raw)

        except asyncio.TimeoutError:
            logger.warning(
                "Entity extraction timed out after %.1fs | provider=%s — using offline fallback",
                self._config.timeout_seconds, self._config.provider.value,
            )
            return self._fallback(text)

        except Exception as exc:
            logger.warning(
                "Entity extraction failed | provider=%s error=%s: %s — using offline fallback",
                self._config.provider.value, type(exc).__name__, exc,
            )
            return self._fallback(text)

        latency_ms = (time.monotonic() - t0) * 1000
        logger.debug(
            "Entity extraction | provider=%s entities=%d relationships=%d tokens=%d latency_ms=%.0f",
            self._config.provider.value, len(entities), len(relationships), tokens_used, latency_ms,
        )
        return ExtractionResult(
            entities=entities,
            relationships=relationships,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
            provider=self._config.provider.value,
        )

    async def _invoke(self, text: str) -> tuple[str, int]:
        messages = [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(content=EXTRACTION_PROMPT + text),
        ]
        response = await self._get_llm().ainvoke(messages)

        content = response.content if isinstance(response.content, str) else json.dumps(response.content)
        usage = getattr(response, "usage_metadata", None) or {}
        return content, int(usage.get("total_tokens", 0))

    @staticmethod
    def _fallback(text: str) -> ExtractionResult:
        result = extract_offline(text)
        result.used_fallback = True
        return result
