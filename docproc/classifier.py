"""
Document Classifier Node - Assigns a configured document type and sub-type.

Document types are whatever the operator configured (Invoice, Receipt,
ID Document, ...), so classification always runs against the current
configuration rather than a fixed list.

Uses an LLM (OpenAI/Anthropic) when enabled, with keyword scoring against
type names, descriptions and data element names as the fallback. Results
below the review threshold are flagged for an operator to confirm.
"""

import os
import re
import json
import time
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple

from langchain_openai import ChatOpenAI
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from config_service import get_config_service
from state import ProcessingState

logger = logging.getLogger(__name__)

UNKNOWN_TYPE = "Unknown"

# Default confidence threshold below which documents are flagged for review
REVIEW_CONFIDENCE_THRESHOLD = 0.80


# ============================================================================
# Classification Result
# ============================================================================

@dataclass
class ClassificationResult:
    """Result of document classification."""

    document_type: str  # configured type name, or "Unknown"
    confidence: float  # 0.0 to 1.0
    method: str  # "llm", "keyword", "mock", "manual", "none"

    document_type_id: Optional[str] = None
    sub_type: Optional[str] = None
    sub_type_id: Optional[str] = None
    alternative_types: List[Tuple[str, float]] = field(default_factory=list)
    reasoning: Optional[str] = None
    processing_time_ms: float = 0.0
    needs_review: bool = False

    @property
    def is_unknown(self) -> bool:
        return self.document_type_id is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "document_type": self.document_type,
            "document_type_id": self.document_type_id,
            "sub_type": self.sub_type,
            "sub_type_id": self.sub_type_id,
            "confidence": round(self.confidence, 4),
            "method": self.method,
            "alternative_types": [
                {"type": t, "confidence": round(c, 4)} for t, c in self.alternative_types
            ],
            "reasoning": self.reasoning,
            "processing_time_ms": round(self.processing_time_ms, 2),
            "needs_review": self.needs_review,
        }


def unknown_result(reasoning: str = "Could not determine document type") -> ClassificationResult:
    return ClassificationResult(
        document_type=UNKNOWN_TYPE,
        confidence=0.0,
        method="none",
        reasoning=reasoning,
        needs_review=True,
    )


def parse_confidence(value: Any) -> float:
    """
    Model confidence as a 0..1 float.

    Percentages (1 < value <= 100) are rescaled. Anything else outside 0..1,
    or not a number at all, raises ValueError/TypeError.
    """
    if isinstance(value, bool):
        raise TypeError("confidence must be a number")
    confidence = float(value)
    if 1 < confidence <= 100:
        confidence /= 100
    if not 0 <= confidence <= 1:
        raise ValueError(f"confidence out of range: {value}")
    return confidence


# ============================================================================
# Classifier Configuration
# ============================================================================

@dataclass
class ClassifierConfig:
    """Configuration for document classification."""

    # LLM settings
    use_llm: bool = True
    llm_provider: str = "openai"  # "openai", "anthropic"
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.0
    llm_max_tokens: int = 500

    # Text sampling
    max_chars_for_classification: int = 3000

    # Fallback behavior
    use_keyword_fallback: bool = True
    keyword_min_confidence: float = 0.30

    # Confidence thresholds
    min_confidence_threshold: float = 0.50
    review_confidence_threshold: float = REVIEW_CONFIDENCE_THRESHOLD

    use_mock: bool = False


def config_from_env() -> ClassifierConfig:
    return ClassifierConfig(
        use_llm=os.getenv("CLASSIFIER_USE_LLM", "true").lower() == "true",
        llm_provider=os.getenv("CLASSIFIER_LLM_PROVIDER", "openai"),
        llm_model=os.getenv("CLASSIFIER_LLM_MODEL", "gpt-4o-mini"),
        use_mock=os.getenv("USE_MOCK_CLASSIFIER", "false").lower() == "true",
        review_confidence_threshold=float(
            os.getenv("REVIEW_CONFIDENCE_THRESHOLD", str(REVIEW_CONFIDENCE_THRESHOLD))
        ),
    )


# ============================================================================
# Helpers
# ============================================================================

def _find_by_name(items: List[Dict[str, Any]], name: Optional[str]) -> Optional[Dict[str, Any]]:
    wanted = (name or "").strip().lower()
    if not wanted:
        return None
    for item in items:
        if item.get("name", "").strip().lower() == wanted:
            return item
    return None


def _active(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [i for i in items if i.get("is_active", True)]


def _contains_phrase(text_lower: str, phrase: str) -> bool:
    phrase = phrase.strip().lower()
    if not phrase:
        return False
    return re.search(r"\b" + re.escape(phrase) + r"\b", text_lower) is not None


# ============================================================================
# Keyword-Based Classification
# ============================================================================

def _score_candidate(text_lower: str, candidate: Dict[str, Any]) -> float:
    """
    Score how well text fits a document type or sub-type.

    Name in text: 0.9. Description in text: 0.7. Otherwise the share of
    configured element names (or any of their aliases) found, capped at 0.8.
    """
    if _contains_phrase(text_lower, candidate.get("name", "")):
        return 0.9
    description = candidate.get("description") or ""
    if len(description) > 3 and _contains_phrase(text_lower, description):
        return 0.7

    elements = candidate.get("data_elements") or []
    if not elements:
        return 0.0
    found = 0
    for element in elements:
        phrases = [element.get("name", "")] + list(element.get("aliases") or [])
        if any(_contains_phrase(text_lower, p) for p in phrases):
            found += 1
    return min(0.8, 0.8 * found / len(elements))


def classify_by_keywords(
    text: str,
    document_types: List[Dict[str, Any]],
    config: Optional[ClassifierConfig] = None,
) -> ClassificationResult:
    """
    Classify by looking for configured names, descriptions and element
    labels in the text.

    Args:
        text: Document text
        document_types: Configured types, hydrated with data_elements and sub_types
        config: Classifier configuration

    Returns:
        Best-scoring type with up to three alternatives, or UNKNOWN
    """
    config = config or ClassifierConfig()
    start_time = time.time()
    text_lower = (text or "").lower()

    scores = []
    for doc_type in _active(document_types):
        score = _score_candidate(text_lower, doc_type)
        if score > 0:
            scores.append((doc_type, score))

    if not scores:
        return unknown_result("No configured document type matched the text")

    scores.sort(key=lambda s: s[1], reverse=True)
    best_type, best_score = scores[0]

    result = ClassificationResult(
        document_type=best_type["name"],
        document_type_id=best_type["id"],
        confidence=best_score,
        method="keyword",
        alternative_types=[(t["name"], s) for t, s in scores[1:4]],
        reasoning=f"Matched configured keywords for {best_type['name']}",
    )

    sub_scores = [
        (sub_type, _score_candidate(text_lower, sub_type))
        for sub_type in _active(best_type.get("sub_types") or [])
    ]
    sub_scores = [s for s in sub_scores if s[1] > 0]
    if sub_scores:
        best_sub, _ = max(sub_scores, key=lambda s: s[1])
        result.sub_type = best_sub["name"]
        result.sub_type_id = best_sub["id"]

    result.processing_time_ms = (time.time() - start_time) * 1000
    return result


# ============================================================================
# LLM-Based Classification
# ============================================================================

CLASSIFICATION_SYSTEM_PROMPT = """You are a document classifier. Your job is to identify which of the configured document types a document belongs to, based on its content.

Respond with JSON only:
{
  "document_type": "<one of the configured type names, or Unknown>",
  "sub_type": "<one of that type's sub-type names, or null>",
  "confidence": <number between 0 and 1>,
  "reasoning": "<one sentence>"
}"""


def _describe_types(document_types: List[Dict[str, Any]]) -> str:
    lines = []
    for doc_type in _active(document_types):
        line = f"- {doc_type['name']}"
        if doc_type.get("description"):
            line += f": {doc_type['description']}"
        sub_types = [s["name"] for s in _active(doc_type.get("sub_types") or [])]
        if sub_types:
            line += f" (sub-types: {', '.join(sub_types)})"
        lines.append(line)
    return "\n".join(lines)


def _build_llm(config: ClassifierConfig):
    if config.llm_provider == "openai":
        if not os.getenv("OPENAI_API_KEY"):
            logger.warning("OPENAI_API_KEY not set")
            return None
        return ChatOpenAI(
            model=config.llm_model,
            temperature=config.llm_temperature,
            max_completion_tokens=config.llm_max_tokens,
        )
    if config.llm_provider == "anthropic":
        if not os.getenv("ANTHROPIC_API_KEY"):
            logger.warning("ANTHROPIC_API_KEY not set")
            return None
        return ChatAnthropic(  # type: ignore[call-arg]
            model_name=config.llm_model,
            temperature=config.llm_temperature,
        )
    logger.warning(f"Unknown LLM provider: {config.llm_provider}")
    return None


def classify_with_llm(
    text: str,
    document_types: List[Dict[str, Any]],
    config: Optional[ClassifierConfig] = None,
) -> Optional[ClassificationResult]:
    """
    Classify document using LLM.

    Args:
        text: Document text content
        document_types: Configured types, hydrated with sub_types
        config: Classifier configuration

    Returns:
        ClassificationResult or None if LLM unavailable/fails
    """
    config = config or ClassifierConfig()
    if not config.use_llm or not _active(document_types):
        return None

    start_time = time.time()
    user_prompt = (
        f"CONFIGURED DOCUMENT TYPES:\n{_describe_types(document_types)}\n\n"
        f"DOCUMENT CONTENT:\n{text[:config.max_chars_for_classification]}"
    )

    try:
        llm = _build_llm(config)
        if llm is None:
            return None

        response = llm.invoke([
            SystemMessage(content=CLASSIFICATION_SYSTEM_PROMPT),
            HumanMessage(content=user_prompt),
        ])
        response_text: str = str(response.content)

        # Handle potential markdown code blocks
        if "```json" in response_text:
            response_text = response_text.split("```json")[1].split("```")[0]
        elif "```" in response_text:
            response_text = response_text.split("```")[1].split("```")[0]

        result_json = json.loads(response_text.strip())
        if not isinstance(result_json, dict):
            raise ValueError(f"expected a JSON object, got {type(result_json).__name__}")

        reasoning = str(result_json.get("reasoning") or "")
        doc_type = _find_by_name(_active(document_types), result_json.get("document_type"))
        if doc_type is None:
            result = unknown_result(reasoning or "LLM did not recognise a configured type")
            result.method = "llm"
            result.processing_time_ms = (time.time() - start_time) * 1000
            return result

        sub_type = _find_by_name(_active(doc_type.get("sub_types") or []), result_json.get("sub_type"))
        confidence = parse_confidence(result_json.get("confidence", 0.5))
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse LLM response as JSON: {e}")
        return None
    except (ValueError, TypeError, AttributeError) as e:
        logger.error(f"Unusable LLM classification response: {e}")
        return None
    except Exception as e:
        logger.error(f"LLM classification failed: {e}")
        return None

    return ClassificationResult(
        document_type=doc_type["name"],
        document_type_id=doc_type["id"],
        sub_type=sub_type["name"] if sub_type else None,
        sub_type_id=sub_type["id"] if sub_type else None,
        confidence=confidence,
        method="llm",
        reasoning=reasoning,
        processing_time_ms=(time.time() - start_time) * 1000,
    )


# ============================================================================
# Main Classification Function
# ============================================================================

def _get_mock_classification(text: str, document_types: List[Dict[str, Any]]) -> ClassificationResult:
    """Keyword classification dressed up with high confidence, for local runs."""
    result = classify_by_keywords(text, document_types)
    if not result.is_unknown:
        result.confidence = max(result.confidence, 0.95)
    result.method = "mock"
    return result


def classify_document(
    text: str,
    document_types: List[Dict[str, Any]],
    config: Optional[ClassifierConfig] = None,
) -> ClassificationResult:
    """
    Classify a document using the best available method.

    Tries LLM first, falls back to keyword-based classification, and flags
    the result for review when confidence is below the review threshold.
    """
    config = config or ClassifierConfig()

    if not (text or "").strip():
        return unknown_result("Document has no text to classify")

    if config.use_mock:
        result = _get_mock_classification(text, document_types)
    else:
        result = None
        if config.use_llm:
            llm_result = classify_with_llm(text, document_types, config)
            if llm_result and not llm_result.is_unknown and llm_result.confidence >= config.min_confidence_threshold:
                logger.info(f"LLM classified as {llm_result.document_type} "
                            f"({llm_result.confidence:.1%} confidence)")
                result = llm_result

        if result is None and config.use_keyword_fallback:
            keyword_result = classify_by_keywords(text, document_types, config)
            if not keyword_result.is_unknown and keyword_result.confidence >= config.keyword_min_confidence:
                logger.info(f"Keyword classified as {keyword_result.document_type} "
                            f"({keyword_result.confidence:.1%} confidence)")
                result = keyword_result

        if result is None:
            result = unknown_result()

    result.needs_review = result.is_unknown or result.confidence < config.review_confidence_threshold
    return result


def manual_classification(
    doc_type: Dict[str, Any],
    sub_type: Optional[Dict[str, Any]] = None,
) -> ClassificationResult:
    """Result for a type the operator picked by hand."""
    return ClassificationResult(
        document_type=doc_type["name"],
        document_type_id=doc_type["id"],
        sub_type=sub_type["name"] if sub_type else None,
        sub_type_id=sub_type["id"] if sub_type else None,
        confidence=1.0,
        method="manual",
        reasoning="Selected by operator",
    )


# ============================================================================
# LangGraph Node
# ============================================================================

def document_classifier_node(state: ProcessingState) -> dict:
    """
    Node: Document Classifier

    Classifies the document against the configured types, unless the
    operator already chose one.

    Returns:
        dict with classification, needs_review and updated document_data
    """
    print("--- NODE: Classifier ---")

    service = get_config_service()
    document_data = dict(state.get("document_data") or {})

    selected_id = state.get("selected_document_type_id")
    if selected_id:
        try:
            doc_type = service.get_document_type(selected_id)
            sub_type = None
            if state.get("selected_sub_type_id"):
                sub_type = service.get_sub_type(selected_id, state["selected_sub_type_id"])
        except KeyError as e:
            logger.error(f"Selected document type not found: {e}")
            return {"status": "Failed", "errors": list(state.get("errors", [])) + [str(e)]}
        result = manual_classification(doc_type, sub_type)
    else:
        document_types = service.get_full_configuration()["document_types"]
        result = classify_document(document_data.get("extracted_text", ""), document_types, config_from_env())

    print(f"   Classified as {result.document_type}"
          f"{' / ' + result.sub_type if result.sub_type else ''} "
          f"({result.confidence:.0%}, {result.method})")

    document_data.update({
        "document_type": result.document_type,
        "document_type_id": result.document_type_id,
        "sub_type": result.sub_type,
        "sub_type_id": result.sub_type_id,
        "confidence": result.confidence,
    })
    return {
        "classification": result.to_dict(),
        "needs_review": result.needs_review,
        "document_data": document_data,
    }
