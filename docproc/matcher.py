"""
Field Matcher Node - Matches extracted labels to configured data elements.

OCR and form analysis return whatever labels the document uses
("DATE_OF_BIRTH", "D.O.B.", "Birth date"). Operators configure data elements
with their own names and aliases. This module pairs the two:

1. Direct pass: exact match on upper-cased names/aliases
2. Fuzzy pass: find_matching_element, a sequence of string heuristics
   (normalisation, alias lists, word overlap, synonyms), first hit wins
3. Optional LLM pass for whatever is still unmatched

Each configured element is consumed by at most one extracted field.
"""

import os
import re
import json
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage

from config_service import get_config_service
from docproc.classifier import parse_confidence
from state import ProcessingState

logger = logging.getLogger(__name__)


# ============================================================================
# Mapping Tables
# ============================================================================

# OCR field name -> the configured name it usually corresponds to
COMMON_FIELD_MAPPINGS: Dict[str, str] = {
    "DOCUMENT_NUMBER": "Passport Number",
    "PASSPORT_NUMBER": "Passport Number",
    "DATE_OF_ISSUE": "Issue Date",
    "ISSUE_DATE": "Issue Date",
    "DATE_OF_BIRTH": "Date of Birth",
    "EXPIRATION_DATE": "Expiration Date",
    "DATE_OF_EXPIRY": "Expiration Date",
    "FIRST_NAME": "First Name",
    "LAST_NAME": "Last Name",
    "GIVEN_NAME": "First Name",
    "SURNAME": "Last Name",
    "FAMILY_NAME": "Last Name",
    "NATIONALITY": "Nationality",
    "PLACE_OF_BIRTH": "Place of Birth",
    "SEX": "Gender",
    "GENDER": "Gender",
    "ID_NUMBER": "ID Number",
}

# OCR field name -> every configured name it may correspond to
FIELD_MAPPING_TABLE: Dict[str, List[str]] = {
    "FIRST_NAME": ["First Name", "Given Name", "Prénom"],
    "GIVEN_NAME": ["First Name", "Given Name", "Prénom"],
    "LAST_NAME": ["Last Name", "Family Name", "Surname", "Nom"],
    "FAMILY_NAME": ["Last Name", "Family Name", "Surname", "Nom"],
    "MIDDLE_NAME": ["Middle Name"],
    "FULL_NAME": ["Full Name", "Name", "Complete Name"],
    "DATE_OF_BIRTH": ["Date of Birth", "DOB", "Birth Date"],
    "DOB": ["Date of Birth", "DOB", "Birth Date"],
    "BIRTH_DATE": ["Date of Birth", "DOB", "Birth Date"],
    "BIRTHDATE": ["Date of Birth", "DOB", "Birth Date"],
    "DOCUMENT_NUMBER": ["Passport Number", "Document Number", "Document ID"],
    "PASSPORT_NUMBER": ["Passport Number", "Document Number"],
    "ID_NUMBER": ["Passport Number", "Document Number", "ID Number"],
    "DATE_OF_ISSUE": ["Date of Issue", "Issue Date"],
    "ISSUE_DATE": ["Date of Issue", "Issue Date"],
    "DATE_OF_EXPIRY": ["Expiration Date", "Expiry Date"],
    "EXPIRY_DATE": ["Expiration Date", "Expiry Date"],
    "EXPIRATION_DATE": ["Expiration Date", "Expiry Date"],
    "NATIONALITY": ["Nationality", "Citizenship"],
    "PLACE_OF_BIRTH": ["Place of Birth", "Birth Place"],
    "MRZ_CODE": ["MRZ Code", "Machine Readable Zone"],
    "ID_TYPE": ["ID Type", "Document Type"],
}

# Term in a configured name -> terms a document may use instead
COMMON_SYNONYMS: Dict[str, List[str]] = {
    "birth": ["dob", "born", "birthday"],
    "expire": ["expiry", "expiration", "valid until"],
    "issue": ["issued", "created"],
    "gender": ["sex"],
    "nationality": ["citizen", "country"],
    "passport": ["travel document", "pass"],
    "id": ["identification", "identity", "document"],
    "name": ["fullname", "full name"],
    "first": ["given", "forename"],
    "last": ["surname", "family"],
}

# Shortest word that counts in word-by-word comparisons
MIN_SIGNIFICANT_WORD_LENGTH = 3


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class NormalizedLabel:
    """Three normalised spellings of a label, compared side by side."""
    basic: str  # "dateofbirth"
    with_underscores: str  # "date_of_birth"
    words_only: str  # "date of birth"

    @property
    def words(self) -> List[str]:
        return self.words_only.split(" ")


@dataclass
class ElementMatch:
    """A configured element chosen for a label, and the heuristic that chose it."""
    element: Dict[str, Any]
    method: str
    matched_text: Optional[str] = None  # alias or synonym that matched


@dataclass
class ElementMatchResult:
    """Output of match_data_elements."""
    matches: List[Dict[str, Any]] = field(default_factory=list)
    unmatched_extracted: List[Dict[str, Any]] = field(default_factory=list)
    unmatched_configured: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matches": self.matches,
            "unmatched_extracted": self.unmatched_extracted,
            "unmatched_configured": self.unmatched_configured,
        }


@dataclass
class MatcherConfig:
    """Configuration for the field matcher."""
    use_llm: bool = False
    llm_model: str = "gpt-4o"
    llm_temperature: float = 0.01
    min_llm_confidence: float = 0.5


# ============================================================================
# Heuristic Matching
# ============================================================================

def normalize_label(text: str) -> NormalizedLabel:
    """
    Normalise a label three ways.

    >>> normalize_label("Date of Birth").with_underscores
    'date_of_birth'
    """
    if not text:
        return NormalizedLabel("", "", "")
    lower = text.lower()
    basic = re.sub(r"[^a-z0-9]", "", lower)
    with_underscores = re.sub(r"[^a-z0-9_]", "", re.sub(r"\s+", "_", lower))
    words_only = re.sub(r"\s+", " ", re.sub(r"[^a-z0-9\s]", " ", lower)).strip()
    return NormalizedLabel(basic, with_underscores, words_only)


def _same_label(a: NormalizedLabel, b: NormalizedLabel) -> bool:
    return (
        a.basic == b.basic
        or a.with_underscores == b.with_underscores
        or a.words_only == b.words_only
    )


def _contains_either_way(a: str, b: str) -> bool:
    return a in b or b in a


def _significant_words(label: NormalizedLabel) -> List[str]:
    return [w for w in label.words if len(w) >= MIN_SIGNIFICANT_WORD_LENGTH]


def _all_words_covered(words: List[str], other_words: List[str]) -> bool:
    """Every word is significant and has a counterpart that contains it or is contained by it."""
    return all(
        len(word) >= MIN_SIGNIFICANT_WORD_LENGTH
        and any(_contains_either_way(word, other) for other in other_words)
        for word in words
    )


def _direct_mapping_candidates(label: str) -> List[str]:
    key = re.sub(r"\s+", "_", label.strip()).upper()
    candidates = []
    if key in COMMON_FIELD_MAPPINGS:
        candidates.append(COMMON_FIELD_MAPPINGS[key])
    for name in FIELD_MAPPING_TABLE.get(key, []):
        if name not in candidates:
            candidates.append(name)
    return candidates


def find_matching_element(
    label: str,
    elements: List[Dict[str, Any]],
) -> Optional[ElementMatch]:
    """
    Find the configured element a label most plausibly refers to.

    Passes run in order and the first hit wins:
    direct mapping, exact name/alias, partial alias, alias word overlap,
    name word overlap, partial name, synonyms.

    Args:
        label: Label as found in the document
        elements: Configured data elements to choose from

    Returns:
        ElementMatch, or None when nothing looks like a reasonable guess
    """
    if not label or not elements:
        return None

    extracted = normalize_label(label)

    # Direct mapping from OCR field names
    for candidate in _direct_mapping_candidates(label):
        for element in elements:
            if element.get("name", "").lower() == candidate.lower():
                logger.debug(f"Direct mapping match: {label!r} -> {element['name']!r}")
                return ElementMatch(element, "direct_mapping", candidate)

    # First pass: names and aliases
    extracted_words = _significant_words(extracted)
    for element in elements:
        if _same_label(normalize_label(element.get("name", "")), extracted):
            return ElementMatch(element, "exact_name")

        normalized_aliases = [(alias, normalize_label(alias)) for alias in element_aliases(element)]

        for alias, normalized in normalized_aliases:
            if _same_label(normalized, extracted):
                return ElementMatch(element, "exact_alias", alias)

        for alias, normalized in normalized_aliases:
            if normalized.basic and extracted.basic and _contains_either_way(normalized.basic, extracted.basic):
                return ElementMatch(element, "partial_alias", alias)

        for alias, normalized in normalized_aliases:
            alias_words = _significant_words(normalized)
            if not alias_words or not extracted_words:
                continue
            if (_all_words_covered(alias_words, extracted_words)
                    or _all_words_covered(extracted_words, alias_words)):
                return ElementMatch(element, "word_alias", alias)

    # Second pass: element name word by word ("Birth Date" vs "Date Birth")
    for element in elements:
        element_words = normalize_label(element.get("name", "")).words
        if (_all_words_covered(element_words, extracted.words)
                or _all_words_covered(extracted.words, element_words)):
            return ElementMatch(element, "word_overlap")

    # Third pass: one name contains the other
    if extracted.basic:
        for element in elements:
            element_basic = normalize_label(element.get("name", "")).basic
            if element_basic and _contains_either_way(element_basic, extracted.basic):
                return ElementMatch(element, "partial_name")

    # Fourth pass: synonyms
    for element in elements:
        element_words_only = normalize_label(element.get("name", "")).words_only
        for term, related_terms in COMMON_SYNONYMS.items():
            if term not in element_words_only:
                continue
            for related in related_terms:
                if related in extracted.words_only:
                    return ElementMatch(element, "synonym", related)

    logger.debug(f"No match found for label {label!r}")
    return None


def _direct_key(text: str) -> str:
    return re.sub(r"[^A-Z0-9_]", "", (text or "").upper())


def element_aliases(element: Dict[str, Any]) -> List[str]:
    """Aliases as a list of strings; a bare string counts as one alias."""
    aliases = element.get("aliases") or []
    if isinstance(aliases, str):
        return [aliases]
    return [a for a in aliases if isinstance(a, str)]


def _find_direct_match(label: str, elements: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Exact match ignoring case and punctuation, on the name or any alias."""
    key = _direct_key(label)
    if not key:
        return None
    for element in elements:
        if _direct_key(element.get("name", "")) == key:
            return element
        if any(_direct_key(alias) == key for alias in element_aliases(element)):
            return element
    return None


def apply_element(extracted_field: Dict[str, Any], element: Dict[str, Any], method: str) -> Dict[str, Any]:
    """Copy of the field relabelled with the configured element's name and rules."""
    matched = dict(extracted_field)
    matched["original_label"] = extracted_field.get("label")
    matched["label"] = element.get("name")
    matched["element_id"] = element.get("id")
    matched["element_type"] = element.get("type")
    matched["data_type"] = element.get("type") or extracted_field.get("data_type")
    matched["category"] = element.get("category") or extracted_field.get("category") or "Unknown"
    matched["action"] = element.get("action")
    matched["is_configured"] = True
    matched["match_method"] = method

    pattern = element.get("pattern")
    if pattern and matched.get("value"):
        try:
            matched["pattern_valid"] = re.fullmatch(pattern, str(matched["value"]).strip()) is not None
        except re.error as e:
            logger.warning(f"Invalid pattern on element {element.get('id')}: {e}")
            matched["pattern_valid"] = False
    return matched


def missing_element_placeholder(element: Dict[str, Any]) -> Dict[str, Any]:
    """Field standing in for a configured element the document did not contain."""
    return {
        "id": f"missing-{element.get('id')}",
        "label": element.get("name"),
        "value": "",
        "data_type": element.get("type"),
        "confidence": 0,
        "bounding_box": None,
        "element_id": element.get("id"),
        "element_type": element.get("type"),
        "category": element.get("category"),
        "action": element.get("action"),
        "is_configured": True,
        "missing": True,
        "required_but_missing": bool(element.get("required")),
    }


def match_data_elements(
    extracted_fields: List[Dict[str, Any]],
    configured_elements: List[Dict[str, Any]],
) -> ElementMatchResult:
    """
    Pair extracted fields with configured data elements.

    Matched fields keep their own id and take the configured name, type,
    category and action. Configured elements nobody matched come back as
    placeholder fields with missing=True.
    """
    result = ElementMatchResult()
    remaining = list(configured_elements)
    pending: List[Dict[str, Any]] = []

    for extracted_field in extracted_fields:
        label = extracted_field.get("label")
        element = _find_direct_match(label, remaining) if label else None
        if element:
            remaining.remove(element)
            result.matches.append(apply_element(extracted_field, element, "direct"))
        else:
            pending.append(extracted_field)

    for extracted_field in pending:
        label = extracted_field.get("label")
        match = find_matching_element(label, remaining) if label else None
        if match:
            remaining.remove(match.element)
            result.matches.append(apply_element(extracted_field, match.element, match.method))
        else:
            result.unmatched_extracted.append(extracted_field)

    result.unmatched_configured = [missing_element_placeholder(e) for e in remaining]

    logger.info(
        f"Matched {len(result.matches)} of {len(extracted_fields)} fields, "
        f"{len(result.unmatched_configured)} configured elements not found"
    )
    return result


# ============================================================================
# LLM Matching
# ============================================================================

MATCHING_SYSTEM_PROMPT = """You are an AI specialized in document data extraction, specifically matching extracted elements with configured elements.

KEY MATCHING PRINCIPLES:
1. Field names should be normalized:
   - Convert to lowercase for comparison
   - Remove underscores and replace with spaces
   - Treat different formatting of the same concept as identical

2. Common name equivalents:
   DATE_OF_BIRTH = Date of Birth = DOB = Birth Date
   PLACE_OF_BIRTH = Place of Birth = Birth Place = POB
   MRZ_CODE = MRZ Code = Machine Readable Zone
   PASSPORT_NUMBER = Passport Number = Document Number (for passport documents)
   FIRST_NAME + LAST_NAME might together match to Full Name

3. Focus on semantic meaning, not exact string matches
4. Always distinguish between field labels/headers and actual values
5. Properly explain your reasoning for each match

You must return valid JSON."""

MATCHING_USER_PROMPT = """As a document data extraction expert, your task is to match extracted elements from a document with predefined configured data elements.

Configured Data Elements (what we expect to find in this document type):
{configured}

Extracted Elements (what was actually found in this document):
{extracted}

MATCHING INSTRUCTIONS:
1. For each extracted element, determine if it matches one of the configured elements.
2. Match on semantic meaning: abbreviations, casing and underscores do not matter.
3. Be cautious about field labels vs. actual values. Translated labels such as "/ Date de naissance" are not values.
4. Assign confidence scores (0-1) that reflect certainty of matches.
5. Provide brief reasoning for each match.

Return your analysis in JSON format:
{{
  "matches": [
    {{"extractedElementId": "...", "configuredElementId": "... or null", "confidence": 0.0, "reasoning": "..."}}
  ],
  "unmatchedElements": [
    {{"extractedElementId": "...", "suggestedCategory": "PII, Financial, ...", "suggestedName": "..."}}
  ]
}}"""


def _describe_configured(element: Dict[str, Any]) -> str:
    line = f"- ID: {element.get('id')}, Name: \"{element.get('name')}\""
    for key in ("description", "category", "action"):
        if element.get(key):
            line += f", {key.capitalize()}: \"{element[key]}\""
    return line


def _describe_extracted(extracted_field: Dict[str, Any]) -> str:
    return (
        f"- ID: {extracted_field.get('id')}, Label: \"{extracted_field.get('label') or 'Unknown'}\", "
        f"Text: \"{extracted_field.get('value') or 'Not available'}\", "
        f"Type: \"{extracted_field.get('data_type') or 'Unknown'}\""
    )


def _parse_json_response(response_text: str) -> Dict[str, Any]:
    if "```json" in response_text:
        response_text = response_text.split("```json")[1].split("```")[0]
    elif "```" in response_text:
        response_text = response_text.split("```")[1].split("```")[0]
    return json.loads(response_text.strip())


def match_elements_with_llm(
    extracted_fields: List[Dict[str, Any]],
    configured_elements: List[Dict[str, Any]],
    config: Optional[MatcherConfig] = None,
) -> Optional[Dict[str, Any]]:
    """
    Ask a chat model to match fields to elements semantically.

    Returns:
        {"matches": [...], "unmatched_elements": [...]} in snake_case, or None
        when the model is unavailable or answers with something unusable
    """
    config = config or MatcherConfig()

    if not os.getenv("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY not set, skipping LLM matching")
        return None

    user_prompt = MATCHING_USER_PROMPT.format(
        configured="\n".join(_describe_configured(e) for e in configured_elements),
        extracted="\n".join(_describe_extracted(f) for f in extracted_fields),
    )

    try:
        llm = ChatOpenAI(
            model=config.llm_model,
            temperature=config.llm_temperature,
            model_kwargs={"response_format": {"type": "json_object"}},
        )
        response = llm.invoke([
            SystemMessage(content=MATCHING_SYSTEM_PROMPT),
            HumanMessage(content=user_prompt),
        ])
        parsed = _parse_json_response(str(response.content))
        if not isinstance(parsed, dict):
            raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
        raw_matches = parsed.get("matches") or []
        raw_unmatched = parsed.get("unmatchedElements") or []
        if not isinstance(raw_matches, list) or not isinstance(raw_unmatched, list):
            raise ValueError("matches and unmatchedElements must be lists")

        matches = [
            {
                "extracted_element_id": m.get("extractedElementId"),
                "configured_element_id": m.get("configuredElementId"),
                "confidence": parse_confidence(m.get("confidence") or 0),
                "reasoning": m.get("reasoning", ""),
            }
            for m in raw_matches
            if isinstance(m, dict)
        ]
        unmatched = [
            {
                "extracted_element_id": u.get("extractedElementId"),
                "suggested_category": u.get("suggestedCategory"),
                "suggested_name": u.get("suggestedName"),
            }
            for u in raw_unmatched
            if isinstance(u, dict)
        ]
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse matching response as JSON: {e}")
        return None
    except (ValueError, TypeError, AttributeError) as e:
        logger.error(f"Unusable matching response: {e}")
        return None
    except Exception as e:
        logger.error(f"LLM matching failed: {e}")
        return None

    logger.info(f"LLM matching returned {len(matches)} matches, {len(unmatched)} unmatched")
    return {"matches": matches, "unmatched_elements": unmatched}


def apply_llm_matches(
    result: ElementMatchResult,
    llm_result: Dict[str, Any],
    configured_elements: List[Dict[str, Any]],
    config: Optional[MatcherConfig] = None,
) -> ElementMatchResult:
    """Fold LLM matches for still-unmatched fields into a heuristic result."""
    config = config or MatcherConfig()
    elements_by_id = {e.get("id"): e for e in configured_elements}
    missing_ids = {p.get("element_id") for p in result.unmatched_configured}
    fields_by_id = {f.get("id"): f for f in result.unmatched_extracted}

    for llm_match in llm_result.get("matches", []):
        field_id = llm_match.get("extracted_element_id")
        element_id = llm_match.get("configured_element_id")
        if field_id not in fields_by_id or element_id not in missing_ids:
            continue
        if llm_match.get("confidence", 0) < config.min_llm_confidence:
            continue
        matched = apply_element(fields_by_id.pop(field_id), elements_by_id[element_id], "llm")
        matched["match_reasoning"] = llm_match.get("reasoning")
        result.matches.append(matched)
        missing_ids.discard(element_id)

    result.unmatched_extracted = list(fields_by_id.values())
    result.unmatched_configured = [
        p for p in result.unmatched_configured if p.get("element_id") in missing_ids
    ]
    return result


# ============================================================================
# LangGraph Node
# ============================================================================

def field_matcher_node(state: ProcessingState) -> dict:
    """
    Node: Field Matcher

    Matches the document's extracted fields against the data elements
    configured for its (classified or selected) type and sub-type.
    """
    print("--- NODE: Field Matcher ---")

    document_data = dict(state.get("document_data") or {})
    fields = document_data.get("extracted_fields", [])
    doc_type_id = document_data.get("document_type_id")

    if not doc_type_id:
        print("   No document type, skipping matching")
        return {"unmatched_fields": fields, "missing_elements": []}

    config = MatcherConfig(
        use_llm=os.getenv("MATCHER_USE_LLM", "false").lower() == "true",
        llm_model=os.getenv("MATCHER_LLM_MODEL", "gpt-4o"),
    )

    try:
        elements = get_config_service().get_configured_elements(
            doc_type_id, document_data.get("sub_type_id")
        )
    except KeyError as e:
        logger.warning(f"Cannot load configured elements: {e}")
        return {"unmatched_fields": fields, "missing_elements": []}

    active_elements = [e for e in elements if e.get("action") != "Ignore"]
    result = match_data_elements(fields, active_elements)

    if config.use_llm and result.unmatched_extracted and result.unmatched_configured:
        remaining_ids = {p.get("element_id") for p in result.unmatched_configured}
        remaining = [e for e in active_elements if e.get("id") in remaining_ids]
        llm_result = match_elements_with_llm(result.unmatched_extracted, remaining, config)
        if llm_result:
            result = apply_llm_matches(result, llm_result, remaining, config)

    print(f"   Matched {len(result.matches)} fields, "
          f"{len(result.unmatched_configured)} configured elements missing")

    document_data["extracted_fields"] = result.matches
    return {
        "document_data": document_data,
        "unmatched_fields": result.unmatched_extracted,
        "missing_elements": result.unmatched_configured,
    }
