"""
Text & Field Extraction Node - Pulls text, words and label/value pairs out of
uploaded documents.

Text comes from one of three places:
- PDFs with a text layer: read directly with pypdfium2
- Scanned PDFs: converted with Docling, which runs OCR on the page images
- Images (JPEG, PNG, TIFF): Tesseract, which also gives word positions

Fields come from "Label: value" lines in that text, or from cloud form and
ID analysis responses (Textract-style JSON) that a caller already has.
"""

import os
import io
import re
import time
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple

import pypdfium2 as pdfium
import pytesseract
from PIL import Image, ImageSequence, UnidentifiedImageError
from docling.document_converter import DocumentConverter
from docling.datamodel.base_models import DocumentStream

from state import DataElementType, ProcessingState

logger = logging.getLogger(__name__)


# ============================================================================
# Errors
# ============================================================================

class UnsupportedDocumentError(ValueError):
    """The file type cannot be processed."""


class ExtractionError(RuntimeError):
    """The file is of a supported type but could not be read."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.details = details


# ============================================================================
# Content Types
# ============================================================================

SUPPORTED_CONTENT_TYPES: Dict[str, str] = {
    "application/pdf": "pdf",
    "image/jpeg": "jpeg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/tiff": "tiff",
}

EXTENSION_CONTENT_TYPES: Dict[str, str] = {
    ".pdf": "application/pdf",
    ".jpeg": "image/jpeg",
    ".jpg": "image/jpeg",
    ".png": "image/png",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
}


def detect_content_type(filename: Optional[str], declared: Optional[str] = None) -> str:
    """
    Resolve the content type of an upload.

    The declared type wins when it is supported; otherwise the extension
    decides. Raises UnsupportedDocumentError when neither is usable.
    """
    if declared and declared.lower() in SUPPORTED_CONTENT_TYPES:
        return declared.lower()
    ext = os.path.splitext(filename or "")[1].lower()
    if ext in EXTENSION_CONTENT_TYPES:
        return EXTENSION_CONTENT_TYPES[ext]
    raise UnsupportedDocumentError(
        f"Unsupported file type: {declared or ext or 'unknown'}. Please upload a PDF or image."
    )


def is_pdf(content_type: str) -> bool:
    return content_type == "application/pdf"


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class ExtractionConfig:
    """Configuration for text extraction."""
    ocr_language: str = "eng"
    # A text layer shorter than this per page is treated as a scan
    min_chars_per_page: int = 20
    use_docling_ocr: bool = True
    field_confidence: float = 60.0


@dataclass
class TextExtractionResult:
    """Text pulled from a document, with per-page text and word positions."""
    text: str
    page_count: int
    method: str  # "pdf-direct", "docling-ocr", "tesseract"
    pages: List[str] = field(default_factory=list)
    word_blocks: List[Dict[str, Any]] = field(default_factory=list)
    note: Optional[str] = None
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "extracted_text": self.text,
            "page_count": self.page_count,
            "method": self.method,
            "word_count": len(self.word_blocks),
            "processing_time_ms": round(self.processing_time_ms, 2),
        }
        if self.note:
            result["note"] = self.note
        return result


# ============================================================================
# PDF Text
# ============================================================================

def _friendly_pdf_error(error: Exception) -> str:
    message = str(error).lower()
    if "password" in message or "encrypt" in message or "security" in message:
        return "The PDF is password-protected or encrypted and cannot be processed"
    if "format" in message or "malformed" in message or "invalid" in message:
        return "The PDF file appears to be corrupted or malformed"
    if "not a pdf" in message:
        return "The file does not appear to be a valid PDF"
    if "damaged" in message:
        return "The PDF file appears to be damaged"
    return "Failed to extract text from PDF"


def extract_pdf_text_layer(data: bytes) -> List[str]:
    """
    Read the embedded text of every page.

    Raises:
        ExtractionError: If pdfium cannot open the file
    """
    if not data.startswith(b"%PDF"):
        raise ExtractionError("The file does not appear to be a valid PDF")
    try:
        pdf = pdfium.PdfDocument(data)
    except pdfium.PdfiumError as e:
        raise ExtractionError(_friendly_pdf_error(e), details=str(e)) from e

    pages = []
    try:
        for index in range(len(pdf)):
            page = pdf[index]
            textpage = page.get_textpage()
            pages.append(textpage.get_text_range().replace("\r\n", "\n"))
            textpage.close()
            page.close()
    finally:
        pdf.close()
    return pages


def extract_pdf_text_with_docling(data: bytes, filename: str = "document.pdf") -> List[str]:
    """
    Convert a PDF with Docling (OCR on scanned pages) and group text by page.

    Raises:
        ExtractionError: If Docling fails to convert the document
    """
    converter = DocumentConverter()
    try:
        result = converter.convert(DocumentStream(name=filename, stream=io.BytesIO(data)))
    except Exception as e:
        raise ExtractionError(_friendly_pdf_error(e), details=str(e)) from e

    doc = result.document
    page_texts: Dict[int, List[str]] = defaultdict(list)
    for text_item in getattr(doc, "texts", None) or []:
        for prov in getattr(text_item, "prov", None) or []:
            page_texts[prov.page_no].append(text_item.text)

    if not page_texts:
        markdown = doc.export_to_markdown()
        return [markdown] if markdown.strip() else []

    page_count = max(page_texts)
    return ["\n".join(page_texts.get(page_no, [])) for page_no in range(1, page_count + 1)]


# ============================================================================
# Image OCR
# ============================================================================

def ocr_image(image: Image.Image, page: int = 1, language: str = "eng") -> Tuple[str, List[Dict[str, Any]]]:
    """
    Run Tesseract on one image.

    Returns:
        (text with one line per OCR line, word blocks with normalised boxes)
    """
    width, height = image.size
    data = pytesseract.image_to_data(image, lang=language, output_type=pytesseract.Output.DICT)

    words: List[Dict[str, Any]] = []
    lines: Dict[Tuple[int, int, int], List[str]] = defaultdict(list)
    for i, text in enumerate(data["text"]):
        text = (text or "").strip()
        confidence = float(data["conf"][i])
        if not text or confidence < 0:
            continue
        words.append({
            "text": text,
            "confidence": confidence,
            "page": page,
            "bounding_box": {
                "left": data["left"][i] / width,
                "top": data["top"][i] / height,
                "width": data["width"][i] / width,
                "height": data["height"][i] / height,
            },
        })
        lines[(data["block_num"][i], data["par_num"][i], data["line_num"][i])].append(text)

    text = "\n".join(" ".join(line) for _, line in sorted(lines.items()))
    return text, words


def extract_image_text(data: bytes, config: Optional[ExtractionConfig] = None) -> TextExtractionResult:
    """OCR every frame of an image (multi-page TIFFs have several)."""
    config = config or ExtractionConfig()
    try:
        image = Image.open(io.BytesIO(data))
    except UnidentifiedImageError as e:
        raise ExtractionError(
            "This image could not be processed. It may be in an unsupported format "
            "or contain no recognizable text.",
            details=str(e),
        ) from e

    pages: List[str] = []
    word_blocks: List[Dict[str, Any]] = []
    for index, frame in enumerate(ImageSequence.Iterator(image)):
        page_text, words = ocr_image(frame.convert("RGB"), page=index + 1, language=config.ocr_language)
        pages.append(page_text)
        word_blocks.extend(words)

    return TextExtractionResult(
        text="\n\n".join(pages),
        page_count=len(pages),
        method="tesseract",
        pages=pages,
        word_blocks=word_blocks,
    )


# ============================================================================
# Main Text Extraction
# ============================================================================

def extract_text(
    data: bytes,
    content_type: str,
    filename: str = "document",
    config: Optional[ExtractionConfig] = None,
) -> TextExtractionResult:
    """
    Extract text from an uploaded document.

    PDFs are read from their text layer first and fall back to Docling OCR
    when the layer is (nearly) empty. Images go straight to Tesseract.

    Raises:
        UnsupportedDocumentError: If the content type is not supported
        ExtractionError: If the file cannot be read
    """
    config = config or ExtractionConfig()
    if content_type not in SUPPORTED_CONTENT_TYPES:
        raise UnsupportedDocumentError(
            f"Unsupported file type: {content_type}. Please upload a PDF or image."
        )

    start_time = time.time()

    if not is_pdf(content_type):
        result = extract_image_text(data, config)
    else:
        pages = extract_pdf_text_layer(data)
        text = "\n\n".join(pages).strip()
        if len(text) >= config.min_chars_per_page * max(len(pages), 1) or not config.use_docling_ocr:
            result = TextExtractionResult(text=text, page_count=len(pages), method="pdf-direct", pages=pages)
        else:
            logger.info("PDF has no usable text layer, running Docling OCR")
            ocr_pages = extract_pdf_text_with_docling(data, filename)
            result = TextExtractionResult(
                text="\n\n".join(ocr_pages).strip(),
                page_count=len(pages) or len(ocr_pages),
                method="docling-ocr",
                pages=ocr_pages,
                note="This document required OCR because it has no text layer.",
            )

    result.processing_time_ms = (time.time() - start_time) * 1000
    if not result.text:
        result.note = result.note or "No text content found in document"
    logger.info(f"Extracted {len(result.text)} chars from {result.page_count} page(s) via {result.method}")
    return result


# ============================================================================
# Field Extraction From Text
# ============================================================================

KEY_VALUE_PATTERN = re.compile(r"^[ \t]*([A-Za-z][A-Za-z \t]*):[ \t]*([^:\n]+)$", re.MULTILINE)


def guess_data_type(value: str) -> str:
    """Guess the type of a value from its shape."""
    value = (value or "").strip()
    if re.fullmatch(r"\d+", value):
        return DataElementType.NUMBER.value
    if re.fullmatch(r"\d{1,2}/\d{1,2}/\d{2,4}", value):
        return DataElementType.DATE.value
    if re.fullmatch(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}", value):
        return DataElementType.EMAIL.value
    if re.fullmatch(r"[$€£]\s?\d[\d,]*(\.\d{2})?", value):
        return DataElementType.CURRENCY.value
    if re.fullmatch(r"\+?[\d\s().-]{7,}", value) and sum(c.isdigit() for c in value) >= 7:
        return DataElementType.PHONE.value
    return DataElementType.TEXT.value


def _union_box(boxes: List[Dict[str, float]]) -> Optional[Dict[str, float]]:
    if not boxes:
        return None
    left = min(b["left"] for b in boxes)
    top = min(b["top"] for b in boxes)
    right = max(b["left"] + b["width"] for b in boxes)
    bottom = max(b["top"] + b["height"] for b in boxes)
    return {"left": left, "top": top, "width": right - left, "height": bottom - top}


def locate_words(text: str, word_blocks: List[Dict[str, Any]], start: int = 0) -> Tuple[List[Dict[str, Any]], int]:
    """
    Find the run of word blocks that spells text, searching from start.

    Returns the matching blocks and the index after them (empty list and
    start when not found).
    """
    tokens = text.split()
    if not tokens:
        return [], start
    for i in range(start, len(word_blocks) - len(tokens) + 1):
        if all(word_blocks[i + j].get("text") == token for j, token in enumerate(tokens)):
            return word_blocks[i:i + len(tokens)], i + len(tokens)
    return [], start


def extract_fields_from_text(
    text: str,
    word_blocks: Optional[List[Dict[str, Any]]] = None,
    confidence: float = 60.0,
) -> List[Dict[str, Any]]:
    """
    Turn "Label: value" lines into fields.

    When OCR word blocks are given, each field gets the boxes of its label
    and value words.
    """
    if not text:
        return []

    word_blocks = word_blocks or []
    fields = []
    cursor = 0
    for index, match in enumerate(KEY_VALUE_PATTERN.finditer(text)):
        label = match.group(1).strip()
        value = match.group(2).strip()
        extracted = {
            "id": f"field-{index}",
            "label": label,
            "value": value,
            "confidence": confidence,
            "data_type": guess_data_type(value),
            "bounding_box": None,
            "key_bounding_box": None,
            "value_word_blocks": [],
            "page": 1,
        }
        if word_blocks:
            key_words, after_key = locate_words(f"{label}:", word_blocks, cursor)
            value_words, after_value = locate_words(value, word_blocks, after_key if key_words else cursor)
            if value_words:
                extracted["bounding_box"] = _union_box([w["bounding_box"] for w in value_words])
                extracted["value_word_blocks"] = value_words
                extracted["page"] = value_words[0].get("page", 1)
                cursor = after_value
            if key_words:
                extracted["key_bounding_box"] = _union_box([w["bounding_box"] for w in key_words])
        fields.append(extracted)
    return fields


# ============================================================================
# Cloud Analysis Responses
# ============================================================================

def _response_box(block: Dict[str, Any]) -> Optional[Dict[str, float]]:
    box = (block.get("Geometry") or {}).get("BoundingBox")
    if not box:
        return None
    return {
        "left": float(box.get("Left", 0)),
        "top": float(box.get("Top", 0)),
        "width": float(box.get("Width", 0)),
        "height": float(box.get("Height", 0)),
    }


def _related_ids(block: Dict[str, Any], relationship: str) -> List[str]:
    ids: List[str] = []
    for rel in block.get("Relationships") or []:
        if rel.get("Type") == relationship:
            ids.extend(rel.get("Ids") or [])
    return ids


def _child_words(block: Dict[str, Any], blocks_by_id: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    words = []
    for child_id in _related_ids(block, "CHILD"):
        child = blocks_by_id.get(child_id)
        if not child:
            continue
        if child.get("BlockType") == "WORD":
            words.append({
                "text": child.get("Text", ""),
                "confidence": float(child.get("Confidence", 0)),
                "bounding_box": _response_box(child),
                "page": child.get("Page", 1),
            })
        elif child.get("BlockType") == "SELECTION_ELEMENT":
            words.append({
                "text": "X" if child.get("SelectionStatus") == "SELECTED" else "",
                "confidence": float(child.get("Confidence", 0)),
                "bounding_box": _response_box(child),
                "page": child.get("Page", 1),
            })
    return words


def parse_textract_lines(response: Dict[str, Any]) -> str:
    """Document text from the LINE blocks of a text detection response."""
    return "\n".join(
        block.get("Text", "")
        for block in response.get("Blocks") or []
        if block.get("BlockType") == "LINE"
    )


def parse_textract_key_values(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Fields from the KEY_VALUE_SET blocks of a form analysis response.

    Each KEY block points at its VALUE block; both point at their WORD
    children. Keys without any value text are kept with an empty value.
    """
    blocks = response.get("Blocks") or []
    blocks_by_id = {b["Id"]: b for b in blocks if "Id" in b}

    fields = []
    for block in blocks:
        if block.get("BlockType") != "KEY_VALUE_SET" or "KEY" not in (block.get("EntityTypes") or []):
            continue

        key_words = _child_words(block, blocks_by_id)
        label = " ".join(w["text"] for w in key_words).strip().rstrip(":").strip()
        if not label:
            continue

        value_words: List[Dict[str, Any]] = []
        value_block = None
        for value_id in _related_ids(block, "VALUE"):
            value_block = blocks_by_id.get(value_id)
            if value_block:
                value_words.extend(_child_words(value_block, blocks_by_id))
        value = " ".join(w["text"] for w in value_words if w["text"]).strip()

        confidences = [float(block.get("Confidence", 0))]
        if value_block:
            confidences.append(float(value_block.get("Confidence", 0)))

        fields.append({
            "id": f"field-{len(fields)}",
            "label": label,
            "value": value,
            "confidence": sum(confidences) / len(confidences),
            "data_type": guess_data_type(value),
            "bounding_box": _response_box(value_block) if value_block else None,
            "key_bounding_box": _response_box(block),
            "value_word_blocks": [w for w in value_words if w["text"]],
            "page": block.get("Page", 1),
        })
    return fields


def infer_data_type_for_id_field(field_type: str) -> str:
    """Data type of an identity document field, from its field type name."""
    lower = (field_type or "").lower()
    if "date" in lower:
        return DataElementType.DATE.value
    if "number" in lower or "id" in lower:
        return DataElementType.TEXT.value
    if "name" in lower:
        return DataElementType.NAME.value
    if "address" in lower:
        return DataElementType.ADDRESS.value
    if "birth" in lower or "expiration" in lower or "expiry" in lower:
        return DataElementType.DATE.value
    return DataElementType.TEXT.value


def determine_id_sub_type(fields: List[Dict[str, Any]]) -> str:
    """Passport, Driver's License or Generic ID, judged by field labels."""
    labels = [(f.get("label") or "").lower() for f in fields]
    if any("passport" in l or "nationality" in l or "issuing country" in l for l in labels):
        return "Passport"
    if any("license" in l or "class" in l or "endorsements" in l or "restrictions" in l for l in labels):
        return "Driver's License"
    return "Generic ID"


def parse_analyze_id_response(response: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert an identity document analysis response into document data.

    Only the first identity document is used. Fields without a detected
    value are skipped; the document confidence is the mean over all fields.

    Raises:
        ValueError: If the response contains no identity document
    """
    documents = response.get("IdentityDocuments") or []
    if not documents:
        raise ValueError("No identity documents detected in the image")

    document_fields = documents[0].get("IdentityDocumentFields") or []
    fields = []
    for index, id_field in enumerate(document_fields):
        detection = id_field.get("ValueDetection")
        if not detection:
            continue
        label = (id_field.get("Type") or {}).get("Text") or f"Field {index + 1}"
        fields.append({
            "id": f"field-{index}",
            "label": label,
            "value": detection.get("Text") or "",
            "confidence": float(detection.get("Confidence") or 0),
            "data_type": infer_data_type_for_id_field(label),
            "bounding_box": None,
            "normalized": (detection.get("NormalizedValue") or {}).get("Value"),
        })

    confidence = sum(
        float((f.get("ValueDetection") or {}).get("Confidence") or 0) for f in document_fields
    ) / (len(document_fields) or 1)

    return {
        "document_type": "ID Document",
        "sub_type": determine_id_sub_type(fields),
        "confidence": confidence,
        "extracted_text": "\n".join(f"{f['label']}: {f['value']}" for f in fields),
        "extracted_fields": fields,
    }


# ============================================================================
# LangGraph Nodes
# ============================================================================

def text_extraction_node(state: ProcessingState) -> dict:
    """
    Node: Text Extraction

    Reads the uploaded bytes and produces document text and word blocks.
    """
    print("--- NODE: Text Extraction ---")

    try:
        result = extract_text(
            state["file_bytes"],
            state["content_type"],
            state.get("file_name", "document"),
        )
    except (UnsupportedDocumentError, ExtractionError) as e:
        logger.error(f"Text extraction failed: {e}")
        return {"status": "Failed", "errors": list(state.get("errors", [])) + [str(e)]}

    print(f"   Extracted {len(result.text)} chars via {result.method}")
    document_data = dict(state.get("document_data") or {})
    document_data["extracted_text"] = result.text
    return {
        "document_data": document_data,
        "extraction_method": result.method,
        "page_count": result.page_count,
        "word_blocks": result.word_blocks,
    }


def field_extraction_node(state: ProcessingState) -> dict:
    """
    Node: Field Extraction

    Finds label/value pairs in the extracted text.
    """
    print("--- NODE: Field Extraction ---")

    document_data = dict(state.get("document_data") or {})
    fields = extract_fields_from_text(
        document_data.get("extracted_text", ""),
        state.get("word_blocks") or [],
        confidence=ExtractionConfig().field_confidence,
    )
    print(f"   Found {len(fields)} label/value pairs")
    document_data["extracted_fields"] = fields
    return {"document_data": document_data}
