"""
Redaction Node - Blacks out selected fields in images and PDFs.

Images are redacted with Pillow by drawing opaque rectangles over each
field's bounding box. PDFs are redacted with PyMuPDF redaction annotations,
which remove the text underneath rather than just covering it.

Bounding boxes are page fractions in either spelling:
{"Left", "Top", "Width", "Height"} or {"x", "y", "width", "height"}.
"""

import io
import uuid
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple

import fitz
from PIL import Image, ImageDraw, ImageSequence

from config_service import get_config_service
from config_storage import get_storage_dir
from state import BoundingBox, DataElementAction, DataElementCategory, ProcessingState

logger = logging.getLogger(__name__)

REDACT_ACTIONS = {DataElementAction.REDACT.value, DataElementAction.EXTRACT_AND_REDACT.value}

# Layout for fields that have no bounding box
MISSING_BOX_COLUMNS = 3
MISSING_BOX_MAX_WIDTH = 200
MISSING_BOX_HEIGHT = 40
MISSING_BOX_GAP = 10

# Content type of a redaction output -> stored file extension
OUTPUT_EXTENSIONS = {
    "application/pdf": "pdf",
    "image/png": "png",
    "image/tiff": "tiff",
}


@dataclass
class RedactionConfig:
    """Configuration for redaction."""
    missing_box_columns: int = MISSING_BOX_COLUMNS
    missing_box_max_width: int = MISSING_BOX_MAX_WIDTH
    missing_box_height: int = MISSING_BOX_HEIGHT
    missing_box_gap: int = MISSING_BOX_GAP
    # Rasterise images under PDF redactions so covered pixels are removed too
    remove_pdf_image_pixels: bool = True


class RedactionError(RuntimeError):
    """The document could not be redacted."""


@dataclass
class RedactionResult:
    """Output of redact_document."""
    redaction_id: str
    content_type: str
    data: bytes
    redacted_field_ids: List[str] = field(default_factory=list)
    areas_redacted: int = 0
    unlocated_field_ids: List[str] = field(default_factory=list)
    output_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "redaction_id": self.redaction_id,
            "content_type": self.content_type,
            "redacted_field_ids": self.redacted_field_ids,
            "areas_redacted": self.areas_redacted,
            "unlocated_field_ids": self.unlocated_field_ids,
            "download_url": f"/api/redacted/{self.redaction_id}",
        }


# ============================================================================
# Field Selection
# ============================================================================

def normalize_bounding_box(box: Optional[Dict[str, Any]]) -> Optional[BoundingBox]:
    """Accept either bounding box spelling; None when absent or empty."""
    if not box:
        return None
    if all(k in box for k in ("Left", "Top", "Width", "Height")):
        values = (box["Left"], box["Top"], box["Width"], box["Height"])
    elif all(k in box for k in ("left", "top", "width", "height")):
        values = (box["left"], box["top"], box["width"], box["height"])
    else:
        values = (box.get("x") or 0, box.get("y") or 0, box.get("width") or 0, box.get("height") or 0)
    left, top, width, height = (float(v) for v in values)
    if width <= 0 or height <= 0:
        return None
    return {"left": left, "top": top, "width": width, "height": height}


def select_fields_to_redact(
    fields: List[Dict[str, Any]],
    redaction_settings: Optional[Dict[str, bool]] = None,
) -> List[Dict[str, Any]]:
    """
    Fields that should be redacted by default.

    A field is selected when its action is Redact or ExtractAndRedact, or
    when its category is PII/Financial and the matching default setting is
    on. Fields whose action is Ignore are never selected, nor are
    placeholders for elements the document did not contain.
    """
    settings = redaction_settings or {}
    selected = []
    for f in fields:
        if f.get("missing") or f.get("action") == DataElementAction.IGNORE.value:
            continue
        category = f.get("category")
        if (f.get("action") in REDACT_ACTIONS
                or (category == DataElementCategory.PII.value and settings.get("redact_pii"))
                or (category == DataElementCategory.FINANCIAL.value and settings.get("redact_financial"))):
            selected.append(f)
    return selected


def _field_boxes(f: Dict[str, Any]) -> List[Tuple[int, BoundingBox]]:
    """(page, box) pairs for a field; pages are 1-based."""
    page = int(f.get("page") or 1)
    boxes = []
    main = normalize_bounding_box(f.get("bounding_box"))
    if main:
        boxes.append((page, main))
    for word in f.get("value_word_blocks") or []:
        word_box = normalize_bounding_box(word.get("bounding_box"))
        if word_box:
            boxes.append((int(word.get("page") or page), word_box))
    return boxes


# ============================================================================
# Image Redaction
# ============================================================================

def missing_box_position(index: int, image_width: int, config: Optional[RedactionConfig] = None) -> List[float]:
    """Rectangle for the index-th field without a box, in a grid at the top-left."""
    config = config or RedactionConfig()
    box_width = min(config.missing_box_max_width, image_width / config.missing_box_columns)
    col = index % config.missing_box_columns
    row = index // config.missing_box_columns
    x = col * (box_width + config.missing_box_gap) + config.missing_box_gap
    y = row * (config.missing_box_height + config.missing_box_gap) + config.missing_box_gap
    return [x, y, x + box_width, y + config.missing_box_height]


def redact_image(
    data: bytes,
    fields: List[Dict[str, Any]],
    config: Optional[RedactionConfig] = None,
) -> RedactionResult:
    """
    Draw black rectangles over each field and return the redacted image.

    Each box is drawn on the frame of its page, so multi-page TIFFs keep
    every page and come back as a multi-page TIFF; single images come back
    as PNG. Fields without a bounding box get a labelled black box in a
    grid at the top-left of the first page so the operator can see they
    were not located.
    """
    config = config or RedactionConfig()
    try:
        image = Image.open(io.BytesIO(data))
        frames = [frame.convert("RGB") for frame in ImageSequence.Iterator(image)]
    except Exception as e:
        raise RedactionError(f"Could not open image: {e}") from e

    draws = [ImageDraw.Draw(frame) for frame in frames]
    multi_page = len(frames) > 1
    result = RedactionResult(
        redaction_id="",
        content_type="image/tiff" if multi_page else "image/png",
        data=b"",
    )

    for f in fields:
        boxes = [(page, box) for page, box in _field_boxes(f) if 1 <= page <= len(frames)]
        if boxes:
            for page, box in boxes:
                width, height = frames[page - 1].size
                draws[page - 1].rectangle(
                    [
                        box["left"] * width,
                        box["top"] * height,
                        (box["left"] + box["width"]) * width,
                        (box["top"] + box["height"]) * height,
                    ],
                    fill="black",
                )
                result.areas_redacted += 1
        else:
            if _field_boxes(f):
                logger.warning(f"Field {f.get('id')} is on a page the image does not have")
            rect = missing_box_position(len(result.unlocated_field_ids), frames[0].size[0], config)
            draws[0].rectangle(rect, fill="black")
            draws[0].text(
                (rect[0] + 5, rect[1] + config.missing_box_height / 2 - 5),
                str(f.get("label") or ""),
                fill="white",
            )
            result.unlocated_field_ids.append(f.get("id"))
            result.areas_redacted += 1
        result.redacted_field_ids.append(f.get("id"))

    output = io.BytesIO()
    if multi_page:
        frames[0].save(output, format="TIFF", save_all=True, append_images=frames[1:])
    else:
        frames[0].save(output, format="PNG")
    result.data = output.getvalue()
    return result


# ============================================================================
# PDF Redaction
# ============================================================================

def redact_pdf(
    data: bytes,
    fields: List[Dict[str, Any]],
    config: Optional[RedactionConfig] = None,
) -> RedactionResult:
    """
    Apply redaction annotations for each field and return the PDF bytes.

    Fields with a box are redacted at that box on their page (1-based);
    fields without one are searched for by value on every page.
    """
    config = config or RedactionConfig()
    image_mode = fitz.PDF_REDACT_IMAGE_PIXELS if config.remove_pdf_image_pixels else fitz.PDF_REDACT_IMAGE_NONE
    try:
        document = fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        raise RedactionError(f"Could not open PDF: {e}") from e

    result = RedactionResult(redaction_id="", content_type="application/pdf", data=b"")
    try:
        for f in fields:
            located = False
            boxes = [(page, box) for page, box in _field_boxes(f) if 1 <= page <= document.page_count]

            if boxes:
                for page_number, box in boxes:
                    page = document.load_page(page_number - 1)
                    page_rect = page.rect
                    rect = fitz.Rect(
                        box["left"] * page_rect.width,
                        box["top"] * page_rect.height,
                        (box["left"] + box["width"]) * page_rect.width,
                        (box["top"] + box["height"]) * page_rect.height,
                    ).intersect(page_rect)
                    if not rect.is_empty:
                        page.add_redact_annot(rect, fill=(0, 0, 0))
                        result.areas_redacted += 1
                        located = True
            elif f.get("value"):
                for page in document:
                    for quad in page.search_for(str(f["value"]), quads=True):
                        page.add_redact_annot(quad, fill=(0, 0, 0))
                        result.areas_redacted += 1
                        located = True

            if located:
                result.redacted_field_ids.append(f.get("id"))
            else:
                logger.warning(f"Could not locate field {f.get('id')} ({f.get('label')}) in PDF")
                result.unlocated_field_ids.append(f.get("id"))

        for page in document:
            page.apply_redactions(images=image_mode)
        result.data = document.tobytes(garbage=4, deflate=True)
    finally:
        document.close()
    return result


# ============================================================================
# Main Redaction Function
# ============================================================================

def get_redacted_dir(storage_dir: Optional[Path] = None) -> Path:
    path = Path(storage_dir or get_storage_dir()) / "redacted"
    path.mkdir(parents=True, exist_ok=True)
    return path


def redact_document(
    data: bytes,
    content_type: str,
    document_data: Dict[str, Any],
    field_ids: List[str],
    storage_dir: Optional[Path] = None,
    config: Optional[RedactionConfig] = None,
) -> RedactionResult:
    """
    Redact the chosen fields of a document and store the output.

    Args:
        data: Original file bytes
        content_type: MIME type of the original
        document_data: Document data holding extracted_fields
        field_ids: Ids of the fields to redact
        storage_dir: Storage root (defaults to DOC_PROCESSOR_STORAGE_DIR)
        config: Redaction layout and PDF options

    Raises:
        ValueError: If a field id is not in document_data
        RedactionError: If the file cannot be redacted
    """
    fields_by_id = {f.get("id"): f for f in document_data.get("extracted_fields") or []}
    unknown = [fid for fid in field_ids if fid not in fields_by_id]
    if unknown:
        raise ValueError(f"Unknown field ids: {', '.join(unknown)}")
    fields = [fields_by_id[fid] for fid in field_ids]

    if content_type == "application/pdf":
        result = redact_pdf(data, fields, config)
    elif content_type.startswith("image/"):
        result = redact_image(data, fields, config)
    else:
        raise ValueError(f"Cannot redact content type {content_type}")
    extension = OUTPUT_EXTENSIONS[result.content_type]

    result.redaction_id = uuid.uuid4().hex
    output_path = get_redacted_dir(storage_dir) / f"{result.redaction_id}.{extension}"
    output_path.write_bytes(result.data)
    result.output_path = str(output_path)

    logger.info(f"Redacted {len(result.redacted_field_ids)} field(s), "
                f"{result.areas_redacted} area(s) -> {output_path.name}")
    return result


def find_redacted_file(redaction_id: str, storage_dir: Optional[Path] = None) -> Optional[Path]:
    """Path of a stored redaction output, or None."""
    if not redaction_id.isalnum():
        return None
    for extension in OUTPUT_EXTENSIONS.values():
        path = get_redacted_dir(storage_dir) / f"{redaction_id}.{extension}"
        if path.exists():
            return path
    return None


# ============================================================================
# LangGraph Node
# ============================================================================

def redaction_node(state: ProcessingState) -> dict:
    """
    Node: Redaction

    Redacts the fields listed in fields_to_redact, or the default selection
    when none were given.
    """
    print("--- NODE: Redaction ---")

    document_data = state.get("document_data") or {}
    field_ids = state.get("fields_to_redact") or [
        f["id"] for f in select_fields_to_redact(
            document_data.get("extracted_fields") or [],
            get_config_service().get_redaction_settings(),
        )
    ]
    if not field_ids:
        print("   Nothing to redact")
        return {"redaction": None}

    try:
        result = redact_document(state["file_bytes"], state["content_type"], document_data, field_ids)
    except (ValueError, RedactionError) as e:
        logger.error(f"Redaction failed: {e}")
        return {"status": "Failed", "errors": list(state.get("errors", [])) + [str(e)]}

    print(f"   Redacted {len(result.redacted_field_ids)} field(s)")
    # A redacted document that still needs review keeps that status
    status = "Needs_Review" if state.get("needs_review") else "Redacted"
    return {"fields_to_redact": field_ids, "redaction": result.to_dict(), "status": status}
