"""
Tests for field selection and image/PDF redaction.
"""

import io
from typing import Any, Dict, List

import fitz
import pytest
from PIL import Image

from config_service import ConfigService, set_config_service
from docproc.redactor import (
    RedactionConfig,
    RedactionError,
    find_redacted_file,
    missing_box_position,
    normalize_bounding_box,
    redact_document,
    redact_image,
    redact_pdf,
    redaction_node,
    select_fields_to_redact,
)


# ============================================================================
# Test Fixtures
# ============================================================================

def _white_png(width: int = 400, height: int = 200) -> bytes:
    output = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(output, format="PNG")
    return output.getvalue()


def _white_tiff(pages: int = 2, size: int = 100) -> bytes:
    frames = [Image.new("RGB", (size, size), "white") for _ in range(pages)]
    output = io.BytesIO()
    frames[0].save(output, format="TIFF", save_all=True, append_images=frames[1:])
    return output.getvalue()


def _pdf_with_text(text: str) -> bytes:
    document = fitz.open()
    page = document.new_page()
    page.insert_text((72, 100), text)
    data = document.tobytes()
    document.close()
    return data


def _pdf_text(data: bytes) -> str:
    document = fitz.open(stream=data, filetype="pdf")
    try:
        return "".join(page.get_text() for page in document)
    finally:
        document.close()


@pytest.fixture
def fields() -> List[Dict[str, Any]]:
    """Matched fields with a spread of categories and actions."""
    return [
        {"id": "f-name", "label": "Name", "value": "Jane Doe", "category": "PII", "action": "Extract",
         "bounding_box": {"left": 0.25, "top": 0.25, "width": 0.25, "height": 0.25}},
        {"id": "f-card", "label": "Card", "value": "4111", "category": "Financial", "action": "Extract"},
        {"id": "f-tfn", "label": "TFN", "value": "123", "category": "General", "action": "Redact"},
        {"id": "f-note", "label": "Note", "value": "hi", "category": "PII", "action": "Ignore"},
        {"id": "missing-x", "label": "Email", "value": "", "category": "PII",
         "action": "ExtractAndRedact", "missing": True},
    ]


# ============================================================================
# Field Selection
# ============================================================================

class TestSelectFields:
    """Default redaction selection."""

    def test_defaults_on(self, fields):
        """PII and Financial fields are selected when the settings say so."""
        selected = select_fields_to_redact(fields, {"redact_pii": True, "redact_financial": True})
        assert [f["id"] for f in selected] == ["f-name", "f-card", "f-tfn"]

    def test_defaults_off(self, fields):
        """Only explicit redact actions remain with the defaults off."""
        selected = select_fields_to_redact(fields, {"redact_pii": False, "redact_financial": False})
        assert [f["id"] for f in selected] == ["f-tfn"]

    def test_ignore_and_missing_never_selected(self, fields):
        """Ignored fields and missing placeholders are skipped."""
        ids = {f["id"] for f in select_fields_to_redact(fields, {"redact_pii": True})}
        assert "f-note" not in ids
        assert "missing-x" not in ids


class TestBoundingBoxes:
    """Bounding box spellings."""

    def test_spellings(self):
        """Upper-case, lower-case and x/y boxes are accepted."""
        expected = {"left": 0.1, "top": 0.2, "width": 0.3, "height": 0.4}
        assert normalize_bounding_box({"Left": 0.1, "Top": 0.2, "Width": 0.3, "Height": 0.4}) == expected
        assert normalize_bounding_box(expected) == expected
        assert normalize_bounding_box({"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.4}) == expected

    def test_empty_boxes(self):
        """Absent or zero-size boxes normalise to None."""
        assert normalize_bounding_box(None) is None
        assert normalize_bounding_box({"x": 0.1, "y": 0.1, "width": 0, "height": 0.1}) is None

    def test_missing_box_grid(self):
        """Unlocated fields are laid out three to a row."""
        assert missing_box_position(0, 900) == [10, 10, 210, 50]
        assert missing_box_position(3, 900)[1] == 60
        assert missing_box_position(1, 300)[2] - missing_box_position(1, 300)[0] == 100

    def test_custom_grid(self):
        """The grid layout is configurable."""
        config = RedactionConfig(missing_box_columns=1, missing_box_height=20)
        assert missing_box_position(1, 900, config) == [10, 40, 210, 60]


# ============================================================================
# Image Redaction
# ============================================================================

class TestImageRedaction:
    """Pillow rectangles over image fields."""

    def test_box_is_blacked_out(self, fields):
        """Pixels inside the field box turn black, outside stay white."""
        result = redact_image(_white_png(), [fields[0]])
        image = Image.open(io.BytesIO(result.data)).convert("RGB")

        assert result.content_type == "image/png"
        assert image.getpixel((150, 75)) == (0, 0, 0)
        assert image.getpixel((350, 180)) == (255, 255, 255)
        assert result.redacted_field_ids == ["f-name"]
        assert result.areas_redacted == 1

    def test_unlocated_field_gets_grid_box(self, fields):
        """Fields without a box are drawn in the top-left grid."""
        result = redact_image(_white_png(), [fields[2]])
        image = Image.open(io.BytesIO(result.data)).convert("RGB")

        assert result.unlocated_field_ids == ["f-tfn"]
        assert image.getpixel((12, 12)) == (0, 0, 0)

    def test_multi_page_boxes_follow_their_page(self):
        """A field on page 2 is drawn on page 2 only and every page is kept."""
        field = {"id": "f2", "label": "Name", "page": 2,
                 "bounding_box": {"left": 0.2, "top": 0.2, "width": 0.2, "height": 0.2}}
        result = redact_image(_white_tiff(), [field])
        image = Image.open(io.BytesIO(result.data))

        assert result.content_type == "image/tiff"
        assert image.n_frames == 2
        assert image.convert("RGB").getpixel((30, 30)) == (255, 255, 255)
        image.seek(1)
        assert image.convert("RGB").getpixel((30, 30)) == (0, 0, 0)

    def test_page_beyond_image_goes_to_grid(self):
        """Boxes for pages the image lacks fall back to the first-page grid."""
        field = {"id": "f9", "label": "Name", "page": 9,
                 "bounding_box": {"left": 0.5, "top": 0.5, "width": 0.2, "height": 0.2}}
        result = redact_image(_white_png(), [field])
        assert result.unlocated_field_ids == ["f9"]

    def test_bad_image(self, fields):
        """Unreadable images raise RedactionError."""
        with pytest.raises(RedactionError):
            redact_image(b"nope", fields[:1])


# ============================================================================
# PDF Redaction
# ============================================================================

class TestPdfRedaction:
    """PyMuPDF redaction annotations."""

    def test_value_search_removes_text(self):
        """Fields without a box are found by value and removed."""
        data = _pdf_with_text("Name: Jane Doe")
        result = redact_pdf(data, [{"id": "f1", "label": "Name", "value": "Jane Doe"}])

        assert result.content_type == "application/pdf"
        assert result.redacted_field_ids == ["f1"]
        text = _pdf_text(result.data)
        assert "Jane Doe" not in text
        assert "Name:" in text

    def test_box_redaction(self):
        """Boxes are page fractions on the field's page."""
        data = _pdf_with_text("Secret")
        field = {"id": "f1", "value": "", "page": 1,
                 "bounding_box": {"left": 0.0, "top": 0.0, "width": 1.0, "height": 1.0}}
        result = redact_pdf(data, [field])
        assert result.areas_redacted == 1
        assert "Secret" not in _pdf_text(result.data)

    def test_unlocated_value(self):
        """Values that are not in the PDF are reported, not invented."""
        result = redact_pdf(_pdf_with_text("Hello"), [{"id": "f1", "value": "Goodbye"}])
        assert result.unlocated_field_ids == ["f1"]
        assert result.redacted_field_ids == []

    def test_box_on_second_page(self):
        """Boxes land on the page the field is on."""
        document = fitz.open()
        document.new_page().insert_text((72, 100), "Public")
        document.new_page().insert_text((72, 100), "Secret")
        data = document.tobytes()
        document.close()

        field = {"id": "f1", "value": "", "page": 2,
                 "bounding_box": {"left": 0.0, "top": 0.0, "width": 1.0, "height": 1.0}}
        text = _pdf_text(redact_pdf(data, [field]).data)
        assert "Public" in text
        assert "Secret" not in text

    def test_bad_pdf(self):
        """Unreadable PDFs raise RedactionError."""
        with pytest.raises(RedactionError):
            redact_pdf(b"not a pdf", [])


# ============================================================================
# Stored Output
# ============================================================================

class TestRedactDocument:
    """Redaction with storage of the output."""

    def test_output_stored(self, tmp_path, fields):
        """The redacted file is written under redacted/ and can be found again."""
        result = redact_document(_white_png(), "image/png", {"extracted_fields": fields}, ["f-name"], tmp_path)
        path = find_redacted_file(result.redaction_id, tmp_path)
        assert path is not None
        assert path.suffix == ".png"
        assert path.read_bytes() == result.data
        assert result.to_dict()["download_url"] == f"/api/redacted/{result.redaction_id}"

    def test_unknown_field_ids(self, tmp_path, fields):
        """Field ids not in the document are rejected."""
        with pytest.raises(ValueError):
            redact_document(_white_png(), "image/png", {"extracted_fields": fields}, ["nope"], tmp_path)

    def test_unsupported_type(self, tmp_path, fields):
        """Only PDFs and images can be redacted."""
        with pytest.raises(ValueError):
            redact_document(b"x", "text/plain", {"extracted_fields": fields}, ["f-name"], tmp_path)

    def test_find_rejects_path_tricks(self, tmp_path):
        """Ids with path characters are never looked up."""
        assert find_redacted_file("../secret", tmp_path) is None
        assert find_redacted_file("abc123", tmp_path) is None


class TestRedactionNode:
    """The pipeline node."""

    def test_default_selection(self, tmp_path, monkeypatch, fields):
        """Without explicit ids the default selection is redacted."""
        monkeypatch.setenv("DOC_PROCESSOR_STORAGE_DIR", str(tmp_path))
        set_config_service(ConfigService(tmp_path))
        try:
            state = {
                "file_bytes": _white_png(),
                "content_type": "image/png",
                "document_data": {"extracted_fields": fields},
                "errors": [],
            }
            result = redaction_node(state)
        finally:
            set_config_service(None)

        assert result["status"] == "Redacted"
        assert result["fields_to_redact"] == ["f-name", "f-card", "f-tfn"]
        assert result["redaction"]["redaction_id"]

    def test_unknown_ids_fail(self, tmp_path, monkeypatch, fields):
        """Bad field ids fail the pipeline."""
        monkeypatch.setenv("DOC_PROCESSOR_STORAGE_DIR", str(tmp_path))
        state = {
            "file_bytes": _white_png(),
            "content_type": "image/png",
            "document_data": {"extracted_fields": fields},
            "fields_to_redact": ["ghost"],
            "errors": [],
        }
        result = redaction_node(state)
        assert result["status"] == "Failed"

    def test_review_status_kept(self, tmp_path, monkeypatch, fields):
        """Documents awaiting review stay flagged after redaction."""
        monkeypatch.setenv("DOC_PROCESSOR_STORAGE_DIR", str(tmp_path))
        state = {
            "file_bytes": _white_png(),
            "content_type": "image/png",
            "document_data": {"extracted_fields": fields},
            "fields_to_redact": ["f-name"],
            "needs_review": True,
            "status": "Needs_Review",
            "errors": [],
        }
        result = redaction_node(state)
        assert result["status"] == "Needs_Review"
        assert result["redaction"]["redaction_id"]
