"""
Tests for text extraction, label/value field extraction and cloud analysis
response parsing.
"""

import io
from typing import Any, Dict, List
from unittest.mock import MagicMock, patch

import fitz
import pytest
from PIL import Image

from docproc.extractor import (
    ExtractionError,
    UnsupportedDocumentError,
    detect_content_type,
    determine_id_sub_type,
    extract_fields_from_text,
    extract_text,
    field_extraction_node,
    guess_data_type,
    infer_data_type_for_id_field,
    parse_analyze_id_response,
    parse_textract_key_values,
    parse_textract_lines,
    text_extraction_node,
)


# ============================================================================
# Test Fixtures
# ============================================================================

def _make_pdf(lines: List[str]) -> bytes:
    document = fitz.open()
    page = document.new_page()
    for i, line in enumerate(lines):
        page.insert_text((72, 72 + i * 20), line)
    data = document.tobytes()
    document.close()
    return data


def _make_png(width: int = 200, height: int = 100) -> bytes:
    output = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(output, format="PNG")
    return output.getvalue()


@pytest.fixture
def tesseract_output() -> Dict[str, List[Any]]:
    """image_to_data output for 'Name: Jane Doe' on one line of a 200x100 image."""
    return {
        "text": ["", "Name:", "Jane", "Doe"],
        "conf": ["-1", "95", "91", "93"],
        "left": [0, 10, 60, 100],
        "top": [0, 20, 20, 20],
        "width": [200, 40, 30, 30],
        "height": [100, 10, 10, 10],
        "block_num": [0, 1, 1, 1],
        "par_num": [0, 1, 1, 1],
        "line_num": [0, 1, 1, 1],
    }


@pytest.fixture
def form_response() -> Dict[str, Any]:
    """Form analysis response with one key/value pair and one checkbox."""
    def word(block_id, text):
        return {"Id": block_id, "BlockType": "WORD", "Text": text, "Confidence": 99,
                "Geometry": {"BoundingBox": {"Left": 0.1, "Top": 0.1, "Width": 0.1, "Height": 0.05}}}

    return {"Blocks": [
        {"Id": "line-1", "BlockType": "LINE", "Text": "Invoice Number: INV-42"},
        {"Id": "key-1", "BlockType": "KEY_VALUE_SET", "EntityTypes": ["KEY"], "Confidence": 90,
         "Relationships": [{"Type": "VALUE", "Ids": ["val-1"]}, {"Type": "CHILD", "Ids": ["w1", "w2"]}],
         "Geometry": {"BoundingBox": {"Left": 0.1, "Top": 0.1, "Width": 0.2, "Height": 0.05}}},
        {"Id": "val-1", "BlockType": "KEY_VALUE_SET", "EntityTypes": ["VALUE"], "Confidence": 80,
         "Relationships": [{"Type": "CHILD", "Ids": ["w3"]}],
         "Geometry": {"BoundingBox": {"Left": 0.4, "Top": 0.1, "Width": 0.1, "Height": 0.05}}},
        word("w1", "Invoice"), word("w2", "Number:"), word("w3", "INV-42"),
        {"Id": "key-2", "BlockType": "KEY_VALUE_SET", "EntityTypes": ["KEY"], "Confidence": 70,
         "Relationships": [{"Type": "VALUE", "Ids": ["val-2"]}, {"Type": "CHILD", "Ids": ["w4"]}]},
        {"Id": "val-2", "BlockType": "KEY_VALUE_SET", "EntityTypes": ["VALUE"], "Confidence": 70,
         "Relationships": [{"Type": "CHILD", "Ids": ["sel-1"]}]},
        word("w4", "Paid"),
        {"Id": "sel-1", "BlockType": "SELECTION_ELEMENT", "SelectionStatus": "SELECTED", "Confidence": 70},
    ]}


# ============================================================================
# Content Types
# ============================================================================

class TestContentTypes:
    """Upload type detection."""

    def test_declared_type_wins(self):
        """A supported declared type is used as is."""
        assert detect_content_type("scan.bin", "image/PNG") == "image/png"

    def test_extension_fallback(self):
        """The extension decides when the declared type is generic."""
        assert detect_content_type("scan.TIF", "application/octet-stream") == "image/tiff"
        assert detect_content_type("doc.pdf", None) == "application/pdf"

    def test_unsupported(self):
        """Other files are rejected."""
        with pytest.raises(UnsupportedDocumentError):
            detect_content_type("notes.docx", "application/msword")

    def test_unsupported_is_value_error(self):
        """Unsupported documents count as bad input."""
        assert issubclass(UnsupportedDocumentError, ValueError)


# ============================================================================
# Text Extraction
# ============================================================================

class TestExtractText:
    """PDF and image text extraction."""

    def test_pdf_text_layer(self):
        """PDFs with text are read directly."""
        data = _make_pdf(["Invoice Number: INV-42", "Total Amount: $120.00"])
        result = extract_text(data, "application/pdf", "invoice.pdf")
        assert result.method == "pdf-direct"
        assert result.page_count == 1
        assert "INV-42" in result.text

    def test_scanned_pdf_uses_docling(self):
        """PDFs without a text layer fall back to OCR."""
        data = _make_pdf([])
        with patch("docproc.extractor.extract_pdf_text_with_docling", return_value=["Scanned text here"]) as ocr:
            result = extract_text(data, "application/pdf", "scan.pdf")
        ocr.assert_called_once()
        assert result.method == "docling-ocr"
        assert result.text == "Scanned text here"
        assert result.note

    def test_not_a_pdf(self):
        """Bytes without a PDF header raise ExtractionError."""
        with pytest.raises(ExtractionError):
            extract_text(b"hello world", "application/pdf")

    def test_unsupported_type(self):
        """Unsupported content types are rejected before reading."""
        with pytest.raises(UnsupportedDocumentError):
            extract_text(b"x", "text/plain")

    def test_image_ocr(self, tesseract_output):
        """Images are OCRed with word positions as page fractions."""
        with patch("docproc.extractor.pytesseract.image_to_data", return_value=tesseract_output):
            result = extract_text(_make_png(), "image/png", "id.png")

        assert result.method == "tesseract"
        assert result.text == "Name: Jane Doe"
        assert len(result.word_blocks) == 3
        first = result.word_blocks[0]["bounding_box"]
        assert first == {"left": 0.05, "top": 0.2, "width": 0.2, "height": 0.1}

    def test_unreadable_image(self):
        """Garbage image bytes raise ExtractionError."""
        with pytest.raises(ExtractionError):
            extract_text(b"not an image", "image/jpeg")

    def test_to_dict(self):
        """Serialised results report text, pages and method."""
        result = extract_text(_make_pdf(["Name: Jane Doe and more text"]), "application/pdf")
        data = result.to_dict()
        assert data["method"] == "pdf-direct"
        assert data["page_count"] == 1
        assert "Jane Doe" in data["extracted_text"]


# ============================================================================
# Field Extraction
# ============================================================================

class TestFieldExtraction:
    """Label/value pairs from text."""

    def test_key_value_lines(self):
        """Each 'Label: value' line becomes a field."""
        fields = extract_fields_from_text("Name: Jane Doe\nEmail: jane@example.com\nno colon here")
        assert [(f["id"], f["label"], f["value"]) for f in fields] == [
            ("field-0", "Name", "Jane Doe"),
            ("field-1", "Email", "jane@example.com"),
        ]
        assert fields[1]["data_type"] == "Email"
        assert fields[0]["confidence"] == 60.0

    def test_labels_do_not_span_lines(self):
        """A label never swallows the previous line."""
        fields = extract_fields_from_text("Header\nDate: 01/02/2024")
        assert fields[0]["label"] == "Date"
        assert fields[0]["data_type"] == "Date"

    def test_boxes_from_word_blocks(self, tesseract_output):
        """Fields take the union box of their value words."""
        words = [
            {"text": "Name:", "page": 1, "bounding_box": {"left": 0.05, "top": 0.2, "width": 0.2, "height": 0.1}},
            {"text": "Jane", "page": 1, "bounding_box": {"left": 0.3, "top": 0.2, "width": 0.15, "height": 0.1}},
            {"text": "Doe", "page": 1, "bounding_box": {"left": 0.5, "top": 0.2, "width": 0.15, "height": 0.1}},
        ]
        field = extract_fields_from_text("Name: Jane Doe", words)[0]
        assert field["bounding_box"] == pytest.approx({"left": 0.3, "top": 0.2, "width": 0.35, "height": 0.1})
        assert len(field["value_word_blocks"]) == 2
        assert field["key_bounding_box"]["left"] == 0.05

    def test_empty_text(self):
        """No text, no fields."""
        assert extract_fields_from_text("") == []

    @pytest.mark.parametrize("value,expected", [
        ("12345", "Number"),
        ("1/2/2024", "Date"),
        ("a@b.io", "Email"),
        ("$1,200.00", "Currency"),
        ("+61 2 9999 0000", "Phone"),
        ("Jane Doe", "Text"),
    ])
    def test_guess_data_type(self, value, expected):
        """Value shapes map to data types."""
        assert guess_data_type(value) == expected


# ============================================================================
# Cloud Analysis Responses
# ============================================================================

class TestFormAnalysis:
    """Key/value form analysis responses."""

    def test_lines(self, form_response):
        """LINE blocks become the document text."""
        assert parse_textract_lines(form_response) == "Invoice Number: INV-42"

    def test_key_values(self, form_response):
        """KEY blocks pair with their VALUE words."""
        fields = parse_textract_key_values(form_response)
        assert fields[0]["label"] == "Invoice Number"
        assert fields[0]["value"] == "INV-42"
        assert fields[0]["confidence"] == 85
        assert fields[0]["bounding_box"]["left"] == 0.4

    def test_selection_elements(self, form_response):
        """Selected checkboxes read as X."""
        fields = parse_textract_key_values(form_response)
        assert fields[1]["label"] == "Paid"
        assert fields[1]["value"] == "X"


class TestIdAnalysis:
    """Identity document analysis responses."""

    @pytest.fixture
    def id_response(self) -> Dict[str, Any]:
        return {"IdentityDocuments": [{"IdentityDocumentFields": [
            {"Type": {"Text": "FIRST_NAME"}, "ValueDetection": {"Text": "JANE", "Confidence": 98}},
            {"Type": {"Text": "DATE_OF_BIRTH"}, "ValueDetection": {
                "Text": "1 JAN 1990", "Confidence": 96,
                "NormalizedValue": {"Value": "1990-01-01T00:00:00", "ValueType": "Date"}}},
            {"Type": {"Text": "PLACE_OF_BIRTH"}, "ValueDetection": {"Text": "", "Confidence": 90}},
            {"Type": {"Text": "DOCUMENT_NUMBER"}, "ValueDetection": {"Text": "N1234567", "Confidence": 100}},
            {"Type": {"Text": "NATIONALITY"}},
        ]}]}

    def test_fields(self, id_response):
        """Detected values become fields with normalised values."""
        data = parse_analyze_id_response(id_response)
        labels = [f["label"] for f in data["extracted_fields"]]
        assert labels == ["FIRST_NAME", "DATE_OF_BIRTH", "PLACE_OF_BIRTH", "DOCUMENT_NUMBER"]
        assert data["extracted_fields"][1]["normalized"] == "1990-01-01T00:00:00"
        assert data["document_type"] == "ID Document"

    def test_confidence_averages_all_fields(self, id_response):
        """Fields without a detection count as zero confidence."""
        data = parse_analyze_id_response(id_response)
        assert data["confidence"] == pytest.approx((98 + 96 + 90 + 100) / 5)

    def test_no_documents(self):
        """Responses without an identity document are rejected."""
        with pytest.raises(ValueError):
            parse_analyze_id_response({"IdentityDocuments": []})

    def test_data_type_inference(self):
        """Field type names map to data types, checked in order."""
        assert infer_data_type_for_id_field("DATE_OF_BIRTH") == "Date"
        assert infer_data_type_for_id_field("DOCUMENT_NUMBER") == "Text"
        assert infer_data_type_for_id_field("FIRST_NAME") == "Name"
        assert infer_data_type_for_id_field("ADDRESS") == "Address"
        assert infer_data_type_for_id_field("MRZ_CODE") == "Text"

    def test_sub_type(self):
        """Passports, licences and everything else."""
        assert determine_id_sub_type([{"label": "NATIONALITY"}]) == "Passport"
        assert determine_id_sub_type([{"label": "CLASS"}]) == "Driver's License"
        assert determine_id_sub_type([{"label": "FIRST_NAME"}]) == "Generic ID"


# ============================================================================
# LangGraph Nodes
# ============================================================================

class TestExtractionNodes:
    """Pipeline nodes."""

    def test_text_node_failure_sets_status(self):
        """Unreadable documents fail the pipeline with an error message."""
        state = {"file_bytes": b"junk", "content_type": "application/pdf", "errors": []}
        result = text_extraction_node(state)
        assert result["status"] == "Failed"
        assert result["errors"]

    def test_text_node_success(self):
        """Successful extraction fills document_data."""
        state = {"file_bytes": _make_pdf(["Name: Jane Doe, resident"]), "content_type": "application/pdf"}
        result = text_extraction_node(state)
        assert "Jane Doe" in result["document_data"]["extracted_text"]
        assert result["extraction_method"] == "pdf-direct"

    def test_field_node(self):
        """Fields are extracted from the document text."""
        state = {"document_data": {"extracted_text": "Name: Jane Doe"}, "word_blocks": []}
        result = field_extraction_node(state)
        assert result["document_data"]["extracted_fields"][0]["value"] == "Jane Doe"
