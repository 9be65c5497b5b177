"""
Tests for classification feedback storage and statistics.
"""

import pytest

from docproc.feedback import (
    feedback_node,
    get_feedback_stats,
    list_feedback,
    mark_feedback_trained,
    select_feedback_for_training,
    submit_feedback,
)


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def storage(tmp_path, monkeypatch):
    """Point the feedback table at a temporary directory."""
    monkeypatch.setenv("DOC_PROCESSOR_STORAGE_DIR", str(tmp_path))
    return tmp_path


def _submit(document_id: str, original: str, corrected: str = None, timestamp: int = 0, **kwargs):
    return submit_feedback(
        document_id=document_id,
        original_classification={"document_type": original, "confidence": 0.6},
        corrected_document_type=corrected,
        timestamp=timestamp,
        **kwargs,
    )


# ============================================================================
# Submission
# ============================================================================

class TestSubmitFeedback:
    """Storing feedback items."""

    def test_defaults(self):
        """Items start untrained with the General sub-type."""
        item = _submit("doc-1", "Invoice", "Receipt")
        assert item["has_been_used_for_training"] is False
        assert item["document_sub_type"] == "General"
        assert item["feedback_source"] == "manual"

    def test_timestamp_defaults_to_now(self):
        """A missing timestamp is filled in milliseconds."""
        item = submit_feedback(document_id="doc-1")
        assert item["timestamp"] > 1_600_000_000_000

    def test_document_id_required(self):
        """Feedback must name a document."""
        with pytest.raises(ValueError, match="documentId is required"):
            submit_feedback(document_id="")

    def test_invalid_source(self):
        """Only known feedback sources are accepted."""
        with pytest.raises(ValueError):
            submit_feedback(document_id="doc-1", feedback_source="robot")

    def test_list_newest_first(self):
        """Listing returns newest items first."""
        _submit("old", "Invoice", timestamp=1)
        _submit("new", "Invoice", timestamp=2)
        assert [i["document_id"] for i in list_feedback()] == ["new", "old"]


# ============================================================================
# Statistics and Training Selection
# ============================================================================

class TestFeedbackStats:
    """Totals by training state and document type."""

    def test_stats(self):
        """Corrections count towards the corrected type."""
        a = _submit("a", "Invoice", "Receipt")
        _submit("b", "Invoice")
        _submit("c", "Receipt")
        mark_feedback_trained([a["id"]], "job-1")

        stats = get_feedback_stats()
        assert stats["total_items"] == 3
        assert stats["trained"] == 1
        assert stats["untrained"] == 2
        assert stats["by_document_type"]["Receipt"] == {"total": 2, "trained": 1, "untrained": 1}
        assert stats["by_document_type"]["Invoice"] == {"total": 1, "trained": 0, "untrained": 1}

    def test_empty_stats(self):
        """No feedback, zero totals."""
        assert get_feedback_stats() == {"total_items": 0, "trained": 0, "untrained": 0, "by_document_type": {}}


class TestTrainingSelection:
    """Choosing feedback for a training job."""

    def test_matches_correction_or_original(self):
        """Items match on either the corrected or the original type."""
        _submit("a", "Invoice", "Receipt", timestamp=1)
        _submit("b", "Receipt", timestamp=2)
        _submit("c", "Invoice", timestamp=3)
        assert [i["document_id"] for i in select_feedback_for_training("Receipt")] == ["a", "b"]

    def test_all_and_count(self):
        """'all' selects every type; count keeps the oldest."""
        _submit("a", "Invoice", timestamp=3)
        _submit("b", "Receipt", timestamp=1)
        _submit("c", "Invoice", timestamp=2)
        assert [i["document_id"] for i in select_feedback_for_training("all", count=2)] == ["b", "c"]

    def test_trained_items_skipped(self):
        """Items already used are not selected again."""
        item = _submit("a", "Invoice")
        assert mark_feedback_trained([item["id"], "ghost"], "job-1") == 1
        assert select_feedback_for_training("Invoice") == []

    def test_sub_type_filter(self):
        """A sub-type narrows the selection."""
        _submit("a", "ID Document", document_sub_type="Passport")
        _submit("b", "ID Document")
        assert [i["document_id"] for i in select_feedback_for_training("ID Document", "Passport")] == ["a"]


class TestFeedbackNode:
    """Automatic feedback from the pipeline."""

    def test_confident_classification_recorded(self):
        """Confident automatic results are stored as auto feedback."""
        state = {
            "document_id": "doc-1",
            "classification": {"document_type": "Invoice", "document_type_id": "invoice",
                               "method": "keyword", "confidence": 0.9},
            "needs_review": False,
        }
        feedback_node(state)
        items = list_feedback()
        assert len(items) == 1
        assert items[0]["feedback_source"] == "auto"

    def test_manual_and_review_skipped(self):
        """Manual picks and results needing review are not recorded."""
        feedback_node({"document_id": "d", "classification": {"document_type_id": "t", "method": "manual"}})
        feedback_node({"document_id": "d", "classification": {"document_type_id": "t", "method": "llm"},
                       "needs_review": True})
        assert list_feedback() == []
