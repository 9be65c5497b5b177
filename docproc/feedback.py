"""
Classification feedback - operator corrections kept for retraining.

Every time an operator confirms or corrects a classification, a feedback
item is stored. Items start untrained and are marked as used once a
training job picks them up.
"""

import time
import uuid
import logging
from typing import List, Dict, Any, Optional

from config_storage import get_table
from state import FeedbackSource, ProcessingState

logger = logging.getLogger(__name__)

DEFAULT_SUB_TYPE = "General"
ALL_DOCUMENT_TYPES = "all"


def _now_ms() -> int:
    return int(time.time() * 1000)


def feedback_document_type(item: Dict[str, Any]) -> str:
    """The type an item teaches: the correction, else the original guess."""
    original = item.get("original_classification") or {}
    return item.get("corrected_document_type") or original.get("document_type") or "Unknown"


def submit_feedback(
    document_id: str,
    original_classification: Optional[Dict[str, Any]] = None,
    corrected_document_type: Optional[str] = None,
    document_sub_type: Optional[str] = None,
    feedback_source: str = FeedbackSource.MANUAL.value,
    timestamp: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Store a feedback item.

    Raises:
        ValueError: If document_id is missing or feedback_source is invalid
    """
    if not document_id:
        raise ValueError("documentId is required")
    if feedback_source not in {s.value for s in FeedbackSource}:
        raise ValueError(f"Invalid feedback source: {feedback_source}")

    item = {
        "id": str(uuid.uuid4()),
        "document_id": document_id,
        "original_classification": original_classification,
        "corrected_document_type": corrected_document_type,
        "document_sub_type": document_sub_type or DEFAULT_SUB_TYPE,
        "feedback_source": feedback_source,
        "timestamp": timestamp if timestamp is not None else _now_ms(),
        "has_been_used_for_training": False,
    }
    get_table("feedback").put_item(item)
    logger.info(f"Stored {feedback_source} feedback {item['id']} for document {document_id}")
    return item


def list_feedback() -> List[Dict[str, Any]]:
    return sorted(get_table("feedback").scan(), key=lambda i: i.get("timestamp", 0), reverse=True)


def get_feedback_stats() -> Dict[str, Any]:
    """Totals overall and per document type, split by trained/untrained."""
    items = get_table("feedback").scan()
    stats: Dict[str, Any] = {
        "total_items": len(items),
        "trained": 0,
        "untrained": 0,
        "by_document_type": {},
    }
    for item in items:
        bucket = "trained" if item.get("has_been_used_for_training") else "untrained"
        stats[bucket] += 1

        doc_type = feedback_document_type(item)
        per_type = stats["by_document_type"].setdefault(
            doc_type, {"total": 0, "trained": 0, "untrained": 0}
        )
        per_type["total"] += 1
        per_type[bucket] += 1
    return stats


def select_feedback_for_training(
    document_type: str,
    document_sub_type: Optional[str] = None,
    count: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Untrained items for a document type ('all' for every type), oldest first.

    The type matches either the correction or the original classification.
    """
    def wanted(item: Dict[str, Any]) -> bool:
        if item.get("has_been_used_for_training"):
            return False
        if document_type != ALL_DOCUMENT_TYPES:
            original = item.get("original_classification") or {}
            if document_type not in (item.get("corrected_document_type"), original.get("document_type")):
                return False
        if document_sub_type and item.get("document_sub_type") != document_sub_type:
            return False
        return True

    items = sorted(get_table("feedback").scan(wanted), key=lambda i: i.get("timestamp", 0))
    if count and count > 0:
        items = items[:count]
    return items


def mark_feedback_trained(item_ids: List[str], training_job_id: str) -> int:
    """Flag items as used by a training job. Returns how many were updated."""
    table = get_table("feedback")
    timestamp = _now_ms()
    updated = 0
    for item_id in item_ids:
        if table.update_item(item_id, {
            "has_been_used_for_training": True,
            "training_job_id": training_job_id,
            "training_timestamp": timestamp,
        }):
            updated += 1
    return updated


# ============================================================================
# LangGraph Node
# ============================================================================

def feedback_node(state: ProcessingState) -> dict:
    """
    Node: Feedback

    Records confident automatic classifications as 'auto' feedback so they
    can serve as training examples. Manual selections and results flagged
    for review are left for the operator to submit.
    """
    print("--- NODE: Feedback ---")

    classification = state.get("classification") or {}
    if (not classification.get("document_type_id")
            or classification.get("method") == "manual"
            or state.get("needs_review")):
        print("   No automatic feedback recorded")
        return {}

    submit_feedback(
        document_id=state["document_id"],
        original_classification=classification,
        corrected_document_type=None,
        document_sub_type=classification.get("sub_type"),
        feedback_source=FeedbackSource.AUTO.value,
    )
    return {}
