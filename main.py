import os
import sys
import uuid
import json
import logging
import argparse
from typing import Optional

from langgraph.graph import StateGraph, START, END
from dotenv import load_dotenv

# Import State
from state import ProcessingState

# Import Nodes
from docproc.extractor import text_extraction_node, field_extraction_node, detect_content_type
from docproc.classifier import document_classifier_node
from docproc.matcher import field_matcher_node
from docproc.redactor import redaction_node, select_fields_to_redact
from docproc.feedback import feedback_node
from config_service import get_config_service

# Load Env
load_dotenv()

logger = logging.getLogger(__name__)


def review_node(state: ProcessingState):
    """
    Node: Review Gate

    Marks low-confidence documents for operator review and, when redaction
    was requested without an explicit field list, picks the default fields.
    """
    print("--- NODE: Review ---")
    update = {"status": "Needs_Review" if state.get("needs_review") else "Completed"}

    if state.get("redact") and not state.get("fields_to_redact"):
        fields = (state.get("document_data") or {}).get("extracted_fields") or []
        selected = select_fields_to_redact(fields, get_config_service().get_redaction_settings())
        update["fields_to_redact"] = [f["id"] for f in selected]

    print(f"   Status: {update['status']}")
    return update


def build_graph():
    """
    Constructs the LangGraph state machine.
    """
    builder = StateGraph(ProcessingState)

    # 1. Add Nodes
    builder.add_node("extract_text", text_extraction_node)
    builder.add_node("classify", document_classifier_node)
    builder.add_node("extract_fields", field_extraction_node)
    builder.add_node("match_elements", field_matcher_node)
    builder.add_node("review", review_node)
    builder.add_node("redact", redaction_node)
    builder.add_node("feedback", feedback_node)

    # 2. Add Edges (The Flow)
    builder.add_edge(START, "extract_text")

    # Conditional logic: stop when a step failed
    def check_failed(next_node):
        def route(state):
            if state.get("status") == "Failed":
                return END
            return next_node
        return route

    builder.add_conditional_edges("extract_text", check_failed("classify"))
    builder.add_conditional_edges("classify", check_failed("extract_fields"))
    builder.add_edge("extract_fields", "match_elements")
    builder.add_edge("match_elements", "review")

    # Conditional logic: anything to redact?
    def check_redaction(state):
        if state.get("redact") and state.get("fields_to_redact"):
            return "redact"
        return "feedback"

    builder.add_conditional_edges("review", check_redaction)
    builder.add_conditional_edges("redact", check_failed("feedback"))
    builder.add_edge("feedback", END)

    # 3. Compile
    return builder.compile()


def process_document(
    data: bytes,
    file_name: str,
    content_type: Optional[str] = None,
    document_type_id: Optional[str] = None,
    sub_type_id: Optional[str] = None,
    redact: bool = False,
    fields_to_redact: Optional[list] = None,
) -> ProcessingState:
    """Run one document through the full pipeline and return the final state."""
    initial_state: ProcessingState = {
        "document_id": uuid.uuid4().hex,
        "status": "Processing",
        "file_name": file_name,
        "content_type": detect_content_type(file_name, content_type),
        "file_bytes": data,
        "selected_document_type_id": document_type_id,
        "selected_sub_type_id": sub_type_id,
        "redact": redact,
        "fields_to_redact": fields_to_redact or [],
        "document_data": {},
        "word_blocks": [],
        "unmatched_fields": [],
        "missing_elements": [],
        "needs_review": False,
        "errors": [],
    }
    return build_graph().invoke(initial_state)


def summarize(state: ProcessingState) -> dict:
    """JSON-friendly view of a final pipeline state (drops the file bytes)."""
    return {k: v for k, v in state.items() if k not in ("file_bytes", "word_blocks")}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Classify, extract and redact a document")
    parser.add_argument("file", help="PDF or image to process")
    parser.add_argument("--document-type", help="Skip classification and use this document type id")
    parser.add_argument("--sub-type", help="Sub-type id (with --document-type)")
    parser.add_argument("--redact", action="store_true", help="Redact the default field selection")
    parser.add_argument("--reset-config", action="store_true", help="Seed the default document types first")
    args = parser.parse_args()

    if args.reset_config or not get_config_service().list_document_types():
        print("Seeding default configuration...")
        get_config_service().reset_to_defaults()

    print("Starting Document Processor...")
    with open(args.file, "rb") as f:
        file_bytes = f.read()

    final_state = process_document(
        file_bytes,
        os.path.basename(args.file),
        document_type_id=args.document_type,
        sub_type_id=args.sub_type,
        redact=args.redact,
    )
    print(json.dumps(summarize(final_state), indent=2, default=str))
    sys.exit(1 if final_state.get("status") == "Failed" else 0)
