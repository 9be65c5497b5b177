"""
Classifier training bookkeeping.

Builds training manifests from approved dataset examples and tracks model
status on the dataset. Feedback-driven retraining marks the consumed
feedback items with the job that used them.
"""

import json
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Any, Optional

from config_service import ConfigService
from config_storage import get_storage_dir
from docproc.feedback import (
    DEFAULT_SUB_TYPE,
    feedback_document_type,
    mark_feedback_trained,
    select_feedback_for_training,
)
from state import ExampleStatus, ModelStatus

logger = logging.getLogger(__name__)

MIN_TRAINING_EXAMPLES = 5


@dataclass
class TrainingJob:
    job_id: str
    model_id: str
    document_type_id: str
    dataset_id: str
    manifest_path: str
    example_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "job_id": self.job_id,
            "model_id": self.model_id,
            "document_type_id": self.document_type_id,
            "dataset_id": self.dataset_id,
            "manifest_path": self.manifest_path,
            "example_count": self.example_count,
        }


def approved_examples(examples: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        e for e in examples
        if e.get("status") == ExampleStatus.APPROVED.value or e.get("is_approved")
    ]


def build_training_manifest(examples: List[Dict[str, Any]], source_prefix: str = "") -> Dict[str, Any]:
    """
    Manifest listing each approved example's file and class label.

    source_prefix is prepended to file keys, e.g. "s3://bucket/".
    """
    return {
        "documents": [
            {"source": f"{source_prefix}{e['file_key']}", "class": e.get("document_type")}
            for e in approved_examples(examples)
        ]
    }


def model_name(document_type_id: str, when: Optional[datetime] = None) -> str:
    timestamp = (when or datetime.now()).isoformat().replace(":", "-").replace(".", "-")
    return f"doc-classifier-{document_type_id[:8]}-{timestamp}"


def start_dataset_training(
    service: ConfigService,
    document_type_id: str,
    dataset_id: str,
    source_prefix: str = "",
    storage_dir: Optional[Path] = None,
) -> TrainingJob:
    """
    Start training a classifier from a dataset.

    Writes the manifest under training/<type>/<job>/manifest.json and moves
    the dataset to TRAINING with the new model id.

    Raises:
        KeyError: If the document type or dataset does not exist
        ValueError: If fewer than MIN_TRAINING_EXAMPLES examples are approved
    """
    dataset = service.get_dataset(document_type_id, dataset_id)
    examples = approved_examples(dataset.get("examples") or [])
    if len(examples) < MIN_TRAINING_EXAMPLES:
        raise ValueError(
            f"At least {MIN_TRAINING_EXAMPLES} approved examples are required for training"
        )

    job_id = str(uuid.uuid4())
    manifest_dir = Path(storage_dir or get_storage_dir()) / "training" / document_type_id / job_id
    manifest_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = manifest_dir / "manifest.json"
    manifest_path.write_text(json.dumps(build_training_manifest(examples, source_prefix), indent=2))

    job_model_id = model_name(document_type_id)
    service.update_model_status(document_type_id, dataset_id, ModelStatus.TRAINING.value, model_id=job_model_id)

    logger.info(f"Started training {job_model_id} with {len(examples)} examples")
    return TrainingJob(
        job_id=job_id,
        model_id=job_model_id,
        document_type_id=document_type_id,
        dataset_id=dataset_id,
        manifest_path=str(manifest_path),
        example_count=len(examples),
    )


def train_with_feedback(
    document_type: str,
    document_sub_type: Optional[str] = None,
    count: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Consume untrained feedback for a document type ('all' for every type).

    Raises:
        ValueError: If document_type is missing
    """
    if not document_type:
        raise ValueError("documentType is required")

    items = select_feedback_for_training(document_type, document_sub_type, count)
    if not items:
        return {"message": "No feedback items found for training", "processed_count": 0}

    training_items = [
        {
            "id": item["id"],
            "document_type": feedback_document_type(item),
            "document_sub_type": item.get("document_sub_type") or DEFAULT_SUB_TYPE,
        }
        for item in items
    ]

    job_id = str(uuid.uuid4())
    mark_feedback_trained([i["id"] for i in training_items], job_id)
    logger.info(f"Training job {job_id} consumed {len(training_items)} feedback items")

    return {
        "message": "Training job initiated, feedback items marked as used",
        "job_id": job_id,
        "processed_count": len(training_items),
        "document_type": document_type,
        "document_sub_type": document_sub_type,
        "items": training_items,
    }
