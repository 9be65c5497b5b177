"""
FastAPI Server for the Document Processor console.

Provides endpoints for:
- Configuration: document types, sub-types, data elements, training
  datasets, prompts, retention policies and redaction defaults
- Processing: text extraction, classification, field matching, ID and
  form analysis import, redaction
- Feedback and training: classification corrections, feedback stats,
  classifier training
"""

import os
import json
import logging
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, UploadFile, File, Form, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config_service import get_config_service
from config_storage import StorageError
from docproc.classifier import classify_document, config_from_env
from docproc.extractor import (
    ExtractionError,
    UnsupportedDocumentError,
    detect_content_type,
    extract_fields_from_text,
    extract_text,
    parse_analyze_id_response,
    parse_textract_key_values,
    parse_textract_lines,
)
from docproc.feedback import get_feedback_stats, list_feedback, submit_feedback
from docproc.matcher import (
    MatcherConfig,
    apply_llm_matches,
    match_data_elements,
    match_elements_with_llm,
)
from docproc.redactor import RedactionError, find_redacted_file, redact_document
from docproc.trainer import start_dataset_training, train_with_feedback
from main import process_document, summarize

load_dotenv()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Document Processor API",
    description="Configuration, classification and redaction API for the document processor console",
    version="0.1.0",
)

# CORS for the console frontend (dev server typically on 3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Error Translation
# ============================================================================

def _message(error: Exception) -> str:
    return str(error.args[0]) if error.args else str(error)


@app.exception_handler(KeyError)
async def not_found_handler(request: Request, exc: KeyError):
    return JSONResponse(status_code=404, content={"detail": _message(exc)})


@app.exception_handler(UnsupportedDocumentError)
async def unsupported_handler(request: Request, exc: UnsupportedDocumentError):
    return JSONResponse(status_code=400, content={"detail": _message(exc)})


@app.exception_handler(ValueError)
async def invalid_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": _message(exc)})


@app.exception_handler(ExtractionError)
async def extraction_handler(request: Request, exc: ExtractionError):
    return JSONResponse(status_code=422, content={"detail": _message(exc), "details": exc.details})


@app.exception_handler(StorageError)
async def storage_handler(request: Request, exc: StorageError):
    logger.error(f"Storage failure: {exc}")
    return JSONResponse(status_code=500, content={"detail": _message(exc)})


# ============================================================================
# Pydantic Models for API
# ============================================================================

class ApiModel(BaseModel):
    """Accepts both snake_case and the console's camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RedactionSettingsRequest(ApiModel):
    redact_pii: Optional[bool] = None
    redact_financial: Optional[bool] = None


class AppConfigUpdate(ApiModel):
    default_redaction_settings: Optional[RedactionSettingsRequest] = None


class DocumentTypeRequest(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    default_model_id: Optional[str] = None


class DefaultModelRequest(ApiModel):
    model_id: Optional[str] = None


class SubTypeRequest(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    analysis_type: Optional[str] = None
    is_active: Optional[bool] = None


class DataElementRequest(ApiModel):
    name: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    action: Optional[str] = None
    pattern: Optional[str] = None
    description: Optional[str] = None
    required: Optional[bool] = None
    is_default: Optional[bool] = None
    aliases: Optional[List[str]] = None


class DatasetRequest(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None


class ModelStatusRequest(ApiModel):
    status: str
    model_id: Optional[str] = None
    model_arn: Optional[str] = None


class ExampleRequest(ApiModel):
    file_key: Optional[str] = None
    file_name: Optional[str] = None
    document_type: Optional[str] = None
    status: Optional[str] = None


class PromptCategoryRequest(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None


class PromptRequest(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    role: Optional[str] = None
    content: Optional[str] = None
    is_active: Optional[bool] = None


class RetentionPolicyRequest(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = None


class FeedbackRequest(ApiModel):
    document_id: Optional[str] = None
    original_classification: Optional[Dict[str, Any]] = None
    corrected_document_type: Optional[str] = None
    document_sub_type: Optional[str] = None
    feedback_source: str = "manual"
    timestamp: Optional[int] = None


class ClassifyRequest(ApiModel):
    text: str


class MatchRequest(ApiModel):
    extracted_fields: List[Dict[str, Any]] = Field(default_factory=list)
    configured_elements: Optional[List[Dict[str, Any]]] = None
    document_type_id: Optional[str] = None
    sub_type_id: Optional[str] = None


class LlmMatchRequest(ApiModel):
    extracted_elements: Optional[List[Dict[str, Any]]] = None
    configured_elements: Optional[List[Dict[str, Any]]] = None


class AnalysisImportRequest(ApiModel):
    response: Dict[str, Any]
    document_type_id: Optional[str] = None
    sub_type_id: Optional[str] = None


class TrainClassifierRequest(ApiModel):
    document_type_id: Optional[str] = None
    dataset_id: Optional[str] = None
    source_prefix: str = ""


class TrainWithFeedbackRequest(ApiModel):
    document_type: Optional[str] = None
    document_sub_type: Optional[str] = None
    count: Optional[int] = None


def _updates(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(exclude_unset=True)


def _require_deleted(deleted: bool, entity: str) -> Dict[str, Any]:
    if not deleted:
        raise HTTPException(status_code=404, detail=f"{entity} not found")
    return {"deleted": True}


# ============================================================================
# Health & Configuration
# ============================================================================

@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "document-processor-api"}


@app.get("/api/config")
def get_configuration():
    """All document types with sub-types, elements and datasets."""
    return get_config_service().get_full_configuration()


@app.get("/api/config/app")
def get_app_config():
    return get_config_service().get_app_config()


@app.put("/api/config/app")
def update_app_config(request: AppConfigUpdate):
    updates = _updates(request)
    return get_config_service().update_app_config(updates)


@app.post("/api/config/reset")
def reset_configuration():
    """Replace all document configuration with the built-in defaults."""
    return get_config_service().reset_to_defaults()


# ============================================================================
# Document Types
# ============================================================================

@app.get("/api/document-types")
def list_document_types(active_only: bool = False):
    return get_config_service().list_document_types(active_only=active_only)


@app.post("/api/document-types", status_code=201)
def create_document_type(request: DocumentTypeRequest):
    return get_config_service().create_document_type(_updates(request))


@app.get("/api/document-types/{doc_type_id}")
def get_document_type(doc_type_id: str):
    return get_config_service().get_document_type(doc_type_id)


@app.put("/api/document-types/{doc_type_id}")
def update_document_type(doc_type_id: str, request: DocumentTypeRequest):
    return get_config_service().update_document_type(doc_type_id, _updates(request))


@app.delete("/api/document-types/{doc_type_id}")
def delete_document_type(doc_type_id: str):
    return _require_deleted(get_config_service().delete_document_type(doc_type_id), "Document type")


@app.put("/api/document-types/{doc_type_id}/default-model")
def set_default_model(doc_type_id: str, request: DefaultModelRequest):
    return get_config_service().set_default_model(doc_type_id, request.model_id)


# ---- Sub-types ----

@app.get("/api/document-types/{doc_type_id}/sub-types")
def list_sub_types(doc_type_id: str):
    return get_config_service().list_sub_types(doc_type_id)


@app.post("/api/document-types/{doc_type_id}/sub-types", status_code=201)
def create_sub_type(doc_type_id: str, request: SubTypeRequest):
    return get_config_service().create_sub_type(doc_type_id, _updates(request))


@app.put("/api/document-types/{doc_type_id}/sub-types/{sub_type_id}")
def update_sub_type(doc_type_id: str, sub_type_id: str, request: SubTypeRequest):
    return get_config_service().update_sub_type(doc_type_id, sub_type_id, _updates(request))


@app.delete("/api/document-types/{doc_type_id}/sub-types/{sub_type_id}")
def delete_sub_type(doc_type_id: str, sub_type_id: str):
    return _require_deleted(get_config_service().delete_sub_type(doc_type_id, sub_type_id), "Sub-type")


# ---- Data elements ----

@app.get("/api/document-types/{doc_type_id}/elements")
def list_data_elements(doc_type_id: str):
    return get_config_service().list_data_elements(doc_type_id)


@app.post("/api/document-types/{doc_type_id}/elements", status_code=201)
def create_data_element(doc_type_id: str, request: DataElementRequest):
    return get_config_service().create_data_element(doc_type_id, _updates(request))


@app.get("/api/document-types/{doc_type_id}/sub-types/{sub_type_id}/elements")
def list_sub_type_elements(doc_type_id: str, sub_type_id: str):
    return get_config_service().list_sub_type_elements(doc_type_id, sub_type_id)


@app.post("/api/document-types/{doc_type_id}/sub-types/{sub_type_id}/elements", status_code=201)
def create_sub_type_element(doc_type_id: str, sub_type_id: str, request: DataElementRequest):
    return get_config_service().create_data_element(doc_type_id, _updates(request), sub_type_id=sub_type_id)


@app.put("/api/document-types/{doc_type_id}/elements/{element_id}")
def update_data_element(doc_type_id: str, element_id: str, request: DataElementRequest):
    service = get_config_service()
    if service.get_data_element(element_id).get("document_type_id") != doc_type_id:
        raise HTTPException(status_code=404, detail="Data element not found")
    return service.update_data_element(element_id, _updates(request))


@app.delete("/api/document-types/{doc_type_id}/elements/{element_id}")
def delete_data_element(doc_type_id: str, element_id: str):
    service = get_config_service()
    element = service.elements.get_item(element_id)
    if not element or element.get("document_type_id") != doc_type_id:
        raise HTTPException(status_code=404, detail="Data element not found")
    return _require_deleted(service.delete_data_element(element_id), "Data element")


# ---- Training datasets ----

@app.get("/api/document-types/{doc_type_id}/datasets")
def list_datasets(doc_type_id: str):
    return get_config_service().list_datasets(doc_type_id)


@app.post("/api/document-types/{doc_type_id}/datasets", status_code=201)
def create_dataset(doc_type_id: str, request: DatasetRequest):
    return get_config_service().create_dataset(doc_type_id, _updates(request))


@app.put("/api/document-types/{doc_type_id}/datasets/{dataset_id}")
def update_dataset(doc_type_id: str, dataset_id: str, request: DatasetRequest):
    return get_config_service().update_dataset(doc_type_id, dataset_id, _updates(request))


@app.delete("/api/document-types/{doc_type_id}/datasets/{dataset_id}")
def delete_dataset(doc_type_id: str, dataset_id: str):
    return _require_deleted(get_config_service().delete_dataset(doc_type_id, dataset_id), "Dataset")


@app.put("/api/document-types/{doc_type_id}/datasets/{dataset_id}/model-status")
def update_model_status(doc_type_id: str, dataset_id: str, request: ModelStatusRequest):
    return get_config_service().update_model_status(
        doc_type_id, dataset_id, request.status, request.model_id, request.model_arn
    )


@app.get("/api/document-types/{doc_type_id}/datasets/{dataset_id}/examples")
def list_examples(doc_type_id: str, dataset_id: str):
    return get_config_service().get_dataset(doc_type_id, dataset_id)["examples"]


@app.post("/api/document-types/{doc_type_id}/datasets/{dataset_id}/examples", status_code=201)
def add_example(doc_type_id: str, dataset_id: str, request: ExampleRequest):
    return get_config_service().add_example(doc_type_id, dataset_id, _updates(request))


@app.put("/api/document-types/{doc_type_id}/datasets/{dataset_id}/examples/{example_id}")
def update_example(doc_type_id: str, dataset_id: str, example_id: str, request: ExampleRequest):
    return get_config_service().update_example(doc_type_id, dataset_id, example_id, _updates(request))


@app.delete("/api/document-types/{doc_type_id}/datasets/{dataset_id}/examples/{example_id}")
def delete_example(doc_type_id: str, dataset_id: str, example_id: str):
    return _require_deleted(
        get_config_service().delete_example(doc_type_id, dataset_id, example_id), "Example"
    )


# ============================================================================
# Prompts & Retention Policies
# ============================================================================

@app.get("/api/config/prompt-categories")
def list_prompt_categories():
    return get_config_service().list_prompt_categories()


@app.post("/api/config/prompt-categories", status_code=201)
def create_prompt_category(request: PromptCategoryRequest):
    return get_config_service().create_prompt_category(_updates(request))


@app.put("/api/config/prompt-categories/{category_id}")
def update_prompt_category(category_id: str, request: PromptCategoryRequest):
    return get_config_service().update_prompt_category(category_id, _updates(request))


@app.delete("/api/config/prompt-categories/{category_id}")
def delete_prompt_category(category_id: str):
    return _require_deleted(get_config_service().delete_prompt_category(category_id), "Prompt category")


@app.get("/api/config/prompt-categories/{category_id}/prompts")
def list_prompts(category_id: str):
    return get_config_service().list_prompts(category_id)


@app.post("/api/config/prompt-categories/{category_id}/prompts", status_code=201)
def create_prompt(category_id: str, request: PromptRequest):
    return get_config_service().create_prompt(category_id, _updates(request))


@app.put("/api/config/prompt-categories/{category_id}/prompts/{prompt_id}")
def update_prompt(category_id: str, prompt_id: str, request: PromptRequest):
    return get_config_service().update_prompt(category_id, prompt_id, _updates(request))


@app.delete("/api/config/prompt-categories/{category_id}/prompts/{prompt_id}")
def delete_prompt(category_id: str, prompt_id: str):
    return _require_deleted(get_config_service().delete_prompt(category_id, prompt_id), "Prompt")


@app.get("/api/retention-policies")
def list_retention_policies():
    return get_config_service().list_retention_policies()


@app.post("/api/retention-policies", status_code=201)
def create_retention_policy(request: RetentionPolicyRequest):
    return get_config_service().create_retention_policy(_updates(request))


@app.put("/api/retention-policies/{policy_id}")
def update_retention_policy(policy_id: str, request: RetentionPolicyRequest):
    return get_config_service().update_retention_policy(policy_id, _updates(request))


@app.delete("/api/retention-policies/{policy_id}")
def delete_retention_policy(policy_id: str):
    return _require_deleted(get_config_service().delete_retention_policy(policy_id), "Retention policy")


# ============================================================================
# Classification Feedback & Training
# ============================================================================

@app.post("/api/classification-feedback")
def create_feedback(request: FeedbackRequest):
    """Store an operator's confirmation or correction of a classification."""
    item = submit_feedback(
        document_id=request.document_id,
        original_classification=request.original_classification,
        corrected_document_type=request.corrected_document_type,
        document_sub_type=request.document_sub_type,
        feedback_source=request.feedback_source,
        timestamp=request.timestamp,
    )
    return {"message": "Classification feedback submitted successfully", "feedback_id": item["id"]}


@app.get("/api/classification-feedback")
def get_feedback():
    return list_feedback()


@app.get("/api/classification-feedback/stats")
def feedback_stats():
    return get_feedback_stats()


@app.post("/api/train-classifier")
def train_classifier(request: TrainClassifierRequest):
    """Start training a classifier from a dataset's approved examples."""
    if not request.document_type_id or not request.dataset_id:
        raise HTTPException(status_code=400, detail="Missing required fields")
    job = start_dataset_training(
        get_config_service(),
        request.document_type_id,
        request.dataset_id,
        source_prefix=request.source_prefix,
    )
    return job.to_dict()


@app.post("/api/train-with-feedback")
def train_from_feedback(request: TrainWithFeedbackRequest):
    return train_with_feedback(request.document_type, request.document_sub_type, request.count)


# ============================================================================
# Document Processing
# ============================================================================

async def _read_upload(file: UploadFile):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="No file provided")
    return data, detect_content_type(file.filename, file.content_type)


def _parse_json_form(value: Optional[str], name: str, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail=f"Invalid JSON in {name}")


def _extract_text_and_fields(data: bytes, content_type: str, filename: str) -> Dict[str, Any]:
    result = extract_text(data, content_type, filename)
    response = result.to_dict()
    response["extracted_fields"] = extract_fields_from_text(result.text, result.word_blocks)
    return response


@app.post("/api/extract-text")
async def extract_text_endpoint(file: UploadFile = File(...)):
    """Extract text and label/value fields from an uploaded PDF or image."""
    data, content_type = await _read_upload(file)
    return await run_in_threadpool(_extract_text_and_fields, data, content_type, file.filename or "document")


@app.post("/api/classify-document")
def classify_document_endpoint(request: ClassifyRequest):
    """Classify text against the configured document types."""
    document_types = get_config_service().get_full_configuration()["document_types"]
    return classify_document(request.text, document_types, config_from_env()).to_dict()


@app.post("/api/process-document")
async def process_document_endpoint(
    file: UploadFile = File(...),
    document_type_id: Optional[str] = Form(None, alias="documentTypeId"),
    sub_type_id: Optional[str] = Form(None, alias="subTypeId"),
    redact: bool = Form(False),
    fields_to_redact: Optional[str] = Form(None, alias="fieldsToRedact"),
):
    """Run the full pipeline: extract, classify, match, optionally redact."""
    data, content_type = await _read_upload(file)
    final_state = await run_in_threadpool(
        process_document,
        data,
        file.filename or "document",
        content_type=content_type,
        document_type_id=document_type_id,
        sub_type_id=sub_type_id,
        redact=redact,
        fields_to_redact=_parse_json_form(fields_to_redact, "fieldsToRedact", []),
    )
    if final_state.get("status") == "Failed":
        raise HTTPException(status_code=422, detail="; ".join(final_state.get("errors") or ["Processing failed"]))
    return summarize(final_state)


def _configured_elements(request: MatchRequest) -> List[Dict[str, Any]]:
    if request.configured_elements is not None:
        return request.configured_elements
    if not request.document_type_id:
        raise HTTPException(status_code=400, detail="configured_elements or document_type_id is required")
    return get_config_service().get_configured_elements(request.document_type_id, request.sub_type_id)


@app.post("/api/match-elements")
def match_elements(request: MatchRequest):
    """Match extracted fields to configured data elements with the string heuristics."""
    return match_data_elements(request.extracted_fields, _configured_elements(request)).to_dict()


@app.post("/api/match-elements-with-llm")
def match_elements_llm(request: LlmMatchRequest):
    """Semantic matching with a chat model."""
    if request.extracted_elements is None:
        raise HTTPException(status_code=400, detail="Missing or invalid extractedElements")
    if request.configured_elements is None:
        raise HTTPException(status_code=400, detail="Missing or invalid configuredElements")

    config = MatcherConfig(llm_model=os.getenv("MATCHER_LLM_MODEL", "gpt-4o"))
    result = match_elements_with_llm(request.extracted_elements, request.configured_elements, config)
    if result is None:
        raise HTTPException(status_code=502, detail="No response from matching model")
    return result


def _match_imported(document_data: Dict[str, Any], request: AnalysisImportRequest) -> Dict[str, Any]:
    if not request.document_type_id:
        return document_data
    elements = get_config_service().get_configured_elements(request.document_type_id, request.sub_type_id)
    result = match_data_elements(document_data["extracted_fields"], elements)
    if os.getenv("MATCHER_USE_LLM", "false").lower() == "true" and result.unmatched_extracted:
        llm_result = match_elements_with_llm(result.unmatched_extracted, elements)
        if llm_result:
            result = apply_llm_matches(result, llm_result, elements)
    document_data.update({
        "document_type_id": request.document_type_id,
        "sub_type_id": request.sub_type_id,
        "extracted_fields": result.matches + result.unmatched_extracted,
        "missing_elements": result.unmatched_configured,
    })
    return document_data


@app.post("/api/analyze-id")
def analyze_id(request: AnalysisImportRequest):
    """Convert an identity document analysis response into document data."""
    return _match_imported(parse_analyze_id_response(request.response), request)


@app.post("/api/extract-fields/textract")
def import_form_analysis(request: AnalysisImportRequest):
    """Convert a form analysis (key/value) response into document data."""
    document_data = {
        "extracted_text": parse_textract_lines(request.response),
        "extracted_fields": parse_textract_key_values(request.response),
    }
    return _match_imported(document_data, request)


@app.post("/api/redact-document")
async def redact_document_endpoint(
    file: UploadFile = File(...),
    fields_to_redact: str = Form(..., alias="fieldsToRedact"),
    document_data: str = Form(..., alias="documentData"),
):
    """Redact the given field ids; the output is stored for download."""
    data, content_type = await _read_upload(file)
    field_ids = _parse_json_form(fields_to_redact, "fieldsToRedact", [])
    parsed_document = _parse_json_form(document_data, "documentData", {})
    if not isinstance(field_ids, list) or not field_ids:
        raise HTTPException(status_code=400, detail="fieldsToRedact must be a non-empty list")

    try:
        result = await run_in_threadpool(redact_document, data, content_type, parsed_document, field_ids)
    except RedactionError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return result.to_dict()


@app.get("/api/redacted/{redaction_id}")
def get_redacted_document(redaction_id: str):
    """Serve a stored redaction output."""
    path = find_redacted_file(redaction_id)
    if path is None:
        raise HTTPException(status_code=404, detail="Redacted document not found")
    media_type = {".pdf": "application/pdf", ".tiff": "image/tiff"}.get(path.suffix, "image/png")
    return FileResponse(path=str(path), media_type=media_type, filename=f"redacted_{path.name}")


# Run with: uvicorn server:app --reload
