from typing import TypedDict, List, Dict, Optional, Any
from enum import Enum

# ============================================================================
# Enumerations
# ============================================================================

class DataElementType(str, Enum):
    """Value types a configured data element can hold."""
    TEXT = "Text"
    NUMBER = "Number"
    DATE = "Date"
    CURRENCY = "Currency"
    EMAIL = "Email"
    PHONE = "Phone"
    ADDRESS = "Address"
    NAME = "Name"
    SSN = "SSN"
    CREDIT_CARD = "CreditCard"
    CUSTOM = "Custom"


class DataElementCategory(str, Enum):
    """Sensitivity category of a data element."""
    GENERAL = "General"
    PII = "PII"
    FINANCIAL = "Financial"
    MEDICAL = "Medical"
    LEGAL = "Legal"


class DataElementAction(str, Enum):
    """What the pipeline does with a matched data element."""
    EXTRACT = "Extract"
    REDACT = "Redact"
    EXTRACT_AND_REDACT = "ExtractAndRedact"
    IGNORE = "Ignore"


class AnalysisType(str, Enum):
    """Extraction mode used for a document sub-type."""
    TEXT_DETECTION = "TEXT_DETECTION"
    FORM_ANALYSIS = "FORM_ANALYSIS"
    ID_ANALYSIS = "ID_ANALYSIS"


class ModelStatus(str, Enum):
    """Lifecycle of a classifier model trained from a dataset."""
    NOT_TRAINED = "NOT_TRAINED"
    TRAINING = "TRAINING"
    TRAINED = "TRAINED"
    FAILED = "FAILED"
    DELETING = "DELETING"


class ExampleStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class FeedbackSource(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    REVIEW = "review"


class PromptRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# ============================================================================
# Extraction Results
# ============================================================================

class BoundingBox(TypedDict):
    """
    Location of a region on a page, as fractions of the page size.

    Cloud OCR responses spell these Left/Top/Width/Height; the redactor
    also accepts x/y/width/height (see docproc.redactor.normalize_bounding_box).
    """
    left: float
    top: float
    width: float
    height: float


class WordBlock(TypedDict, total=False):
    """A single OCR word with its location."""
    text: str
    confidence: float  # 0-100
    bounding_box: BoundingBox
    page: int  # 1-based


class ExtractedField(TypedDict, total=False):
    """
    A label/value pair found in a document.

    After matching, label holds the configured element name and
    original_label keeps what the document said.
    """
    id: str
    label: str
    value: str
    data_type: str  # DataElementType value
    confidence: float  # 0-100
    bounding_box: Optional[BoundingBox]
    key_bounding_box: Optional[BoundingBox]
    value_word_blocks: List[WordBlock]
    page: int  # 1-based
    # Populated by the matcher
    element_id: Optional[str]
    element_type: Optional[str]
    category: Optional[str]
    action: Optional[str]
    original_label: Optional[str]
    required_but_missing: bool
    missing: bool
    is_configured: bool
    match_method: Optional[str]


class DocumentData(TypedDict, total=False):
    """Everything known about one processed document."""
    document_type: str
    document_type_id: Optional[str]
    sub_type: Optional[str]
    sub_type_id: Optional[str]
    confidence: float
    extracted_text: str
    extracted_fields: List[ExtractedField]


# ============================================================================
# Configuration Records
# ============================================================================

class DataElementConfig(TypedDict, total=False):
    """A data element the operator wants extracted and/or redacted."""
    id: str
    name: str
    type: str  # DataElementType value
    category: str  # DataElementCategory value
    action: str  # DataElementAction value
    pattern: Optional[str]  # Regex the value must match
    description: Optional[str]
    required: bool
    is_default: bool
    aliases: List[str]
    document_type_id: str
    sub_type_id: Optional[str]


class DocumentSubTypeConfig(TypedDict, total=False):
    """A variant of a document type (e.g. Passport under ID Document)."""
    id: str
    document_type_id: str
    name: str
    description: str
    analysis_type: str  # AnalysisType value
    is_active: bool
    data_elements: List[DataElementConfig]


class TrainingExample(TypedDict, total=False):
    id: str
    dataset_id: str
    document_type_id: str
    document_type: str
    file_key: str
    file_name: Optional[str]
    status: str  # ExampleStatus value
    created_at: int  # epoch ms


class TrainingDataset(TypedDict, total=False):
    """A set of labelled example documents used to train a classifier."""
    id: str
    document_type_id: str
    name: str
    description: str
    examples: List[TrainingExample]
    model_status: str  # ModelStatus value
    model_id: Optional[str]
    model_arn: Optional[str]
    last_trained_at: Optional[int]


class DocumentTypeConfig(TypedDict, total=False):
    id: str
    name: str
    description: str
    is_active: bool
    default_model_id: Optional[str]
    data_elements: List[DataElementConfig]
    sub_types: List[DocumentSubTypeConfig]
    training_datasets: List[TrainingDataset]


class PromptCategory(TypedDict, total=False):
    id: str
    name: str
    description: str
    prompts: List["Prompt"]


class Prompt(TypedDict, total=False):
    id: str
    category_id: str
    name: str
    description: str
    role: str  # PromptRole value
    content: str
    is_active: bool


class RetentionPolicy(TypedDict, total=False):
    id: str
    name: str
    description: str
    duration: int  # days


class RedactionSettings(TypedDict):
    redact_pii: bool
    redact_financial: bool


class AppConfig(TypedDict, total=False):
    id: str
    document_types: List[DocumentTypeConfig]
    default_redaction_settings: RedactionSettings


class ClassificationFeedback(TypedDict, total=False):
    """An operator correction of a classification result."""
    id: str
    document_id: str
    original_classification: Optional[Dict[str, Any]]
    corrected_document_type: Optional[str]
    document_sub_type: str
    feedback_source: str  # FeedbackSource value
    timestamp: int  # epoch ms
    has_been_used_for_training: bool
    training_job_id: Optional[str]
    training_timestamp: Optional[int]


# ============================================================================
# Processing Pipeline State
# ============================================================================

class ProcessingState(TypedDict, total=False):
    """
    The state of one document moving through the processing graph.
    Every node reads from it and returns a partial update.
    """
    # Meta Information
    document_id: str
    status: str  # 'Processing', 'Needs_Review', 'Redacted', 'Completed', 'Failed'

    # Input
    file_name: str
    content_type: str
    file_bytes: bytes

    # Operator choices (skip classification when a type is given)
    selected_document_type_id: Optional[str]
    selected_sub_type_id: Optional[str]
    redact: bool

    # Text extraction
    extraction_method: Optional[str]
    page_count: int
    word_blocks: List[WordBlock]

    # Classification
    classification: Optional[Dict[str, Any]]
    needs_review: bool

    # Fields and matching
    document_data: DocumentData
    unmatched_fields: List[ExtractedField]
    missing_elements: List[ExtractedField]

    # Redaction
    fields_to_redact: List[str]
    redaction: Optional[Dict[str, Any]]

    errors: List[str]
