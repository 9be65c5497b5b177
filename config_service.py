"""
Configuration Service - Document types, sub-types, data elements and friends.

Backs the administration console: operators define which document types
exist, which data elements each type carries and whether those elements are
extracted, redacted or both. Training datasets, prompt templates, retention
policies and the global redaction defaults live here too.

Every entity is stored in its own key-value table (see config_storage).
Lookups that miss raise KeyError; invalid input raises ValueError.
"""

import re
import time
import uuid
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Dict, Any, Optional

from config_storage import KeyValueTable, get_table
from state import (
    AnalysisType,
    DataElementAction,
    DataElementCategory,
    DataElementType,
    ExampleStatus,
    ModelStatus,
    PromptRole,
)

logger = logging.getLogger(__name__)

APP_CONFIG_ID = "app-config"

DEFAULT_REDACTION_SETTINGS = {"redact_pii": True, "redact_financial": True}

DAYS_PER_YEAR = 365


# ============================================================================
# Default Configuration
# ============================================================================

DEFAULT_PII_ELEMENTS: List[Dict[str, Any]] = [
    {"key": "name", "name": "Name", "type": "Name", "category": "PII",
     "action": "ExtractAndRedact", "description": "Person name"},
    {"key": "email", "name": "Email Address", "type": "Email", "category": "PII",
     "action": "ExtractAndRedact"},
    {"key": "phone", "name": "Phone Number", "type": "Phone", "category": "PII",
     "action": "ExtractAndRedact"},
    {"key": "address", "name": "Address", "type": "Address", "category": "PII",
     "action": "ExtractAndRedact"},
]

DEFAULT_FINANCIAL_ELEMENTS: List[Dict[str, Any]] = [
    {"key": "creditcard", "name": "Credit Card Number", "type": "CreditCard",
     "category": "Financial", "action": "ExtractAndRedact"},
    {"key": "bankaccount", "name": "Bank Account Number", "type": "Number",
     "category": "Financial", "action": "ExtractAndRedact"},
    {"key": "amount", "name": "Amount", "type": "Currency",
     "category": "Financial", "action": "Extract"},
]

DEFAULT_DOCUMENT_TYPES: List[Dict[str, Any]] = [
    {
        "id": "invoice",
        "name": "Invoice",
        "description": "Standard invoice document",
        "elements": DEFAULT_PII_ELEMENTS + DEFAULT_FINANCIAL_ELEMENTS + [
            {"key": "invoiceNumber", "name": "Invoice Number", "type": "Text",
             "category": "General", "action": "Extract"},
            {"key": "date", "name": "Invoice Date", "type": "Date",
             "category": "General", "action": "Extract"},
            {"key": "dueDate", "name": "Due Date", "type": "Date",
             "category": "General", "action": "Extract"},
        ],
    },
    {
        "id": "receipt",
        "name": "Receipt",
        "description": "Purchase or transaction receipt",
        "elements": [e for e in DEFAULT_PII_ELEMENTS if e["key"] in ("name", "address")] + [
            {"key": "merchant", "name": "Merchant Name", "type": "Text",
             "category": "General", "action": "Extract"},
            {"key": "date", "name": "Transaction Date", "type": "Date",
             "category": "General", "action": "Extract"},
            {"key": "total", "name": "Total Amount", "type": "Currency",
             "category": "Financial", "action": "Extract"},
        ],
    },
    {
        "id": "id-document",
        "name": "ID Document",
        "description": "Identity documents such as driver license or passport",
        "elements": DEFAULT_PII_ELEMENTS + [
            {"key": "idNumber", "name": "ID Number", "type": "Text",
             "category": "PII", "action": "ExtractAndRedact"},
            {"key": "dateOfBirth", "name": "Date of Birth", "type": "Date",
             "category": "PII", "action": "ExtractAndRedact"},
            {"key": "expiryDate", "name": "Expiry Date", "type": "Date",
             "category": "General", "action": "Extract"},
        ],
    },
    {
        "id": "noa",
        "name": "Notice of Assessment",
        "description": "Australian Tax Notice of Assessment",
        "elements": DEFAULT_PII_ELEMENTS + [
            {"key": "tfn", "name": "TFN", "type": "Number",
             "category": "PII", "action": "ExtractAndRedact"},
        ],
    },
]


# ============================================================================
# Helpers
# ============================================================================

def _new_id() -> str:
    return uuid.uuid4().hex


def _now_ms() -> int:
    return int(time.time() * 1000)


def _enum_value(enum_cls, value: Any, field_name: str) -> str:
    """Validate value against a str Enum and return its canonical string."""
    if isinstance(value, enum_cls):
        return value.value
    for member in enum_cls:
        if member.value == value or member.name == value:
            return member.value
    allowed = ", ".join(m.value for m in enum_cls)
    raise ValueError(f"Invalid {field_name} '{value}'. Allowed: {allowed}")


def _require_name(data: Dict[str, Any], entity: str) -> str:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValueError(f"{entity} name is required")
    return name


def years_to_days(years: float) -> int:
    """Retention periods are edited in years and stored in days."""
    return int(round(years * DAYS_PER_YEAR))


def days_to_years(days: int) -> float:
    return round(days / DAYS_PER_YEAR, 2)


def compute_retention_expiry(policy: Dict[str, Any], created_at: datetime) -> datetime:
    """When a document created at created_at falls out of the policy."""
    return created_at + timedelta(days=int(policy["duration"]))


# ============================================================================
# Configuration Service
# ============================================================================

class ConfigService:
    """
    CRUD over the configuration tables.

    Document types own sub-types, data elements and training datasets;
    deleting a parent removes its children.
    """

    DOCUMENT_TYPE_FIELDS = {"name", "description", "is_active", "default_model_id"}
    SUB_TYPE_FIELDS = {"name", "description", "analysis_type", "is_active"}
    ELEMENT_FIELDS = {
        "name", "type", "category", "action", "pattern", "description",
        "required", "is_default", "aliases",
    }
    DATASET_FIELDS = {"name", "description", "model_status", "model_id", "model_arn"}
    PROMPT_FIELDS = {"name", "description", "role", "content", "is_active"}

    def __init__(self, storage_dir: Optional[Path] = None):
        self.storage_dir = storage_dir
        self.config_table: KeyValueTable = get_table("config", storage_dir)
        self.doctypes: KeyValueTable = get_table("doctypes", storage_dir)
        self.subtypes: KeyValueTable = get_table("subtypes", storage_dir)
        self.elements: KeyValueTable = get_table("elements", storage_dir)
        self.datasets: KeyValueTable = get_table("datasets", storage_dir)
        self.examples: KeyValueTable = get_table("examples", storage_dir)
        self.prompt_categories: KeyValueTable = get_table("prompt_categories", storage_dir)
        self.prompts: KeyValueTable = get_table("prompts", storage_dir)
        self.retention: KeyValueTable = get_table("retention", storage_dir)

    # ------------------------------------------------------------------
    # App configuration
    # ------------------------------------------------------------------

    def get_app_config(self) -> Dict[str, Any]:
        """Stored app configuration, or the defaults when none is saved."""
        config = self.config_table.get_item(APP_CONFIG_ID)
        if config is None:
            return {
                "id": APP_CONFIG_ID,
                "document_types": [],
                "default_redaction_settings": dict(DEFAULT_REDACTION_SETTINGS),
            }
        config.setdefault("default_redaction_settings", dict(DEFAULT_REDACTION_SETTINGS))
        return config

    def update_app_config(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        config = self.get_app_config()
        settings = updates.get("default_redaction_settings")
        if settings is not None:
            if not isinstance(settings, dict):
                raise ValueError("default_redaction_settings must be an object")
            merged = dict(config["default_redaction_settings"])
            for key in DEFAULT_REDACTION_SETTINGS:
                if key in settings:
                    merged[key] = bool(settings[key])
            config["default_redaction_settings"] = merged
        if "document_types" in updates:
            config["document_types"] = list(updates["document_types"] or [])
        config["id"] = APP_CONFIG_ID
        config["updated_at"] = _now_ms()
        return self.config_table.put_item(config)

    def get_redaction_settings(self) -> Dict[str, bool]:
        return self.get_app_config()["default_redaction_settings"]

    def get_full_configuration(self) -> Dict[str, Any]:
        """
        All document types, hydrated with their sub-types, data elements
        and training datasets, plus the global redaction settings.
        """
        document_types = []
        for doc_type in self.list_document_types():
            hydrated = dict(doc_type)
            hydrated["data_elements"] = self.list_data_elements(doc_type["id"])
            hydrated["sub_types"] = [
                dict(sub_type, data_elements=self.list_sub_type_elements(doc_type["id"], sub_type["id"]))
                for sub_type in self.list_sub_types(doc_type["id"])
            ]
            hydrated["training_datasets"] = self.list_datasets(doc_type["id"])
            document_types.append(hydrated)

        return {
            "document_types": document_types,
            "default_redaction_settings": self.get_redaction_settings(),
        }

    def reset_to_defaults(self) -> Dict[str, Any]:
        """Wipe all document configuration and seed the built-in document types."""
        for table in (self.doctypes, self.subtypes, self.elements, self.datasets,
                      self.examples, self.config_table):
            table.clear()

        for template in DEFAULT_DOCUMENT_TYPES:
            self.doctypes.put_item({
                "id": template["id"],
                "name": template["name"],
                "description": template["description"],
                "is_active": True,
                "default_model_id": None,
                "created_at": _now_ms(),
            })
            for element in template["elements"]:
                self.elements.put_item({
                    "id": f"{template['id']}-{element['key']}",
                    "name": element["name"],
                    "type": element["type"],
                    "category": element["category"],
                    "action": element["action"],
                    "description": element.get("description"),
                    "pattern": None,
                    "required": False,
                    "is_default": True,
                    "aliases": [],
                    "document_type_id": template["id"],
                    "sub_type_id": None,
                })

        self.update_app_config({"default_redaction_settings": DEFAULT_REDACTION_SETTINGS})
        logger.info(f"Configuration reset to {len(DEFAULT_DOCUMENT_TYPES)} default document types")
        return self.get_full_configuration()

    # ------------------------------------------------------------------
    # Document types
    # ------------------------------------------------------------------

    def list_document_types(self, active_only: bool = False) -> List[Dict[str, Any]]:
        types = self.doctypes.scan()
        if active_only:
            types = [t for t in types if t.get("is_active", True)]
        return sorted(types, key=lambda t: t.get("name", "").lower())

    def get_document_type(self, doc_type_id: str) -> Dict[str, Any]:
        doc_type = self.doctypes.get_item(doc_type_id)
        if doc_type is None:
            raise KeyError(f"Document type '{doc_type_id}' not found")
        return doc_type

    def find_document_type_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        wanted = (name or "").strip().lower()
        for doc_type in self.doctypes.scan():
            if doc_type.get("name", "").strip().lower() == wanted:
                return doc_type
        return None

    def create_document_type(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a document type.

        Raises:
            ValueError: If the name is missing or already used
        """
        name = _require_name(data, "Document type")
        if self.find_document_type_by_name(name):
            raise ValueError(f"Document type '{name}' already exists")

        doc_type = {
            "id": data.get("id") or _new_id(),
            "name": name,
            "description": data.get("description", ""),
            "is_active": bool(data.get("is_active", True)),
            "default_model_id": data.get("default_model_id"),
            "created_at": _now_ms(),
        }
        if self.doctypes.get_item(doc_type["id"]):
            raise ValueError(f"Document type id '{doc_type['id']}' already exists")
        self.doctypes.put_item(doc_type)
        logger.info(f"Created document type {doc_type['id']} ({name})")
        return doc_type

    def update_document_type(self, doc_type_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.get_document_type(doc_type_id)
        clean = {k: v for k, v in updates.items() if k in self.DOCUMENT_TYPE_FIELDS}
        if "name" in clean:
            clean["name"] = _require_name(clean, "Document type")
            existing = self.find_document_type_by_name(clean["name"])
            if existing and existing["id"] != doc_type_id:
                raise ValueError(f"Document type '{clean['name']}' already exists")
        clean["updated_at"] = _now_ms()
        return self.doctypes.update_item(doc_type_id, clean)

    def delete_document_type(self, doc_type_id: str) -> bool:
        """Delete a document type with its sub-types, elements, datasets and examples."""
        if self.doctypes.get_item(doc_type_id) is None:
            return False

        for sub_type in self.subtypes.query("document_type_id", doc_type_id):
            self.subtypes.delete_item(sub_type["id"])
        for element in self.elements.query("document_type_id", doc_type_id):
            self.elements.delete_item(element["id"])
        for dataset in self.datasets.query("document_type_id", doc_type_id):
            self.delete_dataset(doc_type_id, dataset["id"])

        self.doctypes.delete_item(doc_type_id)
        logger.info(f"Deleted document type {doc_type_id}")
        return True

    def set_default_model(self, doc_type_id: str, model_id: Optional[str]) -> Dict[str, Any]:
        self.get_document_type(doc_type_id)
        return self.doctypes.update_item(doc_type_id, {"default_model_id": model_id})

    # ------------------------------------------------------------------
    # Sub-types
    # ------------------------------------------------------------------

    def list_sub_types(self, doc_type_id: str) -> List[Dict[str, Any]]:
        self.get_document_type(doc_type_id)
        return sorted(
            self.subtypes.query("document_type_id", doc_type_id),
            key=lambda s: s.get("name", "").lower(),
        )

    def get_sub_type(self, doc_type_id: str, sub_type_id: str) -> Dict[str, Any]:
        sub_type = self.subtypes.get_item(sub_type_id)
        if sub_type is None or sub_type.get("document_type_id") != doc_type_id:
            raise KeyError(f"Sub-type '{sub_type_id}' not found for document type '{doc_type_id}'")
        return sub_type

    def create_sub_type(self, doc_type_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.get_document_type(doc_type_id)
        name = _require_name(data, "Sub-type")
        for existing in self.subtypes.query("document_type_id", doc_type_id):
            if existing.get("name", "").lower() == name.lower():
                raise ValueError(f"Sub-type '{name}' already exists")

        sub_type = {
            "id": data.get("id") or _new_id(),
            "document_type_id": doc_type_id,
            "name": name,
            "description": data.get("description", ""),
            "analysis_type": _enum_value(
                AnalysisType, data.get("analysis_type") or AnalysisType.FORM_ANALYSIS, "analysis_type"
            ),
            "is_active": bool(data.get("is_active", True)),
            "created_at": _now_ms(),
        }
        self.subtypes.put_item(sub_type)
        return sub_type

    def update_sub_type(self, doc_type_id: str, sub_type_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.get_sub_type(doc_type_id, sub_type_id)
        clean = {k: v for k, v in updates.items() if k in self.SUB_TYPE_FIELDS}
        if "name" in clean:
            clean["name"] = _require_name(clean, "Sub-type")
        if "analysis_type" in clean:
            clean["analysis_type"] = _enum_value(AnalysisType, clean["analysis_type"], "analysis_type")
        clean["updated_at"] = _now_ms()
        return self.subtypes.update_item(sub_type_id, clean)

    def delete_sub_type(self, doc_type_id: str, sub_type_id: str) -> bool:
        try:
            self.get_sub_type(doc_type_id, sub_type_id)
        except KeyError:
            return False
        for element in self.elements.query("sub_type_id", sub_type_id):
            self.elements.delete_item(element["id"])
        return self.subtypes.delete_item(sub_type_id)

    # ------------------------------------------------------------------
    # Data elements
    # ------------------------------------------------------------------

    def list_data_elements(self, doc_type_id: str) -> List[Dict[str, Any]]:
        """Elements configured on the document type itself (not on a sub-type)."""
        self.get_document_type(doc_type_id)
        return self.elements.scan(
            lambda e: e.get("document_type_id") == doc_type_id and not e.get("sub_type_id")
        )

    def list_sub_type_elements(self, doc_type_id: str, sub_type_id: str) -> List[Dict[str, Any]]:
        self.get_sub_type(doc_type_id, sub_type_id)
        return self.elements.scan(
            lambda e: e.get("document_type_id") == doc_type_id and e.get("sub_type_id") == sub_type_id
        )

    def get_configured_elements(self, doc_type_id: str, sub_type_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Elements that apply to a document: the sub-type's own elements first,
        then document-level elements whose name the sub-type does not redefine.
        """
        doc_elements = self.list_data_elements(doc_type_id)
        if not sub_type_id:
            return doc_elements
        sub_elements = self.list_sub_type_elements(doc_type_id, sub_type_id)
        names = {e.get("name", "").lower() for e in sub_elements}
        return sub_elements + [e for e in doc_elements if e.get("name", "").lower() not in names]

    def _validate_element(self, data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        clean = {k: v for k, v in data.items() if k in self.ELEMENT_FIELDS}
        if not partial or "name" in clean:
            clean["name"] = _require_name(clean, "Data element")
        if not partial:
            clean.setdefault("type", DataElementType.TEXT.value)
            clean.setdefault("category", DataElementCategory.GENERAL.value)
            clean.setdefault("action", DataElementAction.EXTRACT.value)
        if "type" in clean:
            clean["type"] = _enum_value(DataElementType, clean["type"], "type")
        if "category" in clean:
            clean["category"] = _enum_value(DataElementCategory, clean["category"], "category")
        if "action" in clean:
            clean["action"] = _enum_value(DataElementAction, clean["action"], "action")
        if clean.get("pattern"):
            try:
                re.compile(clean["pattern"])
            except re.error as e:
                raise ValueError(f"Invalid pattern: {e}") from e
        if "aliases" in clean:
            aliases = clean["aliases"] or []
            if not isinstance(aliases, list) or not all(isinstance(a, str) for a in aliases):
                raise ValueError("aliases must be a list of strings")
            clean["aliases"] = [a.strip() for a in aliases if a.strip()]
        return clean

    def create_data_element(
        self,
        doc_type_id: str,
        data: Dict[str, Any],
        sub_type_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Add a data element to a document type, or to one of its sub-types.

        Raises:
            KeyError: If the document type or sub-type does not exist
            ValueError: If the element is invalid
        """
        if sub_type_id:
            self.get_sub_type(doc_type_id, sub_type_id)
        else:
            self.get_document_type(doc_type_id)

        clean = self._validate_element(data)
        element = {
            "id": data.get("id") or _new_id(),
            "pattern": None,
            "description": None,
            "required": False,
            "is_default": False,
            "aliases": [],
            **clean,
            "document_type_id": doc_type_id,
            "sub_type_id": sub_type_id,
        }
        self.elements.put_item(element)
        return element

    def get_data_element(self, element_id: str) -> Dict[str, Any]:
        element = self.elements.get_item(element_id)
        if element is None:
            raise KeyError(f"Data element '{element_id}' not found")
        return element

    def update_data_element(self, element_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.get_data_element(element_id)
        clean = self._validate_element(updates, partial=True)
        return self.elements.update_item(element_id, clean)

    def delete_data_element(self, element_id: str) -> bool:
        return self.elements.delete_item(element_id)

    # ------------------------------------------------------------------
    # Training datasets and examples
    # ------------------------------------------------------------------

    def list_datasets(self, doc_type_id: str) -> List[Dict[str, Any]]:
        self.get_document_type(doc_type_id)
        datasets = []
        for dataset in self.datasets.query("document_type_id", doc_type_id):
            datasets.append(dict(dataset, examples=self.examples.query("dataset_id", dataset["id"])))
        return datasets

    def get_dataset(self, doc_type_id: str, dataset_id: str) -> Dict[str, Any]:
        dataset = self.datasets.get_item(dataset_id)
        if dataset is None or dataset.get("document_type_id") != doc_type_id:
            raise KeyError(f"Dataset '{dataset_id}' not found for document type '{doc_type_id}'")
        return dict(dataset, examples=self.examples.query("dataset_id", dataset_id))

    def create_dataset(self, doc_type_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.get_document_type(doc_type_id)
        dataset = {
            "id": data.get("id") or _new_id(),
            "document_type_id": doc_type_id,
            "name": _require_name(data, "Dataset"),
            "description": data.get("description", ""),
            "model_status": ModelStatus.NOT_TRAINED.value,
            "model_id": None,
            "model_arn": None,
            "last_trained_at": None,
            "created_at": _now_ms(),
        }
        self.datasets.put_item(dataset)
        return dict(dataset, examples=[])

    def update_dataset(self, doc_type_id: str, dataset_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.get_dataset(doc_type_id, dataset_id)
        clean = {k: v for k, v in updates.items() if k in self.DATASET_FIELDS}
        if "name" in clean:
            clean["name"] = _require_name(clean, "Dataset")
        if "model_status" in clean:
            clean["model_status"] = _enum_value(ModelStatus, clean["model_status"], "model_status")
        self.datasets.update_item(dataset_id, clean)
        return self.get_dataset(doc_type_id, dataset_id)

    def delete_dataset(self, doc_type_id: str, dataset_id: str) -> bool:
        try:
            self.get_dataset(doc_type_id, dataset_id)
        except KeyError:
            return False
        for example in self.examples.query("dataset_id", dataset_id):
            self.examples.delete_item(example["id"])
        return self.datasets.delete_item(dataset_id)

    def update_model_status(
        self,
        doc_type_id: str,
        dataset_id: str,
        status: str,
        model_id: Optional[str] = None,
        model_arn: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record the training state of a dataset's classifier model."""
        updates: Dict[str, Any] = {"model_status": _enum_value(ModelStatus, status, "model_status")}
        if model_id is not None:
            updates["model_id"] = model_id
        if model_arn is not None:
            updates["model_arn"] = model_arn
        if updates["model_status"] == ModelStatus.TRAINED.value:
            updates["last_trained_at"] = _now_ms()
        self.get_dataset(doc_type_id, dataset_id)
        self.datasets.update_item(dataset_id, updates)
        return self.get_dataset(doc_type_id, dataset_id)

    def add_example(self, doc_type_id: str, dataset_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.get_dataset(doc_type_id, dataset_id)
        file_key = (data.get("file_key") or "").strip()
        if not file_key:
            raise ValueError("file_key is required")
        doc_type = self.get_document_type(doc_type_id)
        example = {
            "id": data.get("id") or _new_id(),
            "dataset_id": dataset_id,
            "document_type_id": doc_type_id,
            "document_type": data.get("document_type") or doc_type["name"],
            "file_key": file_key,
            "file_name": data.get("file_name"),
            "status": _enum_value(ExampleStatus, data.get("status") or ExampleStatus.PENDING, "status"),
            "created_at": _now_ms(),
        }
        self.examples.put_item(example)
        return example

    def update_example(self, doc_type_id: str, dataset_id: str, example_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        example = self.examples.get_item(example_id)
        if example is None or example.get("dataset_id") != dataset_id:
            raise KeyError(f"Example '{example_id}' not found in dataset '{dataset_id}'")
        clean: Dict[str, Any] = {}
        if "status" in updates:
            clean["status"] = _enum_value(ExampleStatus, updates["status"], "status")
        if "file_name" in updates:
            clean["file_name"] = updates["file_name"]
        return self.examples.update_item(example_id, clean)

    def delete_example(self, doc_type_id: str, dataset_id: str, example_id: str) -> bool:
        example = self.examples.get_item(example_id)
        if example is None or example.get("dataset_id") != dataset_id:
            return False
        return self.examples.delete_item(example_id)

    # ------------------------------------------------------------------
    # Prompt categories and prompts
    # ------------------------------------------------------------------

    def list_prompt_categories(self) -> List[Dict[str, Any]]:
        return [
            dict(category, prompts=self.prompts.query("category_id", category["id"]))
            for category in self.prompt_categories.scan()
        ]

    def get_prompt_category(self, category_id: str) -> Dict[str, Any]:
        category = self.prompt_categories.get_item(category_id)
        if category is None:
            raise KeyError(f"Prompt category '{category_id}' not found")
        return dict(category, prompts=self.prompts.query("category_id", category_id))

    def create_prompt_category(self, data: Dict[str, Any]) -> Dict[str, Any]:
        category = {
            "id": data.get("id") or _new_id(),
            "name": _require_name(data, "Prompt category"),
            "description": data.get("description", ""),
            "created_at": _now_ms(),
        }
        self.prompt_categories.put_item(category)
        return dict(category, prompts=[])

    def update_prompt_category(self, category_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.get_prompt_category(category_id)
        clean = {k: v for k, v in updates.items() if k in ("name", "description")}
        if "name" in clean:
            clean["name"] = _require_name(clean, "Prompt category")
        self.prompt_categories.update_item(category_id, clean)
        return self.get_prompt_category(category_id)

    def delete_prompt_category(self, category_id: str) -> bool:
        if self.prompt_categories.get_item(category_id) is None:
            return False
        for prompt in self.prompts.query("category_id", category_id):
            self.prompts.delete_item(prompt["id"])
        return self.prompt_categories.delete_item(category_id)

    def list_prompts(self, category_id: str) -> List[Dict[str, Any]]:
        return self.get_prompt_category(category_id)["prompts"]

    def get_prompt(self, category_id: str, prompt_id: str) -> Dict[str, Any]:
        prompt = self.prompts.get_item(prompt_id)
        if prompt is None or prompt.get("category_id") != category_id:
            raise KeyError(f"Prompt '{prompt_id}' not found in category '{category_id}'")
        return prompt

    def create_prompt(self, category_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.get_prompt_category(category_id)
        content = data.get("content") or ""
        if not content.strip():
            raise ValueError("Prompt content is required")
        prompt = {
            "id": data.get("id") or _new_id(),
            "category_id": category_id,
            "name": _require_name(data, "Prompt"),
            "description": data.get("description", ""),
            "role": _enum_value(PromptRole, data.get("role") or PromptRole.SYSTEM, "role"),
            "content": content,
            "is_active": bool(data.get("is_active", True)),
            "created_at": _now_ms(),
        }
        self.prompts.put_item(prompt)
        return prompt

    def update_prompt(self, category_id: str, prompt_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.get_prompt(category_id, prompt_id)
        clean = {k: v for k, v in updates.items() if k in self.PROMPT_FIELDS}
        if "name" in clean:
            clean["name"] = _require_name(clean, "Prompt")
        if "role" in clean:
            clean["role"] = _enum_value(PromptRole, clean["role"], "role")
        if "content" in clean and not (clean["content"] or "").strip():
            raise ValueError("Prompt content is required")
        return self.prompts.update_item(prompt_id, clean)

    def delete_prompt(self, category_id: str, prompt_id: str) -> bool:
        try:
            self.get_prompt(category_id, prompt_id)
        except KeyError:
            return False
        return self.prompts.delete_item(prompt_id)

    def get_active_prompts(self, category_name: str) -> List[Dict[str, Any]]:
        """Active prompts of the category with this name, system prompts first."""
        for category in self.list_prompt_categories():
            if category.get("name", "").lower() == category_name.lower():
                active = [p for p in category["prompts"] if p.get("is_active", True)]
                return sorted(active, key=lambda p: p.get("role") != PromptRole.SYSTEM.value)
        return []

    # ------------------------------------------------------------------
    # Retention policies
    # ------------------------------------------------------------------

    def _validate_duration(self, duration: Any) -> int:
        try:
            days = int(duration)
        except (TypeError, ValueError):
            raise ValueError("duration must be a whole number of days")
        if days <= 0:
            raise ValueError("duration must be positive")
        return days

    def list_retention_policies(self) -> List[Dict[str, Any]]:
        return sorted(self.retention.scan(), key=lambda p: p.get("duration", 0))

    def get_retention_policy(self, policy_id: str) -> Dict[str, Any]:
        policy = self.retention.get_item(policy_id)
        if policy is None:
            raise KeyError(f"Retention policy '{policy_id}' not found")
        return policy

    def create_retention_policy(self, data: Dict[str, Any]) -> Dict[str, Any]:
        policy = {
            "id": data.get("id") or _new_id(),
            "name": _require_name(data, "Retention policy"),
            "description": data.get("description", ""),
            "duration": self._validate_duration(data.get("duration")),
            "created_at": _now_ms(),
        }
        self.retention.put_item(policy)
        return policy

    def update_retention_policy(self, policy_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.get_retention_policy(policy_id)
        clean = {k: v for k, v in updates.items() if k in ("name", "description", "duration")}
        if "name" in clean:
            clean["name"] = _require_name(clean, "Retention policy")
        if "duration" in clean:
            clean["duration"] = self._validate_duration(clean["duration"])
        return self.retention.update_item(policy_id, clean)

    def delete_retention_policy(self, policy_id: str) -> bool:
        return self.retention.delete_item(policy_id)


# ============================================================================
# Global Service Instance
# ============================================================================

_service: Optional[ConfigService] = None


def get_config_service() -> ConfigService:
    """Get the shared service, creating it on first use."""
    global _service
    if _service is None:
        _service = ConfigService()
    return _service


def set_config_service(service: Optional[ConfigService]) -> None:
    """Replace the shared service (tests point it at a temp directory)."""
    global _service
    _service = service
