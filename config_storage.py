"""
Shared configuration storage using JSON files.

Each table is a directory and each item is one JSON document named after its
id, so server.py, main.py and the processing nodes all see the same data.
"""
import os
import re
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = Path(__file__).parent / "storage"

# Logical table -> (env var, default name)
TABLE_NAMES: Dict[str, tuple] = {
    "config": ("DOC_PROCESSOR_CONFIG_TABLE", "document-processor-config"),
    "doctypes": ("DOC_PROCESSOR_DOCTYPE_TABLE", "document-processor-doctypes"),
    "subtypes": ("DOC_PROCESSOR_SUBTYPE_TABLE", "document-processor-subtypes"),
    "elements": ("DOC_PROCESSOR_ELEMENT_TABLE", "document-processor-elements"),
    "datasets": ("DOC_PROCESSOR_DATASET_TABLE", "document-processor-datasets"),
    "examples": ("DOC_PROCESSOR_EXAMPLE_TABLE", "document-processor-examples"),
    "prompt_categories": ("DOC_PROCESSOR_PROMPT_CATEGORY_TABLE", "document-processor-prompt-categories"),
    "prompts": ("DOC_PROCESSOR_PROMPT_TABLE", "document-processor-prompts"),
    "retention": ("DOC_PROCESSOR_RETENTION_TABLE", "document-processor-retention-policies"),
    "feedback": ("DOC_PROCESSOR_FEEDBACK_TABLE", "document-processor-classification-feedback"),
}

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


class StorageError(RuntimeError):
    """Raised when an item cannot be written or removed."""


def get_storage_dir() -> Path:
    """Storage root, from DOC_PROCESSOR_STORAGE_DIR or ./storage."""
    return Path(os.getenv("DOC_PROCESSOR_STORAGE_DIR", str(DEFAULT_STORAGE_DIR)))


def resolve_table_name(logical_name: str) -> str:
    """Map a logical table name to its configured physical name."""
    if logical_name not in TABLE_NAMES:
        raise KeyError(f"Unknown table: {logical_name}")
    env_var, default = TABLE_NAMES[logical_name]
    return os.getenv(env_var, default)


class KeyValueTable:
    """
    A table of JSON items keyed by their 'id' attribute.

    Items are stored under <storage_dir>/tables/<name>/<id>.json. The
    directory is created on first use.
    """

    def __init__(self, name: str, storage_dir: Optional[Path] = None):
        self.name = name
        self.storage_dir = Path(storage_dir) if storage_dir else get_storage_dir()
        self.path = self.storage_dir / "tables" / name
        self.path.mkdir(parents=True, exist_ok=True)

    def _item_path(self, item_id: str) -> Path:
        if not item_id:
            raise ValueError("Item id is required")
        safe_id = _SAFE_ID.sub("_", str(item_id))
        if safe_id in (".", ".."):
            raise ValueError(f"Invalid item id: {item_id}")
        return self.path / f"{safe_id}.json"

    def put_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace an item. The item must carry an 'id'."""
        if "id" not in item:
            raise ValueError("Item must have an 'id'")
        file_path = self._item_path(item["id"])
        try:
            with open(file_path, "w") as f:
                json.dump(item, f, indent=2, default=str)
        except OSError as e:
            raise StorageError(f"Failed to write {self.name}/{item['id']}: {e}") from e
        logger.debug(f"Saved {self.name}/{item['id']}")
        return item

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        file_path = self._item_path(item_id)
        if not file_path.exists():
            return None
        try:
            with open(file_path, "r") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt item {item_id} in table {self.name}: {e}") from e

    def update_item(self, item_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Shallow-merge updates into an item. Returns None when it does not exist."""
        item = self.get_item(item_id)
        if item is None:
            return None
        item.update(updates)
        item["id"] = item_id
        return self.put_item(item)

    def delete_item(self, item_id: str) -> bool:
        file_path = self._item_path(item_id)
        if not file_path.exists():
            return False
        try:
            file_path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete {self.name}/{item_id}: {e}") from e
        logger.debug(f"Deleted {self.name}/{item_id}")
        return True

    def scan(self, filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None) -> List[Dict[str, Any]]:
        """Return every item, optionally filtered. Unreadable files are skipped."""
        items = []
        for file_path in sorted(self.path.glob("*.json")):
            try:
                with open(file_path, "r") as f:
                    item = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable item {file_path}: {e}")
                continue
            if filter_fn is None or filter_fn(item):
                items.append(item)
        return items

    def query(self, attribute: str, value: Any) -> List[Dict[str, Any]]:
        """Items whose attribute equals value."""
        return self.scan(lambda item: item.get(attribute) == value)

    def clear(self) -> int:
        """Delete every item. Returns the number removed."""
        count = 0
        for file_path in self.path.glob("*.json"):
            file_path.unlink()
            count += 1
        return count

    def __len__(self) -> int:
        return len(list(self.path.glob("*.json")))


def get_table(logical_name: str, storage_dir: Optional[Path] = None) -> KeyValueTable:
    """Open a table by its logical name ('doctypes', 'feedback', ...)."""
    return KeyValueTable(resolve_table_name(logical_name), storage_dir)
