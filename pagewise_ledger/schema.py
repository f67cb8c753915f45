from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import SchemaError


class BoundingBox(BaseModel):
    """
    A rectangle in image-pixel space. Origin is the top-left corner, Y grows downward.
    """
    x: float
    y: float
    width: float = Field(ge=0)
    height: float = Field(ge=0)


class AuditLogEntry(BaseModel):
    """
    One recorded change of a field value. Immutable once created.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timestamp: datetime
    old_value: Any = Field(default=None, alias="oldValue")
    new_value: Any = Field(default=None, alias="newValue")


class FieldValue(BaseModel):
    """
    An extracted (or edited) value plus where it was found and how it changed.
    A ``None`` value means the field is absent, not that extraction failed.
    """
    model_config = ConfigDict(populate_by_name=True)

    value: Any = None
    locations: List[BoundingBox] = Field(default_factory=list, alias="bounding_box")
    history: List[AuditLogEntry] = Field(default_factory=list)


class LineItem(BaseModel):
    """
    One repeating row, tied to the source page that produced it.
    """
    page_number: FieldValue
    fields: Dict[str, FieldValue] = Field(default_factory=dict)

    def get(self, key: str) -> FieldValue:
        return self.fields.get(key) or FieldValue()


class DocumentRecord(BaseModel):
    """
    The unified, schema-conformant representation of one processed file.
    Header fields live in ``fields`` (declaration order is kept), line items in ``items``.
    """
    document_type: str
    fields: Dict[str, FieldValue] = Field(default_factory=dict)
    items: List[LineItem] = Field(default_factory=list)

    def get(self, key: str) -> FieldValue:
        return self.fields.get(key) or FieldValue()

    def snapshot(self) -> "DocumentRecord":
        """Structurally independent copy, safe to keep for comparison or rollback."""
        return self.model_copy(deep=True)


OutputFormat = Literal["none", "date-yyyy-mm-dd"]


class DocumentFieldConfig(BaseModel):
    """
    Declares one field of a document type: what to ask for and how to export it.
    """
    model_config = ConfigDict(populate_by_name=True)

    key: str
    label: str
    enabled: bool = True
    is_item_field: bool = Field(default=False, alias="isItemField")
    type: Literal["string", "number"] = "string"
    output_format: OutputFormat = Field(default="none", alias="outputFormat")
    instruction: Optional[str] = None


class OutputFieldConfig(BaseModel):
    """
    Export-side settings for one column of a document type (order, label, template).
    """
    model_config = ConfigDict(populate_by_name=True)

    key: str
    label: str
    enabled: bool = True
    is_item_field: bool = Field(default=False, alias="isItemField")
    format_instruction: str = Field(default="", alias="formatInstruction")


class ProcessStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    CONFIRMED = "confirmed"


class ProcessResult(BaseModel):
    """
    The unit of work tracked for one uploaded file.
    """
    id: str
    file_name: str
    file_bytes: bytes = Field(default=b"", exclude=True, repr=False)
    status: ProcessStatus = ProcessStatus.PENDING
    data: Optional[DocumentRecord] = None
    error: Optional[str] = None
    processed_at: Optional[datetime] = None


# ---------- schema views ----------

def header_fields(schema: List[DocumentFieldConfig]) -> List[DocumentFieldConfig]:
    return [f for f in schema if f.enabled and not f.is_item_field]


def item_fields(schema: List[DocumentFieldConfig]) -> List[DocumentFieldConfig]:
    return [f for f in schema if f.enabled and f.is_item_field]


def field_config(schema: List[DocumentFieldConfig], key: str) -> Optional[DocumentFieldConfig]:
    """Enabled config for ``key``, or None if the key is unknown or disabled."""
    return next((f for f in schema if f.enabled and f.key == key), None)


def validate_schema(schema: List[DocumentFieldConfig]) -> None:
    seen = set()
    for f in schema:
        if not f.key.strip():
            raise SchemaError("Field key must not be empty")
        if f.key in seen:
            raise SchemaError(f"Duplicate field key '{f.key}'")
        seen.add(f.key)


def coerce_value(field: DocumentFieldConfig, value: Any) -> Any:
    """
    Bring an edited value in line with ``field.type``.
    Number fields take numbers or numeric text (thousands separators allowed);
    anything else becomes None.
    String fields are left as entered.
    """
    if field.type != "number" or value is None:
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip().replace(",", ""))
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value
