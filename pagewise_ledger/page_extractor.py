import io
import json
import time
import base64
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Tuple, Callable, Iterator

import pdfplumber
from pdf2image import convert_from_bytes

# OpenAI client + typed errors
from openai import OpenAI
from openai import AuthenticationError, APIConnectionError, APIError, RateLimitError, BadRequestError
from pydantic import ValidationError

from .config import DEFAULT_MODEL, DEFAULT_MAX_PAGES, DEFAULT_RENDER_DPI
from .errors import ExtractionError, LLMAuthError, LLMRuntimeError
from .logs import get_logger
from .merge import merge_pages
from .schema import DocumentFieldConfig, DocumentRecord, header_fields, item_fields

logger = get_logger(__name__)

# (image bytes, prompt, expected response shape) -> raw page result
Oracle = Callable[[bytes, str, Dict[str, Any]], Dict[str, Any]]
ProgressCallback = Callable[[Dict[str, Any]], None]

JPEG_QUALITY = 90


@dataclass(frozen=True)
class PageOutcome:
    """Result of one oracle call: either a raw page result or the failure message."""
    page_number: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


# ---------------- rendering ----------------
class PdfRenderer:
    """Counts pages with pdfplumber and rasterizes single pages with pdf2image."""

    def __init__(self, dpi: int = DEFAULT_RENDER_DPI):
        self.dpi = dpi

    def page_count(self, file_bytes: bytes) -> int:
        with pdfplumber.open(io.BytesIO(file_bytes)) as pdf:
            return len(pdf.pages)

    def render_page(self, file_bytes: bytes, page_number: int) -> bytes:
        """Render 1-based ``page_number`` to JPEG bytes."""
        imgs = convert_from_bytes(file_bytes, dpi=self.dpi, first_page=page_number, last_page=page_number)
        if not imgs:
            raise ExtractionError(f"Page {page_number} produced no image")
        out = io.BytesIO()
        imgs[0].convert("RGB").save(out, format="JPEG", quality=JPEG_QUALITY)
        return out.getvalue()


# ---------------- prompt & response shape ----------------
_BOX_SHAPE = {
    "type": "object",
    "properties": {
        "x": {"type": "number"},
        "y": {"type": "number"},
        "width": {"type": "number"},
        "height": {"type": "number"},
    },
}

_COORDINATE_RULES = """**Extract a bounding box (bounding_box) locating every field on this single image.**

Follow these coordinate rules strictly:
* The origin (0,0) is the TOP-LEFT corner of the image.
* The Y axis grows DOWNWARD.
* Units are pixels.
* Never use a bottom-left origin like PDF user space.

For each field return its value and bounding boxes (x, y, width, height) following the rules above.
If a field is not on this page, set its value to null. Amounts and quantities must be returned as numbers."""


def _field_shape(field: DocumentFieldConfig) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "value": {"type": ["number" if field.type == "number" else "string", "null"]},
            "bounding_box": {"type": "array", "items": _BOX_SHAPE},
        },
    }


def build_response_shape(schema: List[DocumentFieldConfig]) -> Dict[str, Any]:
    props: Dict[str, Any] = {f.key: _field_shape(f) for f in header_fields(schema)}
    items = item_fields(schema)
    if items:
        props["items"] = {
            "type": "array",
            "items": {"type": "object", "properties": {f.key: _field_shape(f) for f in items}},
        }
    return {"type": "object", "properties": props}


def _format_fields(fields: List[DocumentFieldConfig]) -> str:
    return "\n".join(
        f"- {f.label} ({f.key})" + (f": {f.instruction}" if f.instruction else "")
        for f in fields
    )


def build_prompt(doc_type: str, page_number: int, total_pages: int, schema: List[DocumentFieldConfig]) -> str:
    return f"""You are an advanced {doc_type} processing AI. From the image of a single page of a {doc_type}, extract the fields below exactly as instructed and return the result as JSON.
This is page {page_number} of {total_pages}.
Read the content correctly even if the image is rotated or upside down.

{_COORDINATE_RULES}

**Fields to extract (only those printed on this page):**

**Document fields:**
{_format_fields(header_fields(schema))}

**Line items (items):**
Extract only the line items printed on this page. For each item extract:
{_format_fields(item_fields(schema))}"""


# ---------------- OpenAI oracle ----------------
def _parse_json_object(content: Optional[str]) -> Dict[str, Any]:
    try:
        data = json.loads(content or "")
    except json.JSONDecodeError as e:
        raise LLMRuntimeError(f"Oracle returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise LLMRuntimeError("Oracle returned JSON that is not an object")
    return data


class OpenAIOracle:
    """Extraction oracle backed by an OpenAI vision model in JSON mode."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL, client: Optional[OpenAI] = None):
        self.model = model
        self.client = client or OpenAI(api_key=(api_key or "").strip())

    def __call__(self, image: bytes, prompt: str, shape: Dict[str, Any]) -> Dict[str, Any]:
        data_url = "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii")
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": (
                        "You are an information extraction engine. Return ONLY valid JSON "
                        "matching this JSON schema:\n" + json.dumps(shape, ensure_ascii=False)
                    )},
                    {"role": "user", "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ]},
                ],
            )
        except AuthenticationError as e:
            raise LLMAuthError("OpenAI authentication failed (invalid API key).") from e
        except (RateLimitError, APIConnectionError, APIError, BadRequestError) as e:
            raise LLMRuntimeError(str(e)) from e
        return _parse_json_object(resp.choices[0].message.content)


# ---------------- main API ----------------
def extract_pages(
    file_bytes: bytes,
    doc_type: str,
    schema: List[DocumentFieldConfig],
    *,
    oracle: Oracle,
    renderer: PdfRenderer,
    max_pages: Optional[int] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> Iterator[PageOutcome]:
    """
    Drive the oracle one page at a time, in page order.
    A failing oracle call is yielded as a failed PageOutcome and the loop moves on;
    renderer failures abort the whole document with ExtractionError.
    """
    try:
        total_pages = renderer.page_count(file_bytes)
    except Exception as e:
        raise ExtractionError(f"Could not open the document: {e}") from e

    n = min(total_pages, max_pages or DEFAULT_MAX_PAGES)
    if n <= 0:
        raise ExtractionError("Could not extract any page images from the document.")

    shape = build_response_shape(schema)

    for page_number in range(1, n + 1):
        page_start = time.perf_counter()
        if progress_cb: progress_cb({"stage": "page_start", "i": page_number, "n": n})

        try:
            image = renderer.render_page(file_bytes, page_number)
        except Exception as e:
            raise ExtractionError(f"Could not render page {page_number}: {e}") from e

        if progress_cb: progress_cb({"stage": "ai", "i": page_number, "n": n})
        prompt = build_prompt(doc_type, page_number, n, schema)
        try:
            raw = oracle(image, prompt, shape)
        except Exception as e:
            logger.warning("page_failed", doc_type=doc_type, page=page_number, error=f"{e.__class__.__name__}: {e}")
            outcome = PageOutcome(page_number, error=str(e) or e.__class__.__name__)
        else:
            outcome = PageOutcome(page_number, result=raw)
        del image

        yield outcome

        if progress_cb:
            progress_cb({"stage": "page_done", "i": page_number, "n": n, "sec": time.perf_counter() - page_start})


def extract_document(
    file_bytes: bytes,
    doc_type: str,
    schema: List[DocumentFieldConfig],
    *,
    oracle: Oracle,
    renderer: PdfRenderer,
    max_pages: Optional[int] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> DocumentRecord:
    outcomes = extract_pages(
        file_bytes, doc_type, schema,
        oracle=oracle, renderer=renderer, max_pages=max_pages, progress_cb=progress_cb,
    )
    return merge_pages(outcomes, doc_type, schema)


# ---------------- field suggestion (first page only) ----------------
_SUGGEST_SHAPE = {
    "type": "object",
    "properties": {
        "docTypeName": {"type": "string", "description": "Kind of document, e.g. delivery note, receipt"},
        "fields": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "key": {"type": "string", "description": "snake_case key for programs"},
                    "label": {"type": "string", "description": "human readable field name"},
                    "enabled": {"type": "boolean"},
                    "isItemField": {"type": "boolean", "description": "true for tabular line item fields"},
                    "outputFormat": {"type": "string", "enum": ["none", "date-yyyy-mm-dd"]},
                    "type": {"type": "string", "enum": ["string", "number"]},
                    "instruction": {"type": "string", "description": "extraction hint for the AI"},
                },
                "required": ["key", "label", "enabled", "isItemField", "outputFormat", "type", "instruction"],
            },
        },
    },
    "required": ["docTypeName", "fields"],
}

_SUGGEST_PROMPT = """You are an advanced business-form analysis AI. From the document image, identify what kind of document it is and propose the best list of fields for data extraction.

Instructions:
1. Identify the document (e.g. invoice, delivery note, receipt).
2. List the fields needed to extract its data.
3. Classify each field as a document field (occurs once) or a line item field (repeats in a table).
4. Give every property the JSON schema requires (key, label, isItemField, ...).
5. Keys are English snake_case.
6. Amounts and quantities use type 'number'; dates use outputFormat 'date-yyyy-mm-dd'.
7. Set enabled to true for every field.

Follow the JSON schema strictly."""


def suggest_fields(
    file_bytes: bytes,
    *,
    oracle: Oracle,
    renderer: PdfRenderer,
) -> Tuple[str, List[DocumentFieldConfig]]:
    """Ask the oracle for a document-type name and a field schema, from page 1 only."""
    try:
        if renderer.page_count(file_bytes) <= 0:
            raise ExtractionError("Could not extract any page images from the document.")
        image = renderer.render_page(file_bytes, 1)
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Could not render the first page: {e}") from e

    raw = oracle(image, _SUGGEST_PROMPT, _SUGGEST_SHAPE)
    name = str(raw.get("docTypeName") or "").strip()
    entries = raw.get("fields")
    if not isinstance(entries, list):
        entries = []

    fields: List[DocumentFieldConfig] = []
    seen = set()
    for entry in entries:
        try:
            f = DocumentFieldConfig.model_validate(entry)
        except ValidationError as e:
            logger.info("suggested_field_skipped", error=str(e).splitlines()[0])
            continue
        if not f.key.strip() or f.key in seen:
            continue
        seen.add(f.key)
        fields.append(f)

    logger.info("fields_suggested", doc_type=name, fields=len(fields))
    return name, fields
