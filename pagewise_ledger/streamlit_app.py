import io
from datetime import date
from functools import partial
from typing import List, Dict, Any, Optional

import pandas as pd
import streamlit as st

from pagewise_ledger.config import load_config
from pagewise_ledger.errors import LedgerError
from pagewise_ledger.export import build_csv, build_excel_sheets, export_filename
from pagewise_ledger.logs import configure_logging
from pagewise_ledger.page_extractor import OpenAIOracle, PdfRenderer, extract_document, suggest_fields
from pagewise_ledger.schema import DocumentRecord, FieldValue, LineItem, ProcessStatus, header_fields, item_fields
from pagewise_ledger.settings import (
    add_document_type, default_output_config, fields_from_rows, load_document_config, load_output_config,
    reorder_output_fields, save_document_config, save_output_config, update_document_type,
)
from pagewise_ledger.workflow import ResultStore, ReviewSession, process_pending

# ----------------- env -----------------
cfg = load_config()
configure_logging(cfg.log_level)
st.set_page_config(page_title="PDF → reviewed CSV", layout="wide")

ss = st.session_state
if "store" not in ss:
    ss.store = ResultStore()
    ss.document_config = load_document_config(cfg.document_config_path)
    ss.output_config = load_output_config(cfg.output_config_path)
    ss.sessions = {}
    ss.suggestion = None
    ss.schema_rev = 0

STATUS_LABELS = {
    ProcessStatus.PENDING: "⏳ pending",
    ProcessStatus.PROCESSING: "⚙️ processing",
    ProcessStatus.SUCCESS: "✅ extracted",
    ProcessStatus.ERROR: "❌ error",
    ProcessStatus.CONFIRMED: "🔒 confirmed",
}


# ----------------- UI helpers -----------------
def _progress_renderer(n_docs: int):
    stage_line = st.empty()
    bar = st.progress(0.0)
    state = {"done_docs": 0}

    def page_cb(ev: Dict[str, Any]):
        i, n = int(ev.get("i", 0)), int(ev.get("n", 0))
        labels = {"page_start": "Rendering page", "ai": "Extracting fields", "page_done": "Finishing page"}
        if ev.get("stage") in labels and i and n:
            stage_line.write(f"**Stage:** {labels[ev['stage']]}: page {i}/{n}")

    def doc_cb(ev: Dict[str, Any]):
        state["done_docs"] = int(ev.get("i", 0))
        bar.progress(min(1.0, state["done_docs"] / max(1, n_docs)))

    return page_cb, doc_cb


def _cell_value(v: Any) -> Any:
    if v is None:
        return None
    try:
        if pd.isna(v):
            return None
    except (TypeError, ValueError):
        pass
    return v.item() if hasattr(v, "item") else v


def _record_from_editors(current: DocumentRecord, header_df: pd.DataFrame, items_df: pd.DataFrame, keys: List[str]) -> DocumentRecord:
    """Fold edited tables back into a record, keeping locations and history of existing fields."""
    rec = current.snapshot()
    for _, row in header_df.iterrows():
        rec.fields.setdefault(row["key"], FieldValue()).value = _cell_value(row["value"])

    items: List[LineItem] = []
    for i, (_, row) in enumerate(items_df.iterrows()):
        page = _cell_value(row.get("page")) or 1
        if i < len(rec.items):
            item = rec.items[i]
        else:
            item = LineItem(page_number=FieldValue(value=int(page)))
        for k in keys:
            item.fields.setdefault(k, FieldValue()).value = _cell_value(row.get(k))
        items.append(item)
    rec.items = items
    return rec


def _download_buttons(results):
    document_config, output_config = ss.document_config, ss.output_config
    csv_text = build_csv(results, document_config, output_config)
    st.download_button("⬇️ Download CSV", data=csv_text.encode("utf-8"),
                       file_name=export_filename(date.today()), mime="text/csv")

    out = io.BytesIO()
    with pd.ExcelWriter(out, engine="xlsxwriter") as w:
        for name, df in build_excel_sheets(results, document_config, output_config).items():
            # Excel sheet name limit 31
            df.to_excel(w, index=False, sheet_name=name[:31])
    st.download_button("⬇️ Download Excel", data=out.getvalue(),
                       file_name=export_filename(date.today()).replace(".csv", ".xlsx"),
                       mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")


def _review(result_id: str, doc_type: str):
    schema = ss.document_config.get(doc_type, [])
    session: Optional[ReviewSession] = ss.sessions.get(result_id)
    if session is None:
        session = ss.sessions[result_id] = ReviewSession(ss.store, result_id, schema)

    # editors always start from the edit-start snapshot; their deltas are re-applied every run
    data = session.baseline if session.editing else session.data
    st.caption(f"Status: {STATUS_LABELS[session.result.status]} | editing: {session.editing}")

    hdr = [{"key": f.key, "label": f.label, "value": data.get(f.key).value} for f in header_fields(schema)]
    keys = [f.key for f in item_fields(schema)]
    rows = [{"page": it.page_number.value, **{k: it.get(k).value for k in keys}} for it in data.items]

    disabled = not session.editing
    header_df = st.data_editor(pd.DataFrame(hdr, columns=["key", "label", "value"]), disabled=disabled or ["key", "label"],
                               use_container_width=True, key=f"hdr_{result_id}_{session.revision}")
    items_df = st.data_editor(pd.DataFrame(rows, columns=["page", *keys]), disabled=disabled,
                              num_rows="dynamic", use_container_width=True, key=f"items_{result_id}_{session.revision}")

    c1, c2, _, c4 = st.columns(4)
    try:
        if session.editing:
            session.replace_data(_record_from_editors(data, header_df, items_df, keys))
            if session.is_confirmed:
                if c1.button("💾 Save changes", key=f"save_{result_id}"):
                    session.save(); st.rerun()
            elif c1.button("✅ Confirm & save", key=f"confirm_{result_id}"):
                session.confirm_and_save(); st.rerun()
            if c2.button("↩️ Cancel", key=f"cancel_{result_id}"):
                session.cancel(); st.rerun()
        elif c1.button("✏️ Edit", key=f"edit_{result_id}"):
            session.start_editing(); st.rerun()
    except LedgerError as e:
        st.error(str(e))

    with c4.expander("History"):
        hist = session.history()
        if hist:
            st.dataframe(pd.DataFrame([{
                "when": h.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                "field": h.label + (f" (item {h.item_index})" if h.item_index else ""),
                "before": "(blank)" if h.old_value is None else str(h.old_value),
                "after": "(blank)" if h.new_value is None else str(h.new_value),
            } for h in hist]), use_container_width=True)
        else:
            st.write("No changes yet.")


_SCHEMA_COLUMNS = ["key", "label", "enabled", "is_item_field", "type", "output_format", "instruction"]
_SCHEMA_EDITOR_COLUMNS = {
    "type": st.column_config.SelectboxColumn("type", options=["string", "number"]),
    "output_format": st.column_config.SelectboxColumn("output_format", options=["none", "date-yyyy-mm-dd"]),
}


def _schema_editor(fields, key: str):
    """Editable field table; returns the schema rows as plain dicts."""
    df = st.data_editor(
        pd.DataFrame([f.model_dump(include=set(_SCHEMA_COLUMNS)) for f in fields], columns=_SCHEMA_COLUMNS),
        column_config=_SCHEMA_EDITOR_COLUMNS, num_rows="dynamic", use_container_width=True, key=key,
    )
    return [{k: _cell_value(v) for k, v in row.items()} for row in df.to_dict("records")]


# ----------------- App -----------------
st.title("📄 PDF → reviewed CSV (page-wise AI extraction)")

with st.sidebar:
    st.header("Settings")
    doc_type = st.selectbox("Document type", list(ss.document_config))
    api_key = st.text_input("OPENAI_API_KEY", type="password", value=cfg.openai_api_key)
    model = st.text_input("Model", value=cfg.extraction_model)
    max_pages = st.number_input("Max pages per file", min_value=1, value=cfg.max_pages)

    with st.expander("Fields"):
        schema_rows = _schema_editor(ss.document_config[doc_type], key=f"schema_{doc_type}_{ss.schema_rev}")
        if st.button("Save fields"):
            try:
                ss.document_config = update_document_type(ss.document_config, doc_type, fields_from_rows(schema_rows))
                save_document_config(cfg.document_config_path, ss.document_config)
                # columns are re-derived from the new schema
                if ss.output_config.pop(doc_type, None) is not None:
                    save_output_config(cfg.output_config_path, ss.output_config)
                ss.schema_rev += 1
                st.rerun()
            except LedgerError as e:
                st.error(str(e))

    with st.expander("Output columns"):
        out_fields = ss.output_config.get(doc_type) or default_output_config(ss.document_config[doc_type])
        keys_ = [o.key for o in out_fields]
        m1, m2 = st.columns(2)
        dragged = m1.selectbox("Move", keys_, key=f"mv_from_{doc_type}")
        target = m2.selectbox("to the place of", keys_, key=f"mv_to_{doc_type}")
        if st.button("Move column"):
            out_fields = reorder_output_fields(out_fields, dragged, target)
            ss.output_config[doc_type] = out_fields
            save_output_config(cfg.output_config_path, ss.output_config)
        out_df = st.data_editor(pd.DataFrame([o.model_dump() for o in out_fields]),
                                disabled=["key", "is_item_field"], key=f"out_{doc_type}_{'-'.join(o.key for o in out_fields)}")
        if st.button("Apply output settings"):
            by_key = {o.key: o for o in out_fields}
            ss.output_config[doc_type] = [
                by_key[r["key"]].model_copy(update={
                    "label": r["label"], "enabled": bool(r["enabled"]),
                    "format_instruction": r["format_instruction"] or "",
                })
                for r in out_df.to_dict("records")
            ]
            save_output_config(cfg.output_config_path, ss.output_config)

    with st.expander("New document type from sample"):
        sample = st.file_uploader("Sample PDF", type=["pdf"], key="sample")
        if sample and st.button("Suggest fields"):
            try:
                ss.suggestion = suggest_fields(
                    sample.read(),
                    oracle=OpenAIOracle(api_key, cfg.suggest_model),
                    renderer=PdfRenderer(cfg.render_dpi),
                )
                ss.schema_rev += 1
            except Exception as e:
                st.error(f"Suggestion error: {e}")

        if ss.suggestion is not None:
            suggested_name, suggested_fields = ss.suggestion
            new_name = st.text_input("Document type name", value=suggested_name, key=f"new_name_{ss.schema_rev}")
            new_rows = _schema_editor(suggested_fields, key=f"new_schema_{ss.schema_rev}")
            a1, a2 = st.columns(2)
            if a1.button("Add document type"):
                try:
                    ss.document_config = add_document_type(ss.document_config, new_name, fields_from_rows(new_rows))
                    save_document_config(cfg.document_config_path, ss.document_config)
                    ss.suggestion = None
                    st.success(f"Added '{new_name.strip()}'")
                    st.rerun()
                except LedgerError as e:
                    st.error(str(e))
            if a2.button("Discard"):
                ss.suggestion = None
                st.rerun()

uploads = st.file_uploader("Choose PDF files", type=["pdf"], accept_multiple_files=True)
if uploads and st.button("Add to queue"):
    ss.store.add_files((up.name, up.read()) for up in uploads)

if ss.store.pending() and st.button(f"▶️ Process {len(ss.store.pending())} file(s)"):
    page_cb, doc_cb = _progress_renderer(len(ss.store.pending()))
    extractor = partial(
        extract_document,
        oracle=OpenAIOracle(api_key, model),
        renderer=PdfRenderer(cfg.render_dpi),
        max_pages=int(max_pages),
        progress_cb=page_cb,
    )
    summary = process_pending(ss.store, doc_type, ss.document_config, extractor=extractor, progress_cb=doc_cb)
    st.success(f"Done: {summary.succeeded} extracted, {summary.failed} failed.")

results = ss.store.all()
if results:
    st.dataframe(pd.DataFrame([{
        "file": r.file_name,
        "status": STATUS_LABELS[r.status],
        "processed_at": r.processed_at.strftime("%Y-%m-%d %H:%M:%S") if r.processed_at else "",
        "error": r.error or "",
    } for r in results]), use_container_width=True)

    for r in results:
        if r.data is not None and r.status in (ProcessStatus.SUCCESS, ProcessStatus.CONFIRMED):
            with st.expander(f"{r.file_name} · {STATUS_LABELS[r.status]}"):
                _review(r.id, r.data.document_type)

    if ss.store.confirmed():
        _download_buttons(results)

st.caption("Tip: put OPENAI_API_KEY in a .env file. Only confirmed documents are exported.")
