"""
Streamlit UI -- Ledger Query Copilot.

Features:
  - Chat over one API session (confirm / modify / pick a column)
  - Sidebar with schema type, translator mode and the column catalog
  - Predefined report list for the selected schema type
  - Results table with chart hint and CSV download
"""
import uuid

import streamlit as st
import httpx
import pandas as pd


API_BASE = "http://localhost:8000"
_TIMEOUT = 90

st.set_page_config(
    page_title="Ledger Query Copilot",
    page_icon="ledger",
    layout="wide",
    initial_sidebar_state="expanded",
)


if "messages" not in st.session_state:
    st.session_state.messages = []

if "session_id" not in st.session_state:
    st.session_state.session_id = uuid.uuid4().hex

if "columns" not in st.session_state:
    st.session_state.columns = None


def _load_columns(schema_type: str):
    try:
        resp = httpx.get(f"{API_BASE}/nlq/columns", params={"schema_type": schema_type}, timeout=5).json()
        st.session_state.columns = resp.get("columns", [])
    except Exception:
        st.session_state.columns = None


def _fetch_reports(schema_type: str) -> list[dict]:
    try:
        return httpx.get(f"{API_BASE}/reports", params={"schema_type": schema_type}, timeout=5).json()
    except Exception:
        return []


def _reset_session():
    try:
        httpx.delete(f"{API_BASE}/nlq/sessions/{st.session_state.session_id}", timeout=3)
    except Exception:
        pass
    st.session_state.session_id = uuid.uuid4().hex
    st.session_state.messages = []


with st.sidebar:
    st.title("Settings")

    schema_type = st.selectbox("Schema type", ["canton_transaction", "actions"], index=0)
    mode = st.selectbox("Translator", ["mock", "openai", "anthropic"], index=0)

    if st.button("New conversation", use_container_width=True):
        _reset_session()

    st.divider()

    st.subheader("Columns")
    if st.button("Refresh columns", use_container_width=True) or st.session_state.columns is None:
        _load_columns(schema_type)
    if st.session_state.columns:
        st.caption(", ".join(st.session_state.columns))
    else:
        st.info("API not reachable -- start the FastAPI server first.\n\n```\nuvicorn src.api.main:app --reload\n```")

    st.divider()

    st.subheader("Reports")
    for r in _fetch_reports(schema_type):
        st.markdown(f"- **{r['name']}**")
        st.caption(f"  {r.get('description', '')}")

    st.divider()
    st.caption("Ledger Query Copilot v0.1")


st.title("Ledger Query Copilot")
st.markdown(
    "Ask a question about your transactions in plain English. "
    "The copilot shows its interpretation first and runs it once you confirm."
)


with st.expander("Example questions", expanded=False):
    examples = [
        "Total bitcoin bought last month",
        "Number of transactions by asset this year",
        "Monthly activity report for wallet w-123 since 2024-01-01",
        "Top 5 wallets by amount last 30 days",
        "Trend of ETH transfers in 2024",
        "Inventory balance report as of 2024-12-31",
    ]
    cols = st.columns(2)
    for i, ex in enumerate(examples):
        if cols[i % 2].button(ex, key=f"ex_{i}", use_container_width=True):
            st.session_state.prefill = ex


def _render_result(result: dict):
    raw = result.get("raw_data") or {}
    rows = raw.get("rows") or []
    if not rows:
        return
    df = pd.DataFrame(rows, columns=raw.get("headers"))
    st.dataframe(df, use_container_width=True)
    st.download_button(
        "Download CSV",
        df.to_csv(index=False),
        file_name="ledger_query_results.csv",
        mime="text/csv",
        key=f"dl_{id(result)}",
    )


def _render_response(data: dict):
    meta = data.get("metadata", {})
    kind = meta.get("type")
    if kind in ("error", "execution_error"):
        st.error("The query could not be completed")

    result = data.get("result")
    if result:
        # table rendered natively instead of the markdown copy
        for block in result.get("content", []):
            if not block["text"].startswith("|"):
                st.markdown(block["text"])
        _render_result(result)
    else:
        st.markdown(data.get("content", ""))

    if data.get("needs_confirmation") and kind == "confirmation":
        st.caption("Reply \"yes\" to run it, or describe what to change.")

    sql = meta.get("sql")
    if sql:
        with st.expander("SQL", expanded=False):
            st.code(sql, language="sql")


for msg in st.session_state.messages:
    with st.chat_message(msg["role"]):
        if msg["role"] == "user":
            st.markdown(msg["content"])
        else:
            _render_response(msg["data"]) if "data" in msg else st.markdown(msg["content"])


prefill = st.session_state.pop("prefill", None)
question = st.chat_input("Ask about your ledger...") or prefill

if question:
    st.session_state.messages.append({"role": "user", "content": question})
    with st.chat_message("user"):
        st.markdown(question)

    with st.chat_message("assistant"):
        with st.spinner("Working..."):
            try:
                payload = {
                    "question": question,
                    "session_id": st.session_state.session_id,
                    "mode": mode,
                    "schema_type": schema_type,
                }
                resp = httpx.post(f"{API_BASE}/nlq/query", json=payload, timeout=_TIMEOUT)
                resp.raise_for_status()
                data = resp.json()
            except httpx.ConnectError:
                st.error("Cannot reach the API. Start it with:\n```\nuvicorn src.api.main:app --reload\n```")
                st.stop()
            except httpx.HTTPStatusError as exc:
                st.error(f"API returned {exc.response.status_code}: {exc.response.text}")
                st.stop()
            except Exception as exc:
                st.error(f"Unexpected error: {exc}")
                st.stop()

        _render_response(data)
        st.session_state.messages.append({"role": "assistant", "data": data})
