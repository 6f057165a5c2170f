# main.py – Zotero Document Assistant (Streamlit)
# Collections → documents with PDFs → assistant → chat

import os

import openai
import streamlit as st

from assistant import AssistantService, run_sync
from assistant_config import DEFAULT_ASSISTANT_NAME, DEFAULT_INSTRUCTIONS, get_assistant_config
from assistant_errors import AssistantServiceError, ThreadNotFound
from core_assistant import configure_logging
from session_manager import PersistentSessionCache
from zotero_client import ZoteroClient, ZoteroError

# --- PAGE CONFIG ---
st.set_page_config(
    page_title="Zotero Document Assistant",
    page_icon="📚",
    layout="wide",
    initial_sidebar_state="expanded",
)


# --- API KEYS ---
def get_api_keys():
    try:
        return {
            "openai_api_key": st.secrets["OPENAI_API_KEY"],
            "zotero_api_key": st.secrets["ZOTERO_API_KEY"],
            "zotero_user_id": st.secrets["ZOTERO_USER_ID"],
        }
    except Exception:
        keys = {
            "openai_api_key": os.getenv("OPENAI_API_KEY"),
            "zotero_api_key": os.getenv("ZOTERO_API_KEY"),
            "zotero_user_id": os.getenv("ZOTERO_USER_ID"),
        }
        missing = [name.upper() for name, value in keys.items() if not value]
        if missing:
            st.error(f"🔑 Missing settings: {', '.join(missing)}. Set them in secrets or environment variables.")
            st.stop()
        return keys


api_keys = get_api_keys()
openai.api_key = api_keys["openai_api_key"]

# --- SESSION STATE INIT ---
if "service" not in st.session_state:
    configure_logging()
    zotero = ZoteroClient(api_keys["zotero_api_key"], api_keys["zotero_user_id"])
    zotero.register_cleanup()   # downloaded PDFs are removed on exit
    st.session_state["service"] = AssistantService(cache=PersistentSessionCache(), zotero=zotero)
    st.session_state["history"] = []
    st.session_state["thread_id"] = None
    st.session_state["assistant"] = None
    st.session_state["alternate_thread_id"] = None

service: AssistantService = st.session_state["service"]


def _show_error(exc: AssistantServiceError) -> None:
    st.error(f"❌ {exc.user_message} {exc.message}")


def _adopt_assistant(record) -> None:
    st.session_state["assistant"] = record
    st.session_state["history"] = []
    cached = service.session.get_thread(record.id)
    st.session_state["thread_id"] = cached.thread_id if cached else None


# --- SIDEBAR: COLLECTIONS & EXISTING ASSISTANTS ---
with st.sidebar:
    st.markdown("### Collections")
    if st.button("🔄 Refresh") or "collections" not in st.session_state:
        try:
            st.session_state["collections"] = service.zotero.list_collections()
        except ZoteroError as exc:
            st.error(f"Failed to fetch collections: {exc}")
            st.session_state["collections"] = []
    collections = st.session_state["collections"]
    st.caption(f"{len(collections)} collections")
    collection = st.selectbox(
        "Collection",
        collections,
        format_func=lambda c: f"{c.name} ({c.num_items})",
        index=None,
    )

    st.markdown("### Existing assistants")
    try:
        directory = run_sync(service.list_assistants())
    except AssistantServiceError as exc:
        directory = []
        _show_error(exc)
    for entry in directory:
        with st.expander(entry.name or entry.id):
            st.caption(f"{entry.model} · {entry.id}")
            st.write(entry.instructions)
            load_col, delete_col = st.columns(2)
            if load_col.button("Load", key=f"load-{entry.id}"):
                try:
                    _adopt_assistant(run_sync(service.load_assistant(entry.id)))
                    st.rerun()
                except AssistantServiceError as exc:
                    _show_error(exc)
            if delete_col.button("Delete", key=f"delete-{entry.id}"):
                try:
                    result = run_sync(service.delete_assistant(entry.id))
                    if result.warning:
                        st.warning(result.warning)
                    current = st.session_state["assistant"]
                    if current is not None and current.id == entry.id:
                        st.session_state["assistant"] = None
                        st.session_state["thread_id"] = None
                        st.session_state["history"] = []
                    st.rerun()
                except AssistantServiceError as exc:
                    _show_error(exc)

    st.markdown("### Settings")
    st.json(get_assistant_config(), expanded=False)


# --- DOCUMENTS ---
st.title("📚 Zotero Document Assistant")

if collection is not None:
    cache_key = f"documents-{collection.key}"
    if cache_key not in st.session_state:
        with st.spinner(f"Loading {collection.name}…"):
            try:
                st.session_state[cache_key] = service.zotero.list_collection_documents(collection.key)
            except ZoteroError as exc:
                st.error(f"Failed to fetch collection items: {exc}")
                st.session_state[cache_key] = []
    documents = [doc for doc in st.session_state[cache_key] if doc.has_pdf]
    st.caption(f"{len(documents)} documents with PDFs")

    selected = st.multiselect("Documents", documents, format_func=lambda d: d.title)
    name = st.text_input("Assistant name", value=DEFAULT_ASSISTANT_NAME)
    instructions = st.text_area("Instructions", value=DEFAULT_INSTRUCTIONS)

    if st.button("🤖 Create / update assistant", disabled=not selected):
        with st.spinner(f"📤 Uploading {len(selected)} document(s)…"):
            file_map = run_sync(service.prepare_documents(selected))
        if len(file_map) < len(selected):
            st.warning(f"{len(selected) - len(file_map)} document(s) could not be uploaded.")
        if file_map:
            with st.spinner("Indexing documents and configuring assistant…"):
                try:
                    record = run_sync(service.create_or_update_assistant(name, instructions, list(file_map.values())))
                    _adopt_assistant(record)
                    st.success(f"✅ Assistant {record.name} ready with {record.file_count} files")
                except AssistantServiceError as exc:
                    _show_error(exc)


# --- CHAT ---
assistant_record = st.session_state["assistant"]
if assistant_record is not None:
    st.markdown(f"### Chat with {assistant_record.name or assistant_record.id}")

    if st.button("🆕 New Chat"):
        try:
            st.session_state["thread_id"] = run_sync(service.start_new_thread(assistant_record.id))
            st.session_state["history"] = []
            st.rerun()
        except AssistantServiceError as exc:
            _show_error(exc)

    alternate = st.session_state["alternate_thread_id"]
    if alternate:
        st.warning("That conversation is no longer available, but an earlier one still is.")
        resume_col, fresh_col = st.columns(2)
        if resume_col.button("Resume earlier conversation"):
            st.session_state["thread_id"] = alternate
            st.session_state["alternate_thread_id"] = None
            st.rerun()
        if fresh_col.button("Start over"):
            st.session_state["thread_id"] = None
            st.session_state["alternate_thread_id"] = None
            st.rerun()

    for msg in st.session_state["history"]:
        with st.chat_message(msg["role"]):
            st.markdown(msg["content"])

    prompt = st.chat_input("Ask about the selected papers…")
    if prompt:
        st.session_state["history"].append({"role": "user", "content": prompt})
        with st.chat_message("user"):
            st.markdown(prompt)
        with st.chat_message("assistant"):
            with st.spinner("🤖 Thinking…"):
                try:
                    reply = run_sync(service.converse(assistant_record.id, st.session_state["thread_id"], prompt))
                except ThreadNotFound as exc:
                    if exc.alternate_thread_id:
                        st.session_state["alternate_thread_id"] = exc.alternate_thread_id
                    else:
                        st.session_state["thread_id"] = None
                    st.warning(f"💡 {exc.user_message}")
                except AssistantServiceError as exc:
                    _show_error(exc)
                else:
                    st.session_state["thread_id"] = reply.thread_id
                    st.session_state["history"].append({"role": "assistant", "content": reply.message})
                    st.markdown(reply.message)
