import streamlit as st
from chat_core import load, TransformersOracle
from reasoning import ReasoningConfig, ReasoningEngine, format_steps
from settings import load_config, resolve_model
import json
from pathlib import Path


CHAT_HISTORY_FILE = Path(".chat_history.json")

def load_chat(path=CHAT_HISTORY_FILE):
    path = Path(path)
    if not path.exists():
        return []
    try:
        ui = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        st.warning(f"Ignoring unreadable chat history in {path}: {exc}")
        return []
    if not isinstance(ui, list) or not all(
            isinstance(m, dict) and isinstance(m.get("role"), str) and isinstance(m.get("content"), str)
            for m in ui):
        st.warning(f"Ignoring chat history in {path}: expected a list of {{role, content}} messages.")
        return []
    return ui

def save_chat(ui, path=CHAT_HISTORY_FILE):
    Path(path).write_text(
        json.dumps(ui, ensure_ascii=False, indent=2),
        encoding="utf-8"
    )

@st.cache_resource
def get_model(model_name):
    return load(model_name)

def main():
    st.set_page_config(page_title="reasoning chain")
    st.title("step-by-step reasoning")

    model_name = resolve_model(None, load_config())
    tokenizer, model = get_model(model_name)

    if "ui" not in st.session_state:
        st.session_state.ui = load_chat()

    with st.sidebar:
        st.caption(model_name)
        max_steps = st.slider("max steps", 1, 25, 25, 1)
        do_sample = st.toggle("Sampling", value=False)

        if st.button("Clear"):
            st.session_state.ui = []
            save_chat(st.session_state.ui)
            st.rerun()

    for m in st.session_state.ui:
        with st.chat_message(m["role"]):
            st.markdown(m["content"])

    user_text = st.chat_input("Type a message…")
    if user_text and user_text.strip():
        user_text = user_text.strip()
        st.session_state.ui.append({"role": "user", "content": user_text})
        save_chat(st.session_state.ui)
        with st.chat_message("user"):
            st.markdown(user_text)

        config = ReasoningConfig.from_env()
        config.max_steps = max_steps
        engine = ReasoningEngine(TransformersOracle(tokenizer, model, do_sample=do_sample), config)

        with st.chat_message("assistant"):
            placeholder = st.empty()
            with st.spinner("Thinking..."):
                for snapshot in engine.run_session(user_text):
                    answer = format_steps(snapshot)
                    placeholder.markdown(answer)
            answer += f"\n\n*Total thinking time: {snapshot.total_thinking_time:.2f} seconds*"
            placeholder.markdown(answer)

        st.session_state.ui.append({"role": "assistant", "content": answer})
        save_chat(st.session_state.ui)

if __name__ == "__main__":
    main()
