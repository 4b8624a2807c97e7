import json
import logging
import os
import threading
import time
import uuid
from typing import List, Optional

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from chat_core import GenerationOptions, TransformersOracle, generate, init_history, load
from reasoning import ReasoningConfig, ReasoningEngine, run_to_completion, snapshot_to_dict
from settings import get_device, load_config, resolve_model

logger = logging.getLogger(__name__)


class Backend:
    """The loaded model, shared by every request."""

    def __init__(self, model_name, tokenizer, model):
        self.model_name = model_name
        self.tokenizer = tokenizer
        self.model = model

    def complete(self, messages, options: GenerationOptions) -> str:
        return generate(self.tokenizer, self.model, messages, options)

    def oracle(self):
        return TransformersOracle(self.tokenizer, self.model)


_BACKEND = None
_BACKEND_LOCK = threading.Lock()


def get_backend() -> Backend:
    """Load the model on first use; concurrent first requests wait for the same load."""
    global _BACKEND
    with _BACKEND_LOCK:
        if _BACKEND is None:
            model_name = resolve_model(None, load_config())
            print(f"🔻 Loading {model_name}...")
            tokenizer, model = load(model_name, get_device())
            print("✅ Model loaded!")
            _BACKEND = Backend(model_name, tokenizer, model)
    return _BACKEND


def get_engine(backend: Backend = Depends(get_backend)) -> ReasoningEngine:
    return ReasoningEngine(backend.oracle(), ReasoningConfig.from_env())


class Message(BaseModel):
    role: str
    content: str


class CompletionQuery(BaseModel):
    prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: float = 1.0
    top_p: float = 1.0


class ChatQuery(BaseModel):
    messages: Optional[List[Message]] = None
    max_tokens: Optional[int] = None
    temperature: float = 1.0
    top_p: float = 1.0


class ReasonQuery(BaseModel):
    prompt: Optional[str] = None


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def _options(q) -> GenerationOptions:
    return GenerationOptions(
        max_new_tokens=q.max_tokens or load_config().max_new_tokens,
        temperature=q.temperature,
        top_p=q.top_p,
        do_sample=q.temperature != 1.0 or q.top_p != 1.0,
    )


def _completion(model_name: str, prompt_chars: int, text: str) -> dict:
    # Usage counts characters, not tokens.
    return {
        "id": f"cmpl-{uuid.uuid4()}",
        "object": "text_completion",
        "created": int(time.time()),
        "model": model_name,
        "choices": [{"text": text, "index": 0, "logprobs": None, "finish_reason": "stop"}],
        "usage": {
            "prompt_tokens": prompt_chars,
            "completion_tokens": len(text),
            "total_tokens": prompt_chars + len(text),
        },
    }


def create_app(openai: Optional[bool] = None) -> FastAPI:
    if openai is None:
        openai = os.getenv("LLM_API_OPENAI", "") not in ("", "0", "false")
    completions_path = "/v1/completions" if openai else "/api/completions"
    chat_path = "/v1/chat/completions" if openai else "/api/chat"

    app = FastAPI(title="llm-reasoning API")

    @app.get("/api/health")
    def health():
        return {"status": "healthy", "model": resolve_model(None, load_config())}

    @app.post(completions_path)
    def completions(q: CompletionQuery, backend: Backend = Depends(get_backend)):
        if not q.prompt:
            return _error(400, "Prompt is required.")
        try:
            messages = init_history(load_config().system_prompt) + [{"role": "user", "content": q.prompt}]
            text = backend.complete(messages, _options(q))
        except Exception as exc:
            logger.error(f"completions: error processing request: {type(exc).__name__}: {exc}")
            return _error(500, "Internal Server Error")
        return _completion(backend.model_name, len(q.prompt), text)

    @app.post(chat_path)
    def chat_completions(q: ChatQuery, backend: Backend = Depends(get_backend)):
        if not q.messages:
            return _error(400, "Messages are required.")
        try:
            messages = [m.model_dump() for m in q.messages]
            text = backend.complete(messages, _options(q))
        except Exception as exc:
            logger.error(f"chat_completions: error processing request: {type(exc).__name__}: {exc}")
            return _error(500, "Internal Server Error")
        prompt_chars = sum(len(m["content"]) for m in messages)
        return _completion(backend.model_name, prompt_chars, text)

    @app.post("/api/reason")
    def reason(q: ReasonQuery, engine: ReasoningEngine = Depends(get_engine)):
        if not q.prompt or not q.prompt.strip():
            return _error(400, "Prompt is required.")
        return snapshot_to_dict(run_to_completion(engine, q.prompt.strip()))

    @app.post("/api/reason/stream")
    def reason_stream(q: ReasonQuery, engine: ReasoningEngine = Depends(get_engine)):
        if not q.prompt or not q.prompt.strip():
            return _error(400, "Prompt is required.")

        def lines():
            for snapshot in engine.run_session(q.prompt.strip()):
                yield json.dumps(snapshot_to_dict(snapshot), ensure_ascii=False) + "\n"

        return StreamingResponse(lines(), media_type="application/x-ndjson")

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=os.getenv("LLM_API_HOST", "0.0.0.0"), port=int(os.getenv("LLM_API_PORT", "8000")))
