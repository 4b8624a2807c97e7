import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

import llm_api
from conftest import ScriptedOracle, step_json
from llm_api import create_app, get_backend, get_engine


class FakeBackend:
    model_name = "org/tiny"

    def __init__(self, reply="Hello there", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def complete(self, messages, options):
        self.calls.append((messages, options))
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def backend():
    return FakeBackend()


def _client(backend, openai=False, engine=None):
    app = create_app(openai=openai)
    app.dependency_overrides[get_backend] = lambda: backend
    if engine is not None:
        app.dependency_overrides[get_engine] = lambda: engine
    return TestClient(app)


class TestCompletions:
    def test_completion(self, backend):
        response = _client(backend).post("/api/completions", json={"prompt": "Hi", "max_tokens": 32})
        assert response.status_code == 200
        data = response.json()
        assert data["id"].startswith("cmpl-")
        assert data["object"] == "text_completion"
        assert data["model"] == "org/tiny"
        assert data["choices"] == [{"text": "Hello there", "index": 0, "logprobs": None, "finish_reason": "stop"}]
        assert data["usage"] == {"prompt_tokens": 2, "completion_tokens": 11, "total_tokens": 13}

        messages, options = backend.calls[0]
        assert messages[0]["role"] == "system"
        assert messages[-1] == {"role": "user", "content": "Hi"}
        assert options.max_new_tokens == 32
        assert options.do_sample is False

    def test_default_max_tokens(self, backend, monkeypatch, tmp_path):
        monkeypatch.setenv("CHAT_CONFIG", str(tmp_path / "missing.toml"))
        _client(backend).post("/api/completions", json={"prompt": "Hi", "temperature": 0.7})
        _, options = backend.calls[0]
        assert options.max_new_tokens == 128
        assert options.do_sample is True

    def test_prompt_required(self, backend):
        response = _client(backend).post("/api/completions", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "Prompt is required."}

    def test_generation_failure(self):
        response = _client(FakeBackend(error=RuntimeError("boom"))).post("/api/completions", json={"prompt": "Hi"})
        assert response.status_code == 500
        assert response.json() == {"error": "Internal Server Error"}


class TestChat:
    def test_chat(self, backend):
        messages = [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "Hi"}]
        response = _client(backend).post("/api/chat", json={"messages": messages})
        assert response.status_code == 200
        assert response.json()["choices"][0]["text"] == "Hello there"
        assert backend.calls[0][0] == messages

    def test_messages_required(self, backend):
        response = _client(backend).post("/api/chat", json={"messages": []})
        assert response.status_code == 400
        assert response.json() == {"error": "Messages are required."}


def test_openai_routes(backend):
    client = _client(backend, openai=True)
    assert client.post("/v1/completions", json={"prompt": "Hi"}).status_code == 200
    assert client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "Hi"}]}).status_code == 200
    assert client.post("/api/completions", json={"prompt": "Hi"}).status_code == 404


def test_health(backend):
    response = _client(backend).get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestReason:
    def _engine(self, make_engine):
        return make_engine(ScriptedOracle(step_json("Compute", "2+2=4", "final_answer"), step_json("Answer", "4")))

    def test_reason(self, backend, make_engine):
        client = _client(backend, engine=self._engine(make_engine))
        response = client.post("/api/reason", json={"prompt": "What is 2+2?"})
        assert response.status_code == 200
        data = response.json()
        assert [s["title"] for s in data["steps"]] == ["Step 1: Compute", "Final Answer"]
        assert data["total_thinking_time"] == pytest.approx(1.0)

    def test_reason_stream(self, backend, make_engine):
        client = _client(backend, engine=self._engine(make_engine))
        response = client.post("/api/reason/stream", json={"prompt": "What is 2+2?"})
        assert response.status_code == 200
        lines = [json.loads(line) for line in response.text.splitlines() if line]
        assert len(lines) == 2
        assert lines[0]["total_thinking_time"] is None
        assert len(lines[1]["steps"]) == 2

    def test_blank_prompt(self, backend, make_engine):
        client = _client(backend, engine=self._engine(make_engine))
        assert client.post("/api/reason", json={"prompt": "   "}).status_code == 400
        assert client.post("/api/reason/stream", json={}).status_code == 400


def test_engine_uses_backend_oracle(monkeypatch):
    oracle = ScriptedOracle(step_json("a", "b"))

    class OracleBackend(FakeBackend):
        def oracle(self):
            return oracle

    monkeypatch.setenv("REASONING_MAX_STEPS", "7")
    engine = llm_api.get_engine(OracleBackend())
    assert engine.oracle is oracle
    assert engine.config.max_steps == 7


def test_model_loaded_once_under_concurrent_first_requests(monkeypatch, tmp_path):
    monkeypatch.setattr(llm_api, "_BACKEND", None)
    monkeypatch.setenv("CHAT_CONFIG", str(tmp_path / "missing.toml"))
    loads = []

    def slow_load(model_name, device):
        loads.append(model_name)
        time.sleep(0.05)
        return object(), object()

    monkeypatch.setattr(llm_api, "load", slow_load)
    results = []
    threads = [threading.Thread(target=lambda: results.append(get_backend())) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(loads) == 1
    assert len(results) == 8
    assert all(r is results[0] for r in results)
