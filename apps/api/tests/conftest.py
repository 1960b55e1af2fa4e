"""
Shared fixtures for the gateway tests.

No test talks to a real provider: every upstream call goes through an
httpx.MockTransport whose handler records the request and returns whatever
the test configured. The app itself is driven in-process through
httpx.ASGITransport.

How to run:
  pytest                              # everything
  pytest apps/api/tests/test_relay.py # single file
"""

from __future__ import annotations

import json
import os
from typing import AsyncIterator, Callable, Iterable, List, Optional

# main.py builds a module-level app at import time, which validates the
# default provider key; set it before anything imports main.
os.environ.setdefault("OPENROUTER_API_KEY", "sk-or-test")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import httpx
import pytest
import pytest_asyncio

from settings import Settings

DEFAULT_SELECTOR = "openrouter/mistralai/mistral-7b-instruct:free"


# ─────────────────────────────────────────────────────────────────────────────
# Upstream wire helpers
# ─────────────────────────────────────────────────────────────────────────────

def chat_chunk(text: str) -> str:
    """One OpenAI-style streaming chunk carrying `text` as its delta."""
    return json.dumps({"choices": [{"delta": {"content": text}}]})


def sse_body(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode("utf-8")


def chat_completion(text: str, model: str = "mistralai/mistral-7b-instruct:free") -> dict:
    return {
        "id": "gen-1",
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}}],
    }


def counting_stream(chunks: Iterable[bytes], reads: dict, fail_after: Optional[int] = None) -> AsyncIterator[bytes]:
    """Async body that counts how many chunks the consumer pulled."""
    async def gen():
        for i, chunk in enumerate(chunks):
            if fail_after is not None and i >= fail_after:
                raise httpx.ReadError("connection reset by peer")
            reads["n"] = reads.get("n", 0) + 1
            yield chunk
    return gen()


# ─────────────────────────────────────────────────────────────────────────────
# Upstream recorder
# ─────────────────────────────────────────────────────────────────────────────

class UpstreamRecorder:
    """MockTransport handler: records requests, answers with `self.handler`."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = (
            lambda request: httpx.Response(200, json=chat_completion("Hello from upstream"))
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> dict:
        return json.loads(self.last.content)


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()


@pytest.fixture
def transport(upstream) -> httpx.MockTransport:
    return httpx.MockTransport(upstream)


# ─────────────────────────────────────────────────────────────────────────────
# Settings / app / client
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_keys={
            "openrouter": "sk-or-test",
            "openai": "sk-openai-test",
            "gemini": "gemini-test-key",
            "deepseek": "sk-deepseek-test",
            "together": "together-test-key",
        },
        site_url="https://gateway.test",
        site_name="Gateway Tests",
        log_level="DEBUG",
    )


@pytest.fixture
def make_app(transport):
    """Factory: build an app for a given Settings, wired to the mock upstream."""
    from main import create_app

    def _build(settings: Settings):
        return create_app(settings, transport=transport)

    return _build


@pytest.fixture
def app(make_app, settings):
    return make_app(settings)


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
