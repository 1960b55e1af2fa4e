# clients.py
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx
import openai
from openai import AsyncOpenAI

from errors import UpstreamError, ValidationError
from relay import UpstreamStream, upstream_error_message
from settings import Settings

logger = logging.getLogger(__name__)

BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com",
    "together": "https://api.together.xyz/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}

# bare selectors (no "provider/" prefix) that imply an adapter
BARE_MODEL_PREFIXES = [
    ("dall-e", "dalle"),
    ("gpt-", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("gemini-", "gemini"),
    ("deepseek-", "deepseek"),
]


@dataclass
class ProviderReply:
    text: str
    model_id: str
    image_url: Optional[str] = None


def _extract_delta_text(delta_obj: Any) -> Optional[str]:
    if not isinstance(delta_obj, dict):
        return None

    c = delta_obj.get("content")
    if isinstance(c, str) and c:
        return c

    t = delta_obj.get("text")
    if isinstance(t, str) and t:
        return t

    if isinstance(c, list):
        out = [part["text"] for part in c if isinstance(part, dict) and isinstance(part.get("text"), str)]
        joined = "".join(out)
        return joined or None

    return None


class ProviderAdapter:
    """
    One upstream provider: where to send, how to authenticate, what the JSON
    looks like on the way out and on the way back.
    """

    name = ""
    credential = ""
    supports_streaming = True
    # image generation must see the prompt exactly as the user typed it
    uses_original_prompt = False

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def api_key(self) -> str:
        return self.settings.require_key(self.credential or self.name)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self.settings.upstream_timeout),
        )

    # --- provider specifics -------------------------------------------------

    def endpoint(self, model_id: str, streaming: bool) -> str:
        raise NotImplementedError

    def headers(self, api_key: str) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def params(self, api_key: str, streaming: bool) -> Dict[str, str]:
        return {}

    def build_payload(self, prompt: str, model_id: str, streaming: bool) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_text(self, body: Dict[str, Any]) -> str:
        raise NotImplementedError

    def extract_delta(self, obj: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    # --- contract -------------------------------------------------------------

    async def invoke(
        self, prompt: str, model_id: str, streaming: bool = False
    ) -> Union[ProviderReply, UpstreamStream]:
        if streaming:
            if not self.supports_streaming:
                raise ValidationError(f"Model '{self.name}/{model_id}' does not support streaming")
            return await self.stream(prompt, model_id)
        return await self.complete(prompt, model_id)

    def build_request(self, client: httpx.AsyncClient, api_key: str, prompt: str, model_id: str, streaming: bool) -> httpx.Request:
        return client.build_request(
            "POST",
            self.endpoint(model_id, streaming),
            params=self.params(api_key, streaming),
            headers=self.headers(api_key),
            json=self.build_payload(prompt, model_id, streaming),
        )

    async def complete(self, prompt: str, model_id: str) -> ProviderReply:
        api_key = self.api_key()
        logger.info("[%s] request model=%s stream=false prompt=%dch", self.name, model_id, len(prompt))

        async with self.http_client() as client:
            request = self.build_request(client, api_key, prompt, model_id, streaming=False)
            try:
                resp = await client.send(request)
            except httpx.HTTPError as e:
                raise UpstreamError(f"{self.name} request failed: {type(e).__name__}: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            detail = upstream_error_message(body["error"]) if isinstance(body, dict) and body.get("error") else resp.text
            raise UpstreamError(
                f"{self.name} API error: {resp.status_code} - {detail[:500]}",
                upstream_status=resp.status_code,
            )
        if not isinstance(body, dict):
            raise UpstreamError(f"{self.name} returned a non-JSON body", upstream_status=resp.status_code)
        if body.get("error"):
            raise UpstreamError(f"{self.name} API error: {upstream_error_message(body['error'])}")

        try:
            text = self.extract_text(body)
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamError(f"{self.name} returned an unexpected response shape") from e
        if not isinstance(text, str):
            raise UpstreamError(f"{self.name} returned no text content")

        return ProviderReply(text=text, model_id=body.get("model") or model_id)

    async def stream(self, prompt: str, model_id: str) -> UpstreamStream:
        api_key = self.api_key()
        logger.info("[%s] request model=%s stream=true prompt=%dch", self.name, model_id, len(prompt))

        client = self.http_client()
        try:
            request = self.build_request(client, api_key, prompt, model_id, streaming=True)
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise UpstreamError(f"{self.name} request failed: {type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            try:
                detail = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
                await client.aclose()
            raise UpstreamError(
                f"{self.name} API error: {response.status_code} - {detail[:500]}",
                upstream_status=response.status_code,
            )

        return UpstreamStream(
            response=response,
            extract_delta=self.extract_delta,
            client=client,
            provider=self.name,
        )


class ChatCompletionsAdapter(ProviderAdapter):
    """OpenAI-compatible `/chat/completions` providers."""

    def endpoint(self, model_id: str, streaming: bool) -> str:
        return f"{BASE_URLS[self.name]}/chat/completions"

    def headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, prompt: str, model_id: str, streaming: bool) -> Dict[str, Any]:
        return {
            "model": model_id,
            "messages": [{"role": "user", "content": prompt}],
            "stream": streaming,
        }

    def extract_text(self, body: Dict[str, Any]) -> str:
        return body["choices"][0]["message"]["content"]

    def extract_delta(self, obj: Dict[str, Any]) -> Optional[str]:
        choices = obj.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        return _extract_delta_text(choices[0].get("delta"))


class OpenAIAdapter(ChatCompletionsAdapter):
    name = "openai"


class DeepSeekAdapter(ChatCompletionsAdapter):
    name = "deepseek"


class TogetherAdapter(ChatCompletionsAdapter):
    name = "together"


class OpenRouterAdapter(ChatCompletionsAdapter):
    name = "openrouter"

    def headers(self, api_key: str) -> Dict[str, str]:
        h = super().headers(api_key)
        # attribution headers, recommended by OpenRouter
        h["HTTP-Referer"] = self.settings.site_url
        h["X-Title"] = self.settings.site_name
        return h


class GeminiAdapter(ProviderAdapter):
    name = "gemini"

    def endpoint(self, model_id: str, streaming: bool) -> str:
        model = model_id if model_id.startswith("models/") else f"models/{model_id}"
        action = "streamGenerateContent" if streaming else "generateContent"
        return f"{BASE_URLS['gemini']}/{model}:{action}"

    def params(self, api_key: str, streaming: bool) -> Dict[str, str]:
        p = {"key": api_key}
        if streaming:
            p["alt"] = "sse"
        return p

    def build_payload(self, prompt: str, model_id: str, streaming: bool) -> Dict[str, Any]:
        return {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}

    def extract_text(self, body: Dict[str, Any]) -> str:
        return body["candidates"][0]["content"]["parts"][0]["text"]

    def extract_delta(self, obj: Dict[str, Any]) -> Optional[str]:
        candidates = obj.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        joined = "".join(p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))
        return joined or None


class DalleAdapter(ProviderAdapter):
    """Image generation through the OpenAI images API. Replies with a URL, never streams."""

    name = "dalle"
    credential = "openai"
    supports_streaming = False
    uses_original_prompt = True

    image_size = "1024x1024"

    async def complete(self, prompt: str, model_id: str) -> ProviderReply:
        api_key = self.api_key()
        logger.info("[%s] image request model=%s prompt=%dch", self.name, model_id, len(prompt))

        async with self.http_client() as http_client:
            client = AsyncOpenAI(
                api_key=api_key,
                http_client=http_client,
                max_retries=0,
                timeout=self.settings.upstream_timeout,
            )
            try:
                result = await client.images.generate(
                    model=model_id,
                    prompt=prompt,
                    n=1,
                    size=self.image_size,
                )
            except openai.APIStatusError as e:
                raise UpstreamError(
                    f"{self.name} API error: {e.status_code} - {e.message}",
                    upstream_status=e.status_code,
                ) from e
            except openai.APIError as e:
                raise UpstreamError(f"{self.name} request failed: {type(e).__name__}: {e}") from e

        url = result.data[0].url if result.data else None
        if not url:
            raise UpstreamError(f"{self.name} returned no image URL")
        return ProviderReply(text="", model_id=model_id, image_url=url)


ADAPTER_CLASSES = [
    OpenAIAdapter,
    GeminiAdapter,
    DeepSeekAdapter,
    TogetherAdapter,
    OpenRouterAdapter,
    DalleAdapter,
]


@dataclass
class Resolution:
    adapter: ProviderAdapter
    model_id: str
    fallback: bool = False

    @property
    def selector(self) -> str:
        return f"{self.adapter.name}/{self.model_id}"


class ProviderRegistry:
    """
    Maps a client `model` selector onto an adapter and an upstream model name.

      "openrouter/deepseek/deepseek-chat" -> openrouter, "deepseek/deepseek-chat"
      "gpt-4o-mini"                       -> openai, "gpt-4o-mini"
      "" / None                           -> the configured default pair
      anything unrecognized               -> the default pair, logged as a fallback
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._adapters: Dict[str, ProviderAdapter] = {}
        for cls in ADAPTER_CLASSES:
            self.register(cls(settings, transport=transport))

        provider, _, model_id = settings.default_model.partition("/")
        self.default_provider = provider.strip().lower()
        self.default_model_id = model_id.strip()

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._adapters)

    @property
    def default_selector(self) -> str:
        return f"{self.default_provider}/{self.default_model_id}"

    def default(self, fallback: bool = False) -> Resolution:
        return Resolution(self._adapters[self.default_provider], self.default_model_id, fallback=fallback)

    def resolve(self, selector: Optional[str]) -> Resolution:
        s = (selector or "").strip()
        if not s:
            return self.default()

        if "/" in s:
            head, _, rest = s.partition("/")
            adapter = self._adapters.get(head.strip().lower())
            if adapter is not None and rest.strip():
                return Resolution(adapter, rest.strip())
        else:
            lowered = s.lower()
            for prefix, name in BARE_MODEL_PREFIXES:
                if lowered.startswith(prefix) and name in self._adapters:
                    return Resolution(self._adapters[name], s)

        logger.warning(
            "[registry] unrecognized model selector %r, falling back to %s",
            s, self.default_selector,
        )
        return self.default(fallback=True)
