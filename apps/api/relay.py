# relay.py
"""
Streaming relay between an upstream chat-completion stream and the client.

Two strategies over the same upstream handle:

  passthrough()  upstream bytes forwarded untouched (provider framing kept)
  reframed()     upstream SSE lines parsed, deltas re-emitted as
                 `data: {"content": ...}` events, always closed by `data: [DONE]`

Whatever happens first (upstream [DONE], upstream EOF, upstream error, client
going away) becomes the relay's single outcome. Later transitions are ignored,
so the client never sees two terminal events, and the upstream response is
closed on every path.
"""
import asyncio
import codecs
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from errors import GatewayError, UpstreamError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DONE_EVENT = "data: [DONE]\n\n"

DeltaParser = Callable[[Dict[str, Any]], Optional[str]]
DisconnectProbe = Callable[[], Awaitable[bool]]

DISCONNECT_POLL_SECONDS = 0.1


def sse(payload: Dict[str, Any]) -> str:
    return "data: " + json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n\n"


def content_event(delta: str) -> str:
    return sse({"content": delta})


def short_error_message(err: str) -> str:
    s = (err or "").strip()
    first = s.splitlines()[0] if s else "Unknown error"
    return (first[:140] + "…") if len(first) > 140 else first


def upstream_error_message(error: Any) -> str:
    """Best-effort text for an `error` object found in a provider body."""
    if isinstance(error, dict):
        msg = error.get("message") or error.get("status") or error.get("code")
        if msg:
            return str(msg)
        return json.dumps(error, ensure_ascii=False)
    return str(error)


@dataclass
class UpstreamStream:
    """An open upstream response plus the provider's delta extractor."""

    response: httpx.Response
    extract_delta: DeltaParser
    client: Optional[httpx.AsyncClient] = None
    provider: str = ""

    async def aclose(self) -> None:
        try:
            await self.response.aclose()
        finally:
            if self.client is not None:
                await self.client.aclose()


class RelayOutcome(str, Enum):
    COMPLETED = "completed"
    UPSTREAM_ENDED = "upstream_ended"
    UPSTREAM_ERROR = "upstream_error"
    CLIENT_DISCONNECTED = "client_disconnected"


class _ClientGone(Exception):
    pass


class SSELineDecoder:
    """
    Incremental bytes -> `data:` payloads.

    Bytes are decoded with an incremental UTF-8 decoder so a multi-byte
    character split across two reads comes out whole. Partial lines stay
    buffered until their newline arrives. Anything that isn't a `data:` line
    (comments, `event:`, blank separators) is dropped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._payloads(lines)

    def flush(self) -> List[str]:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._payloads([rest])

    @staticmethod
    def _payloads(lines: List[str]) -> List[str]:
        out: List[str] = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if payload:
                out.append(payload)
        return out


class StreamRelay:
    def __init__(
        self,
        upstream: UpstreamStream,
        cancel: Optional[asyncio.Event] = None,
        is_disconnected: Optional[DisconnectProbe] = None,
    ):
        self.upstream = upstream
        self._cancel = cancel or asyncio.Event()
        self._is_disconnected = is_disconnected
        self._watcher: Optional[asyncio.Task] = None
        self.outcome: Optional[RelayOutcome] = None
        self.chunks_read = 0

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def cancel(self) -> None:
        """Signal that the client is gone; no further upstream reads or client writes."""
        self._cancel.set()

    def _finish(self, outcome: RelayOutcome) -> bool:
        if self.outcome is not None:
            return False
        self.outcome = outcome
        logger.info(
            "[relay] %s stream finished: %s (%d chunks read)",
            self.upstream.provider or "upstream", outcome.value, self.chunks_read,
        )
        return True

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise _ClientGone()

    async def _watch_client(self, is_disconnected: DisconnectProbe) -> None:
        # ASGI 2.4 servers report a disconnect only through a failed send
        while not self.finished and not self._cancel.is_set():
            if await is_disconnected():
                logger.info("[relay] client disconnected, stopping upstream reads")
                self.cancel()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    def _start_watcher(self) -> None:
        if self._is_disconnected is not None and self._watcher is None:
            self._watcher = asyncio.create_task(self._watch_client(self._is_disconnected))

    async def _close(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
        await self.upstream.aclose()

    async def _read_chunks(self) -> AsyncIterator[bytes]:
        chunks = self.upstream.response.aiter_bytes()
        while True:
            self._check_cancelled()
            try:
                chunk = await chunks.__anext__()
            except StopAsyncIteration:
                return
            self.chunks_read += 1
            yield chunk

    async def _payloads(self) -> AsyncIterator[str]:
        decoder = SSELineDecoder()
        async with aclosing(self._read_chunks()) as chunks:
            async for chunk in chunks:
                for payload in decoder.feed(chunk):
                    yield payload
        for payload in decoder.flush():
            yield payload

    def _parse_payload(self, payload: str) -> Optional[str]:
        try:
            obj = json.loads(payload)
        except ValueError:
            logger.debug("[relay] skipping malformed line: %r", payload[:200])
            return None
        if not isinstance(obj, dict):
            return None
        if obj.get("error"):
            raise UpstreamError(upstream_error_message(obj["error"]))
        return self.upstream.extract_delta(obj)

    async def reframed(self) -> AsyncIterator[str]:
        saw_done = False
        try:
            self._start_watcher()
            async with aclosing(self._payloads()) as payloads:
                async for payload in payloads:
                    if payload == DONE_SENTINEL:
                        saw_done = True
                        break
                    delta = self._parse_payload(payload)
                    if not delta:
                        continue
                    self._check_cancelled()
                    yield content_event(delta)

            self._check_cancelled()
            if self._finish(RelayOutcome.COMPLETED if saw_done else RelayOutcome.UPSTREAM_ENDED):
                yield DONE_EVENT

        except _ClientGone:
            self._finish(RelayOutcome.CLIENT_DISCONNECTED)

        except Exception as e:
            if isinstance(e, GatewayError):
                message = e.message
                logger.warning("[relay] upstream error mid-stream: %s", message)
            elif isinstance(e, httpx.HTTPError):
                message = f"{type(e).__name__}: {e}"
                logger.warning("[relay] upstream read failed: %s", message)
            else:
                message = f"{type(e).__name__}: {e}"
                logger.exception("[relay] unexpected relay failure")

            if self._finish(RelayOutcome.UPSTREAM_ERROR):
                yield content_event(f"[ERROR] {short_error_message(message)}")
                yield DONE_EVENT

        finally:
            # reached without an outcome only when the server closed us (client disconnect)
            self._finish(RelayOutcome.CLIENT_DISCONNECTED)
            await self._close()

    async def passthrough(self) -> AsyncIterator[bytes]:
        try:
            self._start_watcher()
            async with aclosing(self._read_chunks()) as chunks:
                async for chunk in chunks:
                    self._check_cancelled()
                    yield chunk
            self._finish(RelayOutcome.UPSTREAM_ENDED)

        except _ClientGone:
            self._finish(RelayOutcome.CLIENT_DISCONNECTED)

        except httpx.HTTPError as e:
            # native framing can't carry an error event; ending the body is the signal
            logger.warning("[relay] upstream read failed: %s: %s", type(e).__name__, e)
            self._finish(RelayOutcome.UPSTREAM_ERROR)

        finally:
            self._finish(RelayOutcome.CLIENT_DISCONNECTED)
            await self._close()
