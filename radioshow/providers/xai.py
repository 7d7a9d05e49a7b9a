"""xAI adapters: chat completions over HTTP, speech and transcription over WebSocket."""

import asyncio
import base64
import json
import logging
from collections.abc import Sequence
from typing import Any

import aiohttp
import websockets

from ..audio import upsample_cubic
from ..errors import CollaboratorError, RateLimitError, TransientError
from ..provider import ProviderConfig
from ..session import Turn

logger = logging.getLogger(__name__)

XAI_BASE_URL = "https://api.x.ai/v1"
TRANSCRIBE_SAMPLE_RATE = 16000
TRANSCRIBE_CHUNK_BYTES = 3200
RATE_LIMIT_BACKOFF = 2.0


def _ws_base(config: ProviderConfig) -> str:
    base = (config.base_url or XAI_BASE_URL).rstrip("/")
    return base.replace("https://", "wss://").replace("http://", "ws://")


def _auth_headers(config: ProviderConfig) -> dict[str, str]:
    return {"Authorization": f"Bearer {config.api_key}"}


def _closed_error(exc: websockets.ConnectionClosed, what: str) -> CollaboratorError:
    # No close frame (1006) is how the realtime endpoints signal throttling.
    if exc.rcvd is None:
        return RateLimitError(f"{what}: connection dropped (1006)", retry_after=RATE_LIMIT_BACKOFF)
    return TransientError(f"{what}: connection closed ({exc.rcvd.code})")


def format_history(history: Sequence[Turn]) -> str:
    return "\n".join(f"{turn.speaker_id}: {turn.text}" for turn in history)


class XAIChatGenerator:
    """TextGenerator backed by the chat-completions endpoint."""

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self.model = config.model or "grok-3"
        self.temperature = float(config.extra.get("temperature", 0.7))
        self.max_tokens = int(config.extra.get("max_tokens", 1024))
        self._session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def generate(self, system_prompt: str, history: Sequence[Turn], user_prompt: str) -> str:
        context = format_history(history)
        content = f"Conversation so far:\n{context}\n\n{user_prompt}" if context else user_prompt
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }
        url = f"{(self.config.base_url or XAI_BASE_URL).rstrip('/')}/chat/completions"
        session = await self._ensure_session()
        try:
            async with session.post(url, json=payload, headers=_auth_headers(self.config)) as resp:
                if resp.status == 429:
                    retry_after = resp.headers.get("Retry-After")
                    raise RateLimitError(
                        "chat completions rate limited",
                        retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                    )
                if resp.status >= 500:
                    raise TransientError(f"chat completions HTTP {resp.status}")
                if resp.status >= 400:
                    body = await resp.text()
                    raise CollaboratorError(f"chat completions HTTP {resp.status}: {body[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as exc:
            raise TransientError(f"chat completions request failed: {exc}") from exc

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise CollaboratorError(f"unexpected chat completions response: {exc}") from exc


class XAISpeechSynthesizer:
    """SpeechSynthesizer backed by the realtime speech WebSocket."""

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self.url = f"{_ws_base(config)}/realtime/audio/speech"

    async def synthesize(self, text: str, voice: str) -> bytes:
        chunks: list[bytes] = []
        try:
            async with websockets.connect(self.url, additional_headers=_auth_headers(self.config)) as ws:
                await ws.send(json.dumps({"type": "config", "data": {"voice_id": voice}}))
                await ws.send(json.dumps({"type": "text_chunk", "data": {"text": text, "is_last": True}}))
                async for raw in ws:
                    message = json.loads(raw)
                    data = (message.get("data") or {}).get("data") or {}
                    if data.get("audio"):
                        chunks.append(base64.b64decode(data["audio"]))
                    if data.get("is_last"):
                        break
        except websockets.ConnectionClosed as exc:
            raise _closed_error(exc, "speech") from exc
        except OSError as exc:
            raise TransientError(f"speech connection failed: {exc}") from exc

        audio = b"".join(chunks)
        logger.debug("Synthesized %d bytes for voice %s", len(audio), voice)
        return audio


class XAITranscriber:
    """Transcriber backed by the realtime transcription WebSocket."""

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self.url = f"{_ws_base(config)}/realtime/audio/transcriptions"
        self.response_timeout = float(config.extra.get("response_timeout", 5.0))

    async def transcribe(self, pcm: bytes, sample_rate: int) -> str:
        if sample_rate != TRANSCRIBE_SAMPLE_RATE:
            factor = max(TRANSCRIBE_SAMPLE_RATE // sample_rate, 1)
            pcm, _ = upsample_cubic(pcm, factor)

        parts: list[str] = []
        try:
            async with websockets.connect(self.url, additional_headers=_auth_headers(self.config)) as ws:
                await ws.send(json.dumps({
                    "type": "config",
                    "data": {
                        "encoding": "linear16",
                        "sample_rate_hertz": TRANSCRIBE_SAMPLE_RATE,
                        "enable_interim_results": False,
                    },
                }))
                for offset in range(0, len(pcm), TRANSCRIBE_CHUNK_BYTES):
                    chunk = pcm[offset : offset + TRANSCRIBE_CHUNK_BYTES]
                    await ws.send(json.dumps({
                        "type": "audio",
                        "data": {"audio": base64.b64encode(chunk).decode("ascii")},
                    }))
                await ws.send(json.dumps({"type": "audio_end"}))
                try:
                    await asyncio.wait_for(self._collect(ws, parts), self.response_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Transcription timed out after %.1fs", self.response_timeout)
        except websockets.ConnectionClosed as exc:
            if not parts:
                raise _closed_error(exc, "transcription") from exc
        except OSError as exc:
            raise TransientError(f"transcription connection failed: {exc}") from exc

        return " ".join(parts).strip()

    @staticmethod
    async def _collect(ws: Any, parts: list[str]) -> None:
        async for raw in ws:
            message = json.loads(raw)
            data = message.get("data") or {}
            if data.get("type") != "speech_recognized":
                continue
            result = data.get("data") or {}
            transcript = (result.get("transcript") or "").strip()
            if transcript:
                parts.append(transcript)
            if result.get("is_final"):
                return
