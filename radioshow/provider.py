"""Collaborator protocols: text generation, speech synthesis, transcription, overlay."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .session import Turn


@dataclass
class ProviderConfig:
    """Configuration passed to a collaborator adapter on construction."""

    api_key: str = ""
    base_url: str = ""
    model: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class TextGenerator(Protocol):
    """Produces one persona's next line of dialogue."""

    async def generate(self, system_prompt: str, history: Sequence[Turn], user_prompt: str) -> str:
        """Return generated text. Raise TransientError/RateLimitError on retryable failures."""
        ...


@runtime_checkable
class SpeechSynthesizer(Protocol):
    """Turns text into PCM16 mono 24 kHz audio."""

    async def synthesize(self, text: str, voice: str) -> bytes:
        """Return raw PCM16 little-endian samples."""
        ...


@runtime_checkable
class Transcriber(Protocol):
    """Turns caller speech into text."""

    async def transcribe(self, pcm: bytes, sample_rate: int) -> str:
        """Return the transcript, or an empty string if nothing was understood."""
        ...


@runtime_checkable
class Overlay(Protocol):
    """Shows visual context on the stream (trend tweets, captions)."""

    async def show(self, text: str, duration_s: float) -> None:
        """Display ``text`` for ``duration_s`` seconds."""
        ...
