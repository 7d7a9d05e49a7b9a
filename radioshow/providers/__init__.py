"""Provider registry: map config names to collaborator adapters."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .xai import XAIChatGenerator, XAISpeechSynthesizer, XAITranscriber

if TYPE_CHECKING:
    from ..provider import ProviderConfig, SpeechSynthesizer, TextGenerator, Transcriber

GENERATORS: dict[str, type[Any]] = {
    "xai": XAIChatGenerator,
}

SYNTHESIZERS: dict[str, type[Any]] = {
    "xai": XAISpeechSynthesizer,
}

TRANSCRIBERS: dict[str, type[Any]] = {
    "xai": XAITranscriber,
}


def _lookup(registry: dict[str, type[Any]], kind: str, name: str) -> type[Any]:
    cls = registry.get(name)
    if cls is None:
        raise ValueError(f"Unknown {kind}: {name}. Available: {', '.join(registry)}")
    return cls


def get_generator(name: str, config: ProviderConfig) -> TextGenerator:
    """Instantiate a text generator by name."""
    return _lookup(GENERATORS, "generator", name)(config)  # type: ignore[no-any-return]


def get_synthesizer(name: str, config: ProviderConfig) -> SpeechSynthesizer:
    """Instantiate a speech synthesizer by name."""
    return _lookup(SYNTHESIZERS, "synthesizer", name)(config)  # type: ignore[no-any-return]


def get_transcriber(name: str, config: ProviderConfig) -> Transcriber | None:
    """Instantiate a transcriber by name; an empty name disables transcription."""
    if not name:
        return None
    return _lookup(TRANSCRIBERS, "transcriber", name)(config)  # type: ignore[no-any-return]
