"""Shared show state: conversation history, speaker pointer and speech units."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .audio import SAMPLE_RATE, duration_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Turn:
    """One entry of the shared history."""

    speaker_id: str
    text: str


@dataclass(frozen=True)
class SpeechUnit:
    """One synthesized sentence, ready to be played exactly once."""

    text: str
    audio: bytes
    duration_ms: float
    sentence_index: int
    is_final: bool = False

    @classmethod
    def from_audio(
        cls,
        text: str,
        audio: bytes,
        sentence_index: int,
        *,
        is_final: bool = False,
        sample_rate: int = SAMPLE_RATE,
    ) -> SpeechUnit:
        return cls(
            text=text,
            audio=audio,
            duration_ms=duration_ms(audio, sample_rate),
            sentence_index=sentence_index,
            is_final=is_final,
        )


class OnAirConflict(RuntimeError):
    """A second agent tried to speak while another one is on air."""


@dataclass
class ConversationSession:
    """State of one show, owned by the orchestrator and read by agents."""

    topic: str = ""
    history: list[Turn] = field(default_factory=list)
    speaker_index: int = 0
    on_air: str | None = None
    running: bool = False
    news: list[str] = field(default_factory=list)

    def record(self, speaker_id: str, text: str) -> Turn:
        turn = Turn(speaker_id=speaker_id, text=text)
        self.history.append(turn)
        return turn

    def recent(self, limit: int) -> list[Turn]:
        if limit <= 0:
            return []
        return self.history[-limit:]

    def history_with(self, pending: Turn, limit: int) -> list[Turn]:
        """History as it will look once ``pending`` has been said."""
        return [*self.recent(max(limit - 1, 0)), pending] if limit > 0 else []

    def go_on_air(self, agent_id: str) -> None:
        if self.on_air is not None and self.on_air != agent_id:
            raise OnAirConflict(f"{agent_id} cannot speak while {self.on_air} is on air")
        self.on_air = agent_id

    def go_off_air(self, agent_id: str) -> None:
        if self.on_air == agent_id:
            self.on_air = None

    def add_news(self, item: str) -> None:
        self.news.append(item)
        logger.info("News noted for later: %.80s", item)

    def news_context(self) -> str:
        if not self.news:
            return ""
        return "\n\nRecent news you might want to reference: " + "; ".join(self.news)
