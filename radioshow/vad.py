"""Energy-based voice activity detection with start/end hysteresis."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .audio import PHONE_SAMPLE_RATE, SAMPLE_WIDTH, rms

logger = logging.getLogger(__name__)


class VadState(str, Enum):
    SILENCE = "silence"
    SPEECH_STARTING = "speech_starting"
    SPEAKING = "speaking"
    SPEECH_ENDING = "speech_ending"


@dataclass
class VadConfig:
    threshold: float = 500.0
    start_frames: int = 3
    end_frames: int = 25
    min_speech_ms: float = 500.0
    sample_rate: int = PHONE_SAMPLE_RATE


@dataclass(frozen=True)
class SpeechStarted:
    """Emitted on the frame that confirms speech onset."""


@dataclass(frozen=True)
class SpeechEnded:
    """A completed segment long enough to be worth transcribing."""

    audio: bytes
    duration_ms: float


@dataclass(frozen=True)
class SpeechDiscarded:
    """A completed segment too short to be speech."""

    duration_ms: float


VadEvent = SpeechStarted | SpeechEnded | SpeechDiscarded


class VoiceActivityDetector:
    """Classifies a stream of frames into speech segments.

    Speech starts after ``start_frames`` consecutive frames above
    ``threshold`` and ends after ``end_frames`` consecutive frames below it.
    The buffered segment includes the onset frames; its length is measured up
    to the last loud frame, so the trailing silence never counts toward
    ``min_speech_ms``.
    """

    def __init__(self, config: VadConfig | None = None) -> None:
        self.config = config or VadConfig()
        self.reset()

    def reset(self) -> None:
        self.state = VadState.SILENCE
        self.speech_frames = 0
        self.silence_frames = 0
        self._buffer = bytearray()
        self._voiced_bytes = 0

    @property
    def speaking(self) -> bool:
        return self.state in (VadState.SPEAKING, VadState.SPEECH_ENDING)

    def process(self, frame: bytes) -> VadEvent | None:
        """Feed one PCM16 frame at ``config.sample_rate``."""
        return self.update(rms(frame), frame)

    def update(self, level: float, frame: bytes = b"") -> VadEvent | None:
        """Feed one frame's RMS level (and optionally its samples)."""
        loud = level > self.config.threshold
        if loud:
            self.speech_frames += 1
            self.silence_frames = 0
        else:
            self.silence_frames += 1
            self.speech_frames = 0

        if self.state is VadState.SILENCE:
            if loud:
                self._buffer = bytearray(frame)
                self._voiced_bytes = len(self._buffer)
                self.state = VadState.SPEECH_STARTING
                return self._maybe_start()
            return None

        if self.state is VadState.SPEECH_STARTING:
            if not loud:
                self.reset()
                return None
            self._buffer.extend(frame)
            self._voiced_bytes = len(self._buffer)
            return self._maybe_start()

        self._buffer.extend(frame)
        if loud:
            self._voiced_bytes = len(self._buffer)
            self.state = VadState.SPEAKING
            return None

        self.state = VadState.SPEECH_ENDING
        if self.silence_frames < self.config.end_frames:
            return None
        return self._finish()

    def _maybe_start(self) -> SpeechStarted | None:
        if self.speech_frames < self.config.start_frames:
            return None
        self.state = VadState.SPEAKING
        logger.debug("Speech started")
        return SpeechStarted()

    def _finish(self) -> SpeechEnded | SpeechDiscarded:
        audio = bytes(self._buffer[: self._voiced_bytes])
        samples = self._voiced_bytes // SAMPLE_WIDTH
        length_ms = samples / self.config.sample_rate * 1000.0
        self.reset()
        if length_ms < self.config.min_speech_ms:
            logger.debug("Discarded %.0fms blip", length_ms)
            return SpeechDiscarded(duration_ms=length_ms)
        return SpeechEnded(audio=audio, duration_ms=length_ms)
