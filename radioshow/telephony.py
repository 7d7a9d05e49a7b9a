"""Telephony bridge: phone calls in and out of the show's audio domain.

Each call is a :class:`CallSession`. Outbound it is a queued sink that turns
24 kHz PCM into 8 kHz mu-law media events (with keep-alive silence so the
carrier never runs dry). Inbound it decodes caller frames and runs its own
voice-activity detector. :class:`TelephonyBridge` registers once on the bus,
fans show audio out to every live call, and turns caller speech into
interrupt signals.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .audio import PHONE_SAMPLE_RATE, caller_to_show, show_to_caller, ulaw_to_pcm16
from .bus import AudioBus
from .errors import SinkWriteFailure, TelephonyCodecFailure
from .provider import Transcriber
from .signals import InterruptQueue, SignalSource
from .sinks import StreamSink
from .vad import SpeechDiscarded, SpeechEnded, SpeechStarted, VadConfig, VadEvent, VoiceActivityDetector

logger = logging.getLogger(__name__)

SendEvent = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class TelephonyConfig:
    vad: VadConfig = field(default_factory=VadConfig)
    caller_gain: float = 1.5
    keepalive_ms: float = 100.0
    frame_ms: float = 20.0
    max_codec_failures: int = 10
    max_call_duration: float = 300.0


class CallSession(StreamSink):
    """One live call: outbound sink plus inbound decoder and VAD."""

    def __init__(
        self,
        stream_id: str,
        send: SendEvent,
        *,
        call_id: str | None = None,
        caller: str = "Unknown",
        config: TelephonyConfig | None = None,
    ) -> None:
        self.config = config or TelephonyConfig()
        super().__init__(f"call:{stream_id}", keepalive_ms=self.config.keepalive_ms)
        self.stream_id = stream_id
        self.call_id = call_id
        self.caller = caller
        self.vad = VoiceActivityDetector(self.config.vad)
        self.codec_failures = 0
        self.started_at = time.monotonic()
        self._send_event = send
        self._phase = 0
        self._upsample_state: tuple[float, ...] | None = None
        self._chunk_bytes = max(int(PHONE_SAMPLE_RATE * self.config.frame_ms / 1000), 1)

    @property
    def expired(self) -> bool:
        return time.monotonic() - self.started_at > self.config.max_call_duration

    async def _send(self, frame: bytes) -> None:
        payload, self._phase = show_to_caller(frame, self._phase)
        for offset in range(0, len(payload), self._chunk_bytes):
            chunk = payload[offset : offset + self._chunk_bytes]
            await self._send_event({
                "event": "media",
                "streamSid": self.stream_id,
                "media": {"payload": base64.b64encode(chunk).decode("ascii")},
            })

    async def _flush(self) -> None:
        await self._send_event({"event": "clear", "streamSid": self.stream_id})

    def decode(self, payload: str) -> bytes:
        """Base64 mu-law payload to 8 kHz PCM16."""
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise TelephonyCodecFailure(f"bad media payload: {exc}") from exc
        if not data:
            raise TelephonyCodecFailure("empty media payload")
        return ulaw_to_pcm16(data)

    def receive(self, payload: str) -> tuple[VadEvent | None, bytes | None]:
        """Process one inbound frame.

        Returns the VAD event (if any) and the frame converted for the bus
        while the caller is speaking.
        """
        try:
            pcm = self.decode(payload)
        except TelephonyCodecFailure:
            self.codec_failures += 1
            raise
        self.codec_failures = 0

        event = self.vad.process(pcm)
        if isinstance(event, SpeechStarted):
            self._upsample_state = None
        if not self.vad.speaking:
            return event, None
        audio, self._upsample_state = caller_to_show(pcm, self._upsample_state, gain=self.config.caller_gain)
        return event, audio


class TelephonyBridge:
    """Bus sink for all calls and source of caller interrupts."""

    name = "telephony"

    def __init__(
        self,
        bus: AudioBus,
        interrupts: InterruptQueue,
        transcriber: Transcriber | None = None,
        config: TelephonyConfig | None = None,
    ) -> None:
        self.config = config or TelephonyConfig()
        self.calls: dict[str, CallSession] = {}
        self._bus = bus
        self._interrupts = interrupts
        self._transcriber = transcriber
        self._tasks: set[asyncio.Task] = set()

    # --- outbound -----------------------------------------------------------

    def write(self, frame: bytes) -> None:
        for call in list(self.calls.values()):
            try:
                call.write(frame)
            except SinkWriteFailure as exc:
                logger.warning("Call %s dropped audio: %s", call.stream_id, exc)

    def clear(self) -> None:
        for call in list(self.calls.values()):
            call.clear()

    # --- call lifecycle -----------------------------------------------------

    async def start_call(
        self,
        stream_id: str,
        send: SendEvent,
        *,
        call_id: str | None = None,
        caller: str = "Unknown",
    ) -> CallSession:
        call = CallSession(stream_id, send, call_id=call_id, caller=caller, config=self.config)
        self.calls[stream_id] = call
        await call.start()
        logger.info("Call started: %s from %s", stream_id, caller)
        return call

    async def end_call(self, stream_id: str) -> None:
        call = self.calls.pop(stream_id, None)
        if call is None:
            return
        await call.stop()
        logger.info("Call ended: %s (%s)", stream_id, call.caller)

    async def close(self) -> None:
        for stream_id in list(self.calls):
            await self.end_call(stream_id)
        for task in list(self._tasks):
            task.cancel()

    # --- inbound ------------------------------------------------------------

    def handle_media(self, call: CallSession, payload: str) -> bool:
        """Feed one caller frame. Returns False when the call should be ended."""
        try:
            event, audio = call.receive(payload)
        except TelephonyCodecFailure as exc:
            logger.debug("Dropped frame on %s: %s", call.stream_id, exc)
            if call.codec_failures >= self.config.max_codec_failures:
                logger.warning(
                    "Ending call %s after %d bad frames in a row", call.stream_id, call.codec_failures
                )
                return False
            return True

        if audio:
            self._bus.write(audio, exclude=self)

        if isinstance(event, SpeechStarted):
            logger.info("Caller %s started speaking", call.caller)
            self._interrupts.submit(SignalSource.LISTENER_INPUT, "", origin=call.caller)
        elif isinstance(event, SpeechEnded):
            logger.info("Caller %s finished speaking (%.0fms)", call.caller, event.duration_ms)
            self._spawn(self._transcribe(call, event))
        elif isinstance(event, SpeechDiscarded):
            logger.debug("Ignored %.0fms of noise from %s", event.duration_ms, call.caller)
        return True

    async def _transcribe(self, call: CallSession, segment: SpeechEnded) -> None:
        if self._transcriber is None:
            logger.warning("No transcriber configured; dropping speech from %s", call.caller)
            return
        try:
            text = await self._transcriber.transcribe(segment.audio, PHONE_SAMPLE_RATE)
        except Exception:
            logger.exception("Transcription failed for %s", call.caller)
            return
        text = (text or "").strip()
        if text:
            logger.info("Caller %s said: %s", call.caller, text)
            self._interrupts.submit(SignalSource.LISTENER_INPUT, text, origin=call.caller)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
