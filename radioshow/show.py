"""Assembly: wire one show together from settings."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .agent import Agent, AgentConfig, Persona
from .bus import AudioBus
from .config import Settings
from .orchestrator import OrchestratorConfig, TurnOrchestrator
from .provider import Overlay, ProviderConfig, SpeechSynthesizer, TextGenerator, Transcriber
from .providers import get_generator, get_synthesizer, get_transcriber
from .session import ConversationSession
from .signals import InterruptQueue, SignalSource
from .sinks import ProcessSink, StreamSink
from .telephony import TelephonyBridge, TelephonyConfig
from .vad import VadConfig

logger = logging.getLogger(__name__)


@dataclass
class RadioShow:
    """Everything one running show owns."""

    session: ConversationSession
    bus: AudioBus
    interrupts: InterruptQueue
    agents: list[Agent]
    orchestrator: TurnOrchestrator
    telephony: TelephonyBridge
    sinks: list[StreamSink] = field(default_factory=list)
    collaborators: list[object] = field(default_factory=list)
    max_turns: int | None = None
    _task: asyncio.Task | None = field(default=None, init=False, repr=False)

    @classmethod
    def build(
        cls,
        settings: Settings,
        generator: TextGenerator,
        synthesizer: SpeechSynthesizer,
        transcriber: Transcriber | None = None,
        *,
        overlay: Overlay | None = None,
        sinks: Sequence[StreamSink] = (),
    ) -> RadioShow:
        session = ConversationSession(topic=settings.TOPIC)
        bus = AudioBus()
        interrupts = InterruptQueue()

        agent_config = AgentConfig(
            generation_timeout=settings.GENERATION_TIMEOUT,
            synthesis_timeout=settings.SYNTHESIS_TIMEOUT,
            max_retries=settings.MAX_RETRIES,
            retry_delay=settings.RETRY_DELAY,
            fallback_text=settings.FALLBACK_TEXT,
            history_window=settings.HISTORY_WINDOW,
        )
        agents = [
            Agent(Persona(p.id, p.name, p.voice, p.system_prompt), generator, synthesizer, session, agent_config)
            for p in settings.PERSONAS
        ]

        orchestrator = TurnOrchestrator(
            session,
            agents,
            bus,
            interrupts,
            OrchestratorConfig(
                poll_interval_ms=settings.POLL_INTERVAL_MS,
                sentence_overlap_ms=settings.SENTENCE_OVERLAP_MS,
                min_sentence_wait_ms=settings.MIN_SENTENCE_WAIT_MS,
                pregen_padding_ms=settings.PREGEN_PADDING_MS,
                max_turn_seconds=settings.MAX_TURN_SECONDS,
                adlib_probability=settings.ADLIB_PROBABILITY,
                caller_hold_seconds=settings.CALLER_HOLD_SECONDS,
                history_window=settings.HISTORY_WINDOW,
            ),
            overlay=overlay,
        )

        telephony = TelephonyBridge(
            bus,
            interrupts,
            transcriber,
            TelephonyConfig(
                vad=VadConfig(
                    threshold=settings.VAD_THRESHOLD,
                    start_frames=settings.VAD_START_FRAMES,
                    end_frames=settings.VAD_END_FRAMES,
                    min_speech_ms=settings.VAD_MIN_SPEECH_MS,
                ),
                caller_gain=settings.CALLER_GAIN,
                keepalive_ms=settings.KEEPALIVE_MS,
                max_codec_failures=settings.MAX_CODEC_FAILURES,
                max_call_duration=settings.MAX_CALL_DURATION,
            ),
        )
        bus.register(telephony)

        show = cls(
            session=session,
            bus=bus,
            interrupts=interrupts,
            agents=agents,
            orchestrator=orchestrator,
            telephony=telephony,
            sinks=list(sinks),
            max_turns=settings.MAX_TURNS,
        )
        for sink in show.sinks:
            bus.register(sink)
        return show

    @classmethod
    def from_settings(cls, settings: Settings) -> RadioShow:
        """Build a show with the configured collaborators and process sinks."""
        provider_config = ProviderConfig(
            api_key=settings.XAI_API_KEY,
            base_url=settings.XAI_BASE_URL,
            model=settings.MODEL,
            extra={"temperature": settings.TEMPERATURE, "max_tokens": settings.MAX_TOKENS},
        )
        generator = get_generator(settings.GENERATOR, provider_config)
        synthesizer = get_synthesizer(settings.SYNTHESIZER, provider_config)
        transcriber = get_transcriber(settings.TRANSCRIBER, provider_config)

        sinks: list[StreamSink] = []
        if settings.ENCODER_COMMAND:
            sinks.append(ProcessSink("Encoder", settings.ENCODER_COMMAND, keepalive_ms=settings.KEEPALIVE_MS))
        if settings.PREVIEW_COMMAND:
            sinks.append(ProcessSink("Preview", settings.PREVIEW_COMMAND, keepalive_ms=settings.KEEPALIVE_MS))

        show = cls.build(settings, generator, synthesizer, transcriber, sinks=sinks)
        show.collaborators = [generator, synthesizer, transcriber]
        return show

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, source: str, payload: str, origin: str | None = None) -> None:
        """Accept a producer signal; ``news`` only adds context for later turns."""
        if source.strip().lower() == "news":
            self.session.add_news(payload)
            return
        self.interrupts.submit(SignalSource.parse(source), payload, origin=origin)

    async def start(self) -> None:
        if self.running:
            return
        for sink in self.sinks:
            await sink.start()
        self._task = asyncio.create_task(self.orchestrator.run(self.max_turns), name="show")
        self._task.add_done_callback(self._on_done)

    @staticmethod
    def _on_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Show loop crashed", exc_info=exc)

    async def stop(self) -> None:
        self.orchestrator.stop()
        if self._task is not None:
            await asyncio.wait({self._task})
            self._task = None
        await self.telephony.close()
        for sink in self.sinks:
            await sink.stop()
            self.bus.deregister(sink)
        for collaborator in self.collaborators:
            close = getattr(collaborator, "close", None)
            if close is not None:
                await close()
