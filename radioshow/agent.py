"""Agent: one persona that turns prompts into sentence-sized speech units."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, TypeVar

from .audio import SAMPLE_RATE
from .cancellation import CancellationToken, OperationCancelled, discard_result
from .errors import (
    GenerationFailure,
    GenerationTimeout,
    RateLimitError,
    SynthesisFailure,
    SynthesisTimeout,
    TransientError,
)
from .provider import SpeechSynthesizer, TextGenerator
from .session import ConversationSession, SpeechUnit, Turn

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SENTENCE_END = ".!?"
_CLOSERS = "\"')”’»"


class PlaybackState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    SPEAKING = "speaking"
    INTERRUPTED = "interrupted"


_BUSY = (PlaybackState.GENERATING, PlaybackState.SYNTHESIZING, PlaybackState.SPEAKING)


@dataclass
class Persona:
    """Who an agent is. Prompt content is supplied by configuration."""

    id: str
    name: str
    voice: str
    system_prompt: str = ""


@dataclass
class AgentConfig:
    generation_timeout: float = 30.0
    synthesis_timeout: float = 35.0
    max_retries: int = 2
    retry_delay: float = 2.0
    fallback_text: str = "Sorry, I lost my train of thought there."
    history_window: int = 20
    parallel_synthesis: bool = True
    sample_rate: int = SAMPLE_RATE


class Playback(Protocol):
    """Orchestrator side of the handoff. Returns when the next unit may start."""

    async def __call__(self, agent: Agent, unit: SpeechUnit, token: CancellationToken) -> None:
        ...


def split_sentences(text: str) -> list[str]:
    """Split after terminal punctuation followed by whitespace.

    Punctuation inside ``[...]`` mark-up (``[laughs.]``) never ends a sentence,
    and closing quotes or parentheses stay with the sentence they close.
    """
    sentences: list[str] = []
    depth = 0
    start = 0
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(depth - 1, 0)
        elif ch in _SENTENCE_END and depth == 0:
            j = i + 1
            while j < n and (text[j] in _SENTENCE_END or text[j] in _CLOSERS):
                j += 1
            if j == n or text[j].isspace():
                piece = text[start:j].strip()
                if piece:
                    sentences.append(piece)
                start = i = j
                continue
        i += 1
    tail = text[start:].strip()
    if tail:
        sentences.append(tail)
    return sentences


@dataclass
class PreparedSpeech:
    """Generated text whose sentences are being (or have been) synthesized."""

    agent_id: str
    text: str
    sentences: list[str]
    token: CancellationToken
    tasks: list[asyncio.Task | None] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.tasks:
            self.tasks = [None] * len(self.sentences)

    @property
    def ready(self) -> int:
        """Number of leading sentences whose synthesis has finished."""
        count = 0
        for task in self.tasks:
            if task is None or not task.done():
                break
            count += 1
        return count

    def discard(self) -> None:
        """Give up on this speech; in-flight synthesis finishes unobserved."""
        for task in self.tasks:
            if task is not None:
                task.add_done_callback(discard_result)


class Agent:
    """Owns one persona and its generation/synthesis clients."""

    def __init__(
        self,
        persona: Persona,
        generator: TextGenerator,
        synthesizer: SpeechSynthesizer,
        session: ConversationSession,
        config: AgentConfig | None = None,
    ) -> None:
        self.persona = persona
        self.config = config or AgentConfig()
        self.state = PlaybackState.IDLE
        self.last_text = ""
        self._generator = generator
        self._synthesizer = synthesizer
        self._session = session
        self._token: CancellationToken | None = None
        self._fallback_audio: bytes | None = None

    def __repr__(self) -> str:
        return f"Agent({self.id!r}, state={self.state.value})"

    @property
    def id(self) -> str:
        return self.persona.id

    @property
    def name(self) -> str:
        return self.persona.name

    @property
    def voice(self) -> str:
        return self.persona.voice

    @property
    def cancelled(self) -> bool:
        """Cancellation flag of the current (or most recent) turn."""
        return self._token is not None and self._token.cancelled

    @property
    def system_prompt(self) -> str:
        return self.persona.system_prompt or (
            f"You are {self.name}, a host on a live radio show. "
            "Keep it conversational and short: two or three sentences."
        )

    # --- collaborator calls -------------------------------------------------

    async def generate_text(
        self,
        prompt: str,
        *,
        history: Sequence[Turn] | None = None,
        token: CancellationToken | None = None,
    ) -> str:
        token = token or CancellationToken()
        turns = list(history) if history is not None else self._session.recent(self.config.history_window)
        text = await self._with_retries(
            "generation",
            lambda: self._generator.generate(self.system_prompt, turns, prompt),
            token,
            timeout=self.config.generation_timeout,
            failure=GenerationFailure,
            timeout_failure=GenerationTimeout,
            abandon=False,
        )
        text = (text or "").strip()
        if not text:
            raise GenerationFailure(f"{self.name}: generator returned no text")
        logger.info("%s: %s", self.name, text)
        return text

    async def synthesize(self, text: str, *, token: CancellationToken | None = None) -> bytes:
        token = token or CancellationToken()
        audio = await self._with_retries(
            "synthesis",
            lambda: self._synthesizer.synthesize(text, self.voice),
            token,
            timeout=self.config.synthesis_timeout,
            failure=SynthesisFailure,
            timeout_failure=SynthesisTimeout,
            abandon=True,
        )
        if not audio:
            raise SynthesisFailure(f"{self.name}: synthesizer returned no audio")
        return audio

    async def _with_retries(
        self,
        what: str,
        call: Callable[[], Awaitable[T]],
        token: CancellationToken,
        *,
        timeout: float,
        failure: type[Exception],
        timeout_failure: type[Exception],
        abandon: bool,
    ) -> T:
        attempts = max(self.config.max_retries, 0) + 1
        error: Exception = failure(f"{self.name}: {what} failed")
        for attempt in range(1, attempts + 1):
            delay = self.config.retry_delay
            try:
                return await token.run(call(), timeout=timeout, abandon=abandon)
            except OperationCancelled:
                raise
            except asyncio.TimeoutError:
                error = timeout_failure(f"{self.name}: {what} timed out after {timeout:.1f}s")
            except TransientError as exc:
                error = failure(f"{self.name}: {what} failed: {exc}")
                error.__cause__ = exc
                if isinstance(exc, RateLimitError) and exc.retry_after is not None:
                    delay = exc.retry_after
            except Exception as exc:
                raise failure(f"{self.name}: {what} failed: {exc}") from exc

            if attempt < attempts:
                logger.warning(
                    "%s attempt %d/%d failed: %s; retrying in %.1fs",
                    what, attempt, attempts, error, delay,
                )
                await token.sleep(delay)
                token.raise_if_cancelled()
        raise error

    # --- turn preparation ---------------------------------------------------

    def _enter(self, state: PlaybackState) -> None:
        # Speculative preparation must not mask an agent that is on air.
        if self.state is not PlaybackState.SPEAKING:
            self.state = state

    def _leave_preparation(self) -> None:
        if self.state in (PlaybackState.GENERATING, PlaybackState.SYNTHESIZING):
            self.state = PlaybackState.IDLE

    def _start_synthesis(self, prepared: PreparedSpeech, index: int) -> asyncio.Task:
        task = prepared.tasks[index]
        if task is None:
            task = asyncio.ensure_future(self.synthesize(prepared.sentences[index], token=prepared.token))
            prepared.tasks[index] = task
        return task

    async def prepare(
        self,
        prompt: str | None = None,
        *,
        text: str | None = None,
        history: Sequence[Turn] | None = None,
        token: CancellationToken | None = None,
    ) -> PreparedSpeech:
        """Generate text (unless given) and synthesize at least the first sentence.

        A generation failure degrades to the configured fallback line.
        """
        token = token or CancellationToken()
        try:
            if text is None:
                if prompt is None:
                    raise ValueError("prepare() needs a prompt or text")
                self._enter(PlaybackState.GENERATING)
                try:
                    text = await self.generate_text(prompt, history=history, token=token)
                except GenerationFailure as exc:
                    logger.error("%s falling back to filler: %s", self.name, exc)
                    text = self.config.fallback_text
            if not text.strip():
                text = self.config.fallback_text

            prepared = PreparedSpeech(self.id, text, split_sentences(text), token)
            self._enter(PlaybackState.SYNTHESIZING)
            first = self._start_synthesis(prepared, 0)
            if self.config.parallel_synthesis:
                for index in range(1, len(prepared.sentences)):
                    self._start_synthesis(prepared, index)
            try:
                # Wait for the first sentence whether or not it failed; failures surface in speak().
                await token.run(asyncio.wait({first}), abandon=True)
            except OperationCancelled:
                prepared.discard()
                raise
            return prepared
        finally:
            self._leave_preparation()

    async def _unit(self, prepared: PreparedSpeech, index: int, token: CancellationToken) -> SpeechUnit | None:
        task = self._start_synthesis(prepared, index)
        if index + 1 < len(prepared.sentences):
            self._start_synthesis(prepared, index + 1)
        sentence = prepared.sentences[index]
        try:
            audio = await token.run(task, abandon=True)
        except SynthesisFailure as exc:
            logger.error("%s sentence %d lost: %s", self.name, index + 1, exc)
            audio = await self._filler_audio(token)
            if audio is None:
                return None
            sentence = self.config.fallback_text
        return SpeechUnit.from_audio(
            sentence,
            audio,
            index,
            is_final=index == len(prepared.sentences) - 1,
            sample_rate=self.config.sample_rate,
        )

    async def _filler_audio(self, token: CancellationToken) -> bytes | None:
        if self._fallback_audio is None:
            try:
                self._fallback_audio = await self.synthesize(self.config.fallback_text, token=token)
            except SynthesisFailure as exc:
                logger.error("%s cannot synthesize filler either: %s", self.name, exc)
                return None
        return self._fallback_audio

    # --- speaking -----------------------------------------------------------

    async def speak(
        self,
        token: CancellationToken,
        playback: Playback,
        *,
        prompt: str | None = None,
        text: str | None = None,
        prepared: PreparedSpeech | None = None,
    ) -> bool:
        """Hand units to ``playback`` in order until done or cancelled.

        Returns False as soon as cancellation is observed; the remaining units
        are discarded and ``last_text`` stays empty, so a cut-off turn is never
        reported as said. A turn where no sentence could be voiced also
        returns False.
        """
        self._token = token
        self.last_text = ""
        index = 0
        played = 0
        try:
            if prepared is None:
                prepared = await self.prepare(prompt, text=text, token=token)
            total = len(prepared.sentences)
            for index in range(total):
                if token.cancelled:
                    return self._interrupted(prepared, index)
                unit = await self._unit(prepared, index, token)
                if unit is None:
                    continue
                if token.cancelled:
                    return self._interrupted(prepared, index)
                self.state = PlaybackState.SPEAKING
                logger.debug("%s playing sentence %d/%d: %s", self.name, index + 1, total, unit.text)
                await playback(self, unit, token)
                played += 1
            if token.cancelled:
                return self._interrupted(prepared, total)
            if not played:
                logger.error("%s had nothing to say: every sentence failed", self.name)
                self.state = PlaybackState.IDLE
                return False
            self.last_text = prepared.text
            self.state = PlaybackState.IDLE
            return True
        except OperationCancelled:
            return self._interrupted(prepared, index)
        finally:
            if self.state in _BUSY:
                self.state = PlaybackState.IDLE

    def _interrupted(self, prepared: PreparedSpeech | None, index: int) -> bool:
        if prepared is not None:
            prepared.discard()
            logger.info(
                "%s interrupted before sentence %d/%d", self.name, index + 1, len(prepared.sentences)
            )
        self.state = PlaybackState.INTERRUPTED
        return False

    def interrupt(self) -> None:
        """Cancel the current turn. Safe to call repeatedly."""
        if self._token is not None:
            self._token.cancel("interrupted")
        if self.state in _BUSY:
            logger.info("%s interrupted", self.name)
            self.state = PlaybackState.INTERRUPTED
