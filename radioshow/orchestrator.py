"""Turn orchestrator: who speaks next, what interrupts them, and what plays.

The orchestrator owns the show loop. Normal turns rotate round-robin over the
agents; while one agent plays, the next one's text and first sentence are
prepared in the background so the handoff has no dead air. A monitor polls
the interrupt queue during every turn and preempts the speaker as soon as a
higher-priority signal is waiting.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from .agent import Agent, PreparedSpeech
from .audio import SAMPLE_RATE, silence
from .bus import AudioBus
from .cancellation import CancellationToken, OperationCancelled, discard_result
from .provider import Overlay
from .session import ConversationSession, SpeechUnit, Turn
from .signals import InterruptQueue, InterruptSignal, SignalSource

logger = logging.getLogger(__name__)

# Normal turns rank below every signal source.
NORMAL_PRIORITY = len(SignalSource)

BREAKING_NEWS_SPEAKER = "BREAKING NEWS"
LISTENER_SPEAKER = "Listener"
TREND_SPEAKER = "Trending"


@dataclass
class OrchestratorConfig:
    poll_interval_ms: float = 50.0
    sentence_overlap_ms: float = 500.0
    min_sentence_wait_ms: float = 100.0
    pregen_padding_ms: float = 200.0
    max_turn_seconds: float = 90.0
    adlib_probability: float = 0.0
    caller_hold_seconds: float = 8.0
    history_window: int = 20
    flush_on_interrupt: bool = True
    trend_overlay_seconds: float = 10.0
    trend_reactors: int = 2
    sample_rate: int = SAMPLE_RATE


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class _Speculation:
    """Background preparation of the next speaker's turn."""

    def __init__(self, agent: Agent, task: asyncio.Task, token: CancellationToken) -> None:
        self.agent = agent
        self.task = task
        self.token = token

    def discard(self, reason: str = "discarded") -> None:
        self.token.cancel(reason)
        self.token.detach()
        self.task.add_done_callback(self._drop)

    @staticmethod
    def _drop(task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            discard_result(task)
            return
        task.result().discard()


class TurnOrchestrator:
    """Runs the show loop over a fixed set of agents."""

    def __init__(
        self,
        session: ConversationSession,
        agents: Sequence[Agent],
        bus: AudioBus,
        interrupts: InterruptQueue,
        config: OrchestratorConfig | None = None,
        *,
        overlay: Overlay | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not agents:
            raise ValueError("TurnOrchestrator needs at least one agent")
        self.session = session
        self.agents = list(agents)
        self.bus = bus
        self.interrupts = interrupts
        self.config = config or OrchestratorConfig()
        self.overlay = overlay
        self.rng = rng or random.Random()

        self.turns_completed = 0
        self.interrupts_handled = 0
        self.pregen_hits = 0
        self.pregen_misses = 0

        self._stop = CancellationToken()
        self._speculation: _Speculation | None = None
        self._current: Agent | None = None
        self._current_token: CancellationToken | None = None
        self._priority = NORMAL_PRIORITY

    @property
    def current_agent(self) -> Agent | None:
        return self._current

    @property
    def _poll_s(self) -> float:
        return self.config.poll_interval_ms / 1000.0

    def _next_index(self, index: int) -> int:
        return (index + 1) % len(self.agents)

    # --- show loop ----------------------------------------------------------

    async def run(self, max_turns: int | None = None) -> None:
        """Run the show until :meth:`stop`, or for ``max_turns`` normal turns.

        The opening and the closing wrap-up do not count as normal turns.
        """
        self._stop = CancellationToken()
        self.session.running = True
        self.session.speaker_index = 0
        logger.info("Show starting: %s (%d hosts)", self.session.topic, len(self.agents))
        normal_turns = 0
        try:
            await self._opening()
            while not self._stop.cancelled:
                signal = self.interrupts.pop()
                if signal is not None:
                    self._discard_speculation("signal")
                    await self._dispatch(signal)
                    continue
                if max_turns is not None and normal_turns >= max_turns:
                    break
                await self._normal_turn()
                normal_turns += 1
            if not self._stop.cancelled:
                await self._closing()
        finally:
            self._discard_speculation("show ended")
            self.session.running = False
            self.session.on_air = None
            logger.info(
                "Show ended after %d turns (%d interrupts, %d pre-generation misses)",
                self.turns_completed, self.interrupts_handled, self.pregen_misses,
            )

    def stop(self) -> None:
        """End the show loop. The current speaker is cut off."""
        if self._stop.cancelled:
            return
        logger.info("Stopping show")
        self._stop.cancel("stopped")
        if self._current is not None:
            self._current.interrupt()
        self._discard_speculation("stopped")

    # --- turns --------------------------------------------------------------

    def _turn_prompt(self, agent: Agent) -> str:
        others = [a.name for a in self.agents if a is not agent]
        topic = self.session.topic
        if others:
            prompt = f'Continue the conversation with {" and ".join(others)} about "{topic}".'
        else:
            prompt = f'Keep talking about "{topic}".'
        return prompt + self.session.news_context()

    async def _opening(self) -> None:
        host = self.agents[0]
        others = [a.name for a in self.agents[1:]]
        prompt = f'Introduce yourself and start a conversation about "{self.session.topic}"'
        prompt += f" with {' and '.join(others)}." if others else "."
        outcome = await self._perform(host, NORMAL_PRIORITY, prompt=prompt, next_agent=self.agents[self._next_index(0)])
        if outcome is not TurnOutcome.INTERRUPTED:
            self.session.speaker_index = self._next_index(0)

    async def _closing(self) -> None:
        host = self.agents[0]
        others = [a.name for a in self.agents[1:]]
        thanks = f"thank {' and '.join(others)} and the listeners" if others else "thank the listeners"
        await self._perform(host, NORMAL_PRIORITY, prompt=f"Wrap up the show: {thanks}, then say goodbye.")

    async def _normal_turn(self) -> None:
        index = self.session.speaker_index % len(self.agents)
        agent = self.agents[index]
        prepared = await self._claim_speculation(agent)
        if self._stop.cancelled or self.interrupts.pending:
            if prepared is not None:
                prepared.token.cancel("signal")
                prepared.token.detach()
                prepared.discard()
            return

        outcome = await self._perform(
            agent,
            NORMAL_PRIORITY,
            prompt=None if prepared is not None else self._turn_prompt(agent),
            prepared=prepared,
            next_agent=self.agents[self._next_index(index)],
        )
        if outcome is not TurnOutcome.INTERRUPTED:
            self.session.speaker_index = self._next_index(index)

    async def _perform(
        self,
        agent: Agent,
        priority: int,
        *,
        prompt: str | None = None,
        prepared: PreparedSpeech | None = None,
        next_agent: Agent | None = None,
    ) -> TurnOutcome:
        """Run one agent turn under the interrupt monitor and the watchdog."""
        loop = asyncio.get_running_loop()
        token = self._stop.child()
        self._current, self._current_token, self._priority = agent, token, priority
        body = asyncio.ensure_future(self._turn_body(agent, token, prompt, prepared, next_agent))
        started = loop.time()
        timed_out = False
        try:
            while not body.done():
                self._poll()
                if not timed_out and loop.time() - started > self.config.max_turn_seconds:
                    logger.error("%s exceeded %.0fs, moving on", agent.name, self.config.max_turn_seconds)
                    timed_out = True
                    token.cancel("watchdog")
                    agent.interrupt()
                await asyncio.wait({body}, timeout=self._poll_s)
            completed, text = body.result()
        except Exception:
            logger.exception("%s's turn failed", agent.name)
            return TurnOutcome.FAILED
        finally:
            if not body.done():
                body.cancel()
            token.detach()
            if prepared is not None:
                prepared.token.detach()
            self._current, self._current_token, self._priority = None, None, NORMAL_PRIORITY
            self.session.go_off_air(agent.id)

        if completed:
            self.session.record(agent.id, text)
            self.turns_completed += 1
            return TurnOutcome.COMPLETED
        if timed_out:
            return TurnOutcome.TIMED_OUT
        if not token.cancelled:
            logger.warning("%s's turn produced no audio", agent.name)
            return TurnOutcome.FAILED
        return TurnOutcome.INTERRUPTED

    async def _turn_body(
        self,
        agent: Agent,
        token: CancellationToken,
        prompt: str | None,
        prepared: PreparedSpeech | None,
        next_agent: Agent | None,
    ) -> tuple[bool, str]:
        try:
            if prepared is None:
                history = self.session.recent(self.config.history_window)
                prepared = await agent.prepare(prompt, history=history, token=token)
        except OperationCancelled:
            return False, ""

        if next_agent is not None and not token.cancelled:
            self._speculate(next_agent, Turn(agent.id, prepared.text))

        completed = await agent.speak(token, self._play, prepared=prepared)
        if not completed and token.cancelled:
            # Synthesis still running on a claimed speculation belongs to this turn.
            prepared.token.cancel("interrupted")
        return completed, prepared.text

    async def _play(self, agent: Agent, unit: SpeechUnit, token: CancellationToken) -> None:
        self.session.go_on_air(agent.id)
        delivered = self.bus.write(unit.audio)
        if not delivered:
            logger.debug("No sink accepted sentence %d of %s", unit.sentence_index + 1, agent.name)
        if unit.is_final:
            wait_ms = unit.duration_ms
        else:
            wait_ms = max(unit.duration_ms - self.config.sentence_overlap_ms, self.config.min_sentence_wait_ms)
        await token.sleep(wait_ms / 1000.0)

    # --- interrupts ---------------------------------------------------------

    def _poll(self) -> None:
        self._maybe_adlib()
        if self._current is None or not self.interrupts.outranks(self._priority):
            return
        if self._current_token is not None and self._current_token.cancelled:
            return
        signal = self.interrupts.peek()
        logger.info(
            "%s cut off by %s", self._current.name, signal.source.value if signal else "signal"
        )
        self._preempt()

    def _preempt(self) -> None:
        if self._current_token is not None:
            self._current_token.cancel("interrupted")
        if self._current is not None:
            self._current.interrupt()
        if self.config.flush_on_interrupt:
            self.bus.clear()
        self._discard_speculation("interrupted")

    def _maybe_adlib(self) -> None:
        if self.config.adlib_probability <= 0 or self._current is None:
            return
        if self._priority != NORMAL_PRIORITY or self.interrupts.pending or len(self.agents) < 2:
            return
        if self.rng.random() >= self.config.adlib_probability:
            return
        peer = self.rng.choice([a for a in self.agents if a is not self._current])
        self.interrupts.submit(SignalSource.PEER_AD_LIB, "", origin=peer.id)

    async def _dispatch(self, signal: InterruptSignal) -> None:
        self.interrupts_handled += 1
        handler = {
            SignalSource.BREAKING_NEWS: self._handle_breaking_news,
            SignalSource.LISTENER_INPUT: self._handle_listener,
            SignalSource.TREND_INJECTION: self._handle_trend,
            SignalSource.PEER_AD_LIB: self._handle_adlib,
        }[signal.source]
        await handler(signal)

    def _outranked(self, signal: InterruptSignal) -> bool:
        return self._stop.cancelled or self.interrupts.outranks(signal.priority)

    async def _react_in_turn(self, agents: Sequence[Agent], signal: InterruptSignal, prompt: str) -> None:
        for agent in agents:
            if self._outranked(signal):
                return
            outcome = await self._perform(agent, signal.priority, prompt=prompt)
            if outcome is TurnOutcome.INTERRUPTED:
                return

    async def _handle_breaking_news(self, signal: InterruptSignal) -> None:
        logger.warning("BREAKING NEWS: %s", signal.payload)
        self.session.record(BREAKING_NEWS_SPEAKER, signal.payload)
        prompt = f'BREAKING NEWS just came in: "{signal.payload}". React to this news urgently!'
        await self._react_in_turn(self.agents, signal, prompt)

    async def _handle_listener(self, signal: InterruptSignal) -> None:
        if not signal.payload.strip():
            await self._hold_floor(signal)
            return
        who = signal.origin or LISTENER_SPEAKER
        logger.info("%s: %s", who, signal.payload)
        self.session.record(who, signal.payload)
        responder = self.rng.choice(self.agents)
        prompt = f'A listener just said: "{signal.payload}". Respond to them briefly.'
        await self._perform(responder, signal.priority, prompt=prompt)

    async def _hold_floor(self, signal: InterruptSignal) -> None:
        """Keep the hosts quiet while a caller talks, until their words arrive."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.caller_hold_seconds
        logger.info("Holding the floor for %s", signal.origin or "a caller")
        while not self._stop.cancelled and loop.time() < deadline:
            waiting = self.interrupts.peek()
            if waiting is not None:
                if waiting.priority < signal.priority:
                    return
                if waiting.source is SignalSource.LISTENER_INPUT:
                    if waiting.payload.strip():
                        return
                    # The caller started speaking again; keep waiting for the transcript.
                    self.interrupts.pop()
                    deadline = loop.time() + self.config.caller_hold_seconds
            if await self._stop.sleep(min(self._poll_s, max(deadline - loop.time(), 0))):
                return
        logger.info("No words from %s, resuming the show", signal.origin or "the caller")

    async def _handle_trend(self, signal: InterruptSignal) -> None:
        logger.info("Trending: %s", signal.payload)
        if self.overlay is not None:
            try:
                await self.overlay.show(signal.payload, self.config.trend_overlay_seconds)
            except Exception:
                logger.exception("Overlay failed to show trend")
        self.session.record(TREND_SPEAKER, signal.payload)
        count = min(self.config.trend_reactors, len(self.agents))
        reactors = self.rng.sample(self.agents, count)
        prompt = f'This is trending right now: "{signal.payload}". Share your take on it.'
        await self._react_in_turn(reactors, signal, prompt)

    async def _handle_adlib(self, signal: InterruptSignal) -> None:
        peer = next((a for a in self.agents if a.id == signal.origin), None)
        if peer is None:
            peer = self.rng.choice(self.agents)
        prompt = signal.payload.strip() or "Jump in with a quick one-line reaction to what was just said."
        await self._perform(peer, signal.priority, prompt=prompt)

    # --- speculation --------------------------------------------------------

    def _speculate(self, agent: Agent, pending: Turn) -> None:
        self._discard_speculation("replaced")
        token = self._stop.child()
        history = self.session.history_with(pending, self.config.history_window)
        prompt = self._turn_prompt(agent)
        task = asyncio.ensure_future(agent.prepare(prompt, history=history, token=token))
        self._speculation = _Speculation(agent, task, token)
        logger.debug("Pre-generating %s's turn", agent.name)

    def _discard_speculation(self, reason: str) -> None:
        speculation, self._speculation = self._speculation, None
        if speculation is not None:
            logger.debug("Discarding pre-generated turn of %s (%s)", speculation.agent.name, reason)
            speculation.discard(reason)

    async def _claim_speculation(self, agent: Agent) -> PreparedSpeech | None:
        speculation, self._speculation = self._speculation, None
        if speculation is None:
            return None
        if speculation.agent is not agent:
            speculation.discard("wrong speaker")
            return None

        if not speculation.task.done():
            self.pregen_misses += 1
            logger.info(
                "%s's turn is not ready yet, padding %.0fms", agent.name, self.config.pregen_padding_ms
            )
            self.bus.write(silence(self.config.pregen_padding_ms, self.config.sample_rate))
            while not speculation.task.done():
                if self._stop.cancelled or self.interrupts.pending:
                    speculation.discard("signal")
                    return None
                await asyncio.wait({speculation.task}, timeout=self._poll_s)
        else:
            self.pregen_hits += 1

        if speculation.task.cancelled() or speculation.task.exception() is not None:
            speculation.token.detach()
            if not speculation.task.cancelled():
                logger.warning("Pre-generation for %s failed: %r", agent.name, speculation.task.exception())
            return None
        prepared = speculation.task.result()
        logger.debug(
            "Using pre-generated turn of %s (%d/%d sentences ready)",
            agent.name, prepared.ready, len(prepared.sentences),
        )
        return prepared
