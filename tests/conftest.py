import asyncio
import struct

import pytest

from radioshow.agent import Agent, AgentConfig, Persona
from radioshow.bus import AudioBus
from radioshow.orchestrator import OrchestratorConfig
from radioshow.session import ConversationSession
from radioshow.signals import InterruptQueue


def tone(ms: float, amplitude: int = 1000, sample_rate: int = 24000) -> bytes:
    return struct.pack("<h", amplitude) * int(sample_rate * ms / 1000)


class FakeGenerator:
    """Answers every prompt with two numbered sentences unless told otherwise."""

    def __init__(self, delay: float = 0.0):
        self.calls = []
        self.failures = []
        self.delay = delay
        self.delays = {}
        self.replies = {}

    async def generate(self, system_prompt, history, user_prompt):
        self.calls.append((system_prompt, list(history), user_prompt))
        n = len(self.calls)
        delay = self.delays.get(n, self.delay)
        if delay:
            await asyncio.sleep(delay)
        if self.failures:
            raise self.failures.pop(0)
        return self.replies.get(n, f"Line {n} first. Line {n} second.")


class FakeSynthesizer:
    def __init__(self, ms: float = 40.0, delay: float = 0.0):
        self.calls = []
        self.failures = []
        self.ms = ms
        self.delay = delay

    async def synthesize(self, text, voice):
        self.calls.append((text, voice))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return tone(self.ms)


class RecordingSink:
    def __init__(self, name: str = "recorder"):
        self.name = name
        self.frames = []
        self.clears = 0

    def write(self, frame):
        self.frames.append(frame)

    def clear(self):
        self.clears += 1


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def session():
    return ConversationSession(topic="robots")


@pytest.fixture
def bus():
    return AudioBus()


@pytest.fixture
def recorder(bus):
    sink = RecordingSink()
    bus.register(sink)
    return sink


@pytest.fixture
def interrupts():
    return InterruptQueue()


@pytest.fixture
def agent_config():
    return AgentConfig(generation_timeout=1.0, synthesis_timeout=1.0, max_retries=1, retry_delay=0.01)


@pytest.fixture
def make_agents(generator, synthesizer, session, agent_config):
    def make(count: int = 2):
        personas = [Persona(f"host{i}", f"Host {i}", f"voice{i}") for i in range(count)]
        return [Agent(p, generator, synthesizer, session, agent_config) for p in personas]

    return make


@pytest.fixture
def fast_config():
    return OrchestratorConfig(
        poll_interval_ms=5,
        sentence_overlap_ms=20,
        min_sentence_wait_ms=10,
        pregen_padding_ms=40,
        max_turn_seconds=2.0,
        caller_hold_seconds=0.3,
    )
