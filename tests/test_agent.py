import asyncio

import pytest

from radioshow.agent import Agent, AgentConfig, Persona, PlaybackState, split_sentences
from radioshow.cancellation import CancellationToken, OperationCancelled
from radioshow.errors import CollaboratorError, GenerationFailure, GenerationTimeout, RateLimitError, TransientError
from radioshow.session import Turn


class Recorder:
    def __init__(self, on_unit=None):
        self.units = []
        self.states = []
        self.on_unit = on_unit

    async def __call__(self, agent, unit, token):
        self.units.append(unit)
        self.states.append(agent.state)
        if self.on_unit is not None:
            self.on_unit(agent, unit)


@pytest.fixture
def agent(make_agents):
    return make_agents(1)[0]


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Hello there. How are you? Great!", ["Hello there.", "How are you?", "Great!"]),
        ("[laughs.] Okay then. Sure.", ["[laughs.] Okay then.", "Sure."]),
        ('He said "stop." Then he left.', ['He said "stop."', "Then he left."]),
        ("Rates rose 3.5 percent today.", ["Rates rose 3.5 percent today."]),
        ("Wait... what?! No way", ["Wait...", "what?!", "No way"]),
        ("", []),
    ],
)
def test_split_sentences(text, expected):
    assert split_sentences(text) == expected


@pytest.mark.asyncio
async def test_speak_plays_every_sentence_in_order(agent, generator, synthesizer):
    playback = Recorder()
    done = await agent.speak(CancellationToken(), playback, prompt="Say hi")

    assert done is True
    assert [u.text for u in playback.units] == ["Line 1 first.", "Line 1 second."]
    assert [u.sentence_index for u in playback.units] == [0, 1]
    assert [u.is_final for u in playback.units] == [False, True]
    assert playback.units[0].duration_ms == pytest.approx(40.0)
    assert set(playback.states) == {PlaybackState.SPEAKING}
    assert agent.last_text == "Line 1 first. Line 1 second."
    assert agent.state is PlaybackState.IDLE
    assert [voice for _, voice in synthesizer.calls] == ["voice0", "voice0"]


@pytest.mark.asyncio
async def test_generation_sees_persona_and_history(agent, generator, session):
    session.record("host1", "Earlier remark")
    await agent.generate_text("Respond")
    system_prompt, history, prompt = generator.calls[0]
    assert "Host 0" in system_prompt
    assert history == [Turn("host1", "Earlier remark")]
    assert prompt == "Respond"


@pytest.mark.asyncio
async def test_transient_generation_error_is_retried(agent, generator):
    generator.failures = [TransientError("502")]
    text = await agent.generate_text("Go")
    assert text == "Line 2 first. Line 2 second."
    assert len(generator.calls) == 2


@pytest.mark.asyncio
async def test_rate_limit_uses_retry_after(agent, generator):
    generator.failures = [RateLimitError("slow down", retry_after=0.01)]
    await agent.generate_text("Go")
    assert len(generator.calls) == 2


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried(agent, generator):
    generator.failures = [CollaboratorError("bad request")]
    with pytest.raises(GenerationFailure):
        await agent.generate_text("Go")
    assert len(generator.calls) == 1


@pytest.mark.asyncio
async def test_generation_timeout(generator, synthesizer, session):
    generator.delay = 1.0
    agent = Agent(
        Persona("slow", "Slow", "v"),
        generator,
        synthesizer,
        session,
        AgentConfig(generation_timeout=0.02, max_retries=0),
    )
    with pytest.raises(GenerationTimeout):
        await agent.generate_text("Go")


@pytest.mark.asyncio
async def test_exhausted_generation_speaks_fallback(agent, generator):
    generator.failures = [TransientError("a"), TransientError("b")]
    playback = Recorder()
    assert await agent.speak(CancellationToken(), playback, prompt="Go") is True
    assert [u.text for u in playback.units] == [agent.config.fallback_text]


@pytest.mark.asyncio
async def test_failed_sentence_is_replaced_by_filler(agent, synthesizer):
    synthesizer.failures = [CollaboratorError("voice missing")]
    playback = Recorder()
    assert await agent.speak(CancellationToken(), playback, prompt="Go") is True
    assert [u.text for u in playback.units] == [agent.config.fallback_text, "Line 1 second."]


@pytest.mark.asyncio
async def test_turn_with_no_voiced_sentence_is_not_said(agent, synthesizer):
    synthesizer.failures = [CollaboratorError("voice missing"), CollaboratorError("still missing")]
    playback = Recorder()
    assert await agent.speak(CancellationToken(), playback, text="Only line.") is False
    assert playback.units == []
    assert agent.last_text == ""
    assert agent.state is PlaybackState.IDLE


@pytest.mark.asyncio
async def test_interrupt_stops_after_current_sentence(agent):
    playback = Recorder(on_unit=lambda a, unit: a.interrupt())
    done = await agent.speak(CancellationToken(), playback, prompt="Go")

    assert done is False
    assert len(playback.units) == 1
    assert agent.last_text == ""
    assert agent.state is PlaybackState.INTERRUPTED
    assert agent.cancelled


@pytest.mark.asyncio
async def test_interrupt_is_idempotent(agent):
    agent.interrupt()
    agent.interrupt()
    assert agent.state is PlaybackState.IDLE

    playback = Recorder(on_unit=lambda a, unit: (a.interrupt(), a.interrupt()))
    assert await agent.speak(CancellationToken(), playback, prompt="Go") is False
    assert agent.state is PlaybackState.INTERRUPTED


@pytest.mark.asyncio
async def test_cancelled_token_plays_nothing(agent):
    token = CancellationToken()
    token.cancel()
    playback = Recorder()
    assert await agent.speak(token, playback, prompt="Go") is False
    assert playback.units == []


@pytest.mark.asyncio
async def test_prepare_synthesizes_first_sentence_eagerly(agent, synthesizer):
    prepared = await agent.prepare("Go")
    assert prepared.sentences == ["Line 1 first.", "Line 1 second."]
    assert prepared.ready >= 1
    assert agent.state is PlaybackState.IDLE

    playback = Recorder()
    assert await agent.speak(CancellationToken(), playback, prepared=prepared) is True
    assert len(playback.units) == 2


@pytest.mark.asyncio
async def test_prepare_with_given_text_skips_generation(agent, generator):
    prepared = await agent.prepare(text="Just this.")
    assert prepared.sentences == ["Just this."]
    assert generator.calls == []


@pytest.mark.asyncio
async def test_discarded_preparation_never_plays(agent, synthesizer):
    synthesizer.delay = 0.05
    token = CancellationToken()
    task = asyncio.ensure_future(agent.prepare("Go", token=token))
    await asyncio.sleep(0.01)
    token.cancel("interrupted")
    with pytest.raises(OperationCancelled):
        await task
