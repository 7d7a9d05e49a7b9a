import asyncio
import base64
import json

import pytest
from fastapi import WebSocketDisconnect

from radioshow.audio import linear_to_ulaw
from radioshow.bridge import run_bridge
from radioshow.bus import AudioBus
from radioshow.telephony import TelephonyBridge, TelephonyConfig
from radioshow.vad import VadConfig

LOUD = base64.b64encode(bytes([linear_to_ulaw(4000)]) * 160).decode()


class FakeWebSocket:
    """Plays a scripted carrier conversation, then hangs up."""

    def __init__(self, messages, pause=0.0):
        self._messages = list(messages)
        self.pause = pause
        self.sent = []

    async def receive_text(self):
        if self.pause:
            await asyncio.sleep(self.pause)
        if not self._messages:
            raise WebSocketDisconnect(code=1000)
        return json.dumps(self._messages.pop(0))

    async def send_json(self, message):
        self.sent.append(message)


def start_event(stream_sid="MZ100", caller="+15550123"):
    return {
        "event": "start",
        "start": {"streamSid": stream_sid, "callSid": "CA1", "customParameters": {"From": caller}},
    }


def media_event(payload=LOUD):
    return {"event": "media", "media": {"payload": payload}}


@pytest.fixture
def telephony(interrupts):
    config = TelephonyConfig(vad=VadConfig(start_frames=2), keepalive_ms=20, max_codec_failures=2)
    bus = AudioBus()
    bridge = TelephonyBridge(bus, interrupts, None, config)
    bus.register(bridge)
    return bridge


@pytest.mark.asyncio
async def test_call_lifecycle(telephony, interrupts):
    ws = FakeWebSocket([start_event(), media_event(), media_event(), {"event": "stop"}])
    await run_bridge(ws, telephony)

    assert telephony.calls == {}
    signal = interrupts.pop()
    assert signal.origin == "+15550123"
    assert signal.payload == ""


@pytest.mark.asyncio
async def test_show_audio_reaches_live_call(telephony):
    ws = FakeWebSocket([start_event()] + [media_event(base64.b64encode(b"\xff" * 160).decode())] * 5, pause=0.01)
    task = asyncio.ensure_future(run_bridge(ws, telephony))
    await asyncio.sleep(0.02)
    assert "MZ100" in telephony.calls
    await task

    assert any(m["event"] == "media" and m["streamSid"] == "MZ100" for m in ws.sent)


@pytest.mark.asyncio
async def test_bad_frames_hang_up(telephony, interrupts):
    ws = FakeWebSocket([start_event(), media_event("@@"), media_event("@@"), media_event()])
    await run_bridge(ws, telephony)
    assert telephony.calls == {}
    assert not interrupts.pending


@pytest.mark.asyncio
async def test_disconnect_before_start_is_quiet(telephony):
    await run_bridge(FakeWebSocket([]), telephony)
    assert telephony.calls == {}


@pytest.mark.asyncio
async def test_media_before_start_is_ignored(telephony, interrupts):
    await run_bridge(FakeWebSocket([media_event(), {"event": "stop"}]), telephony)
    assert not interrupts.pending
