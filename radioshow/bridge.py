"""Carrier event loop: relay a Twilio Media Stream into the telephony bridge."""

import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from .telephony import CallSession, TelephonyBridge

logger = logging.getLogger(__name__)


async def run_bridge(websocket: WebSocket, telephony: TelephonyBridge) -> None:
    """Consume start/media/stop events for one call until it ends."""
    call: CallSession | None = None

    async def send(message: dict[str, Any]) -> None:
        await websocket.send_json(message)

    try:
        while True:
            message = await websocket.receive_text()
            data = json.loads(message)
            event = data.get("event")

            if event == "start":
                start = data["start"]
                caller = (start.get("customParameters") or {}).get("From", "Unknown")
                call = await telephony.start_call(
                    start["streamSid"], send, call_id=start.get("callSid"), caller=caller
                )
            elif event == "media" and call is not None:
                if not telephony.handle_media(call, data["media"]["payload"]):
                    break
                if call.expired:
                    logger.info("Call %s reached its time limit", call.stream_id)
                    break
            elif event == "stop":
                logger.info("Stream stopped")
                break
    except WebSocketDisconnect:
        logger.info("Carrier disconnected")
    except Exception:
        logger.exception("Error receiving from carrier")
    finally:
        if call is not None:
            await telephony.end_call(call.stream_id)
