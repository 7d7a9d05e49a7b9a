"""FastAPI application: health check, TwiML webhook, media stream and producer signals."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from twilio.request_validator import RequestValidator  # type: ignore[import-untyped]
from twilio.twiml.voice_response import VoiceResponse  # type: ignore[import-untyped]

from .bridge import run_bridge
from .config import Settings
from .show import RadioShow

logger = logging.getLogger(__name__)


class SignalRequest(BaseModel):
    """Body of POST /signals."""

    source: str
    payload: str
    origin: str | None = None


def create_app(settings: Settings | None = None, show: RadioShow | None = None) -> FastAPI:
    """Build the app around one show. The show runs for the app's lifetime."""
    settings = settings or Settings()  # type: ignore[call-arg]
    show = show or RadioShow.from_settings(settings)
    validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await show.start()
        try:
            yield
        finally:
            await show.stop()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.show = show

    @app.get("/")
    async def health() -> dict[str, str | int | bool]:
        """Health check endpoint."""
        return {
            "status": "ok",
            "running": show.running,
            "calls": len(show.telephony.calls),
            "turns": show.orchestrator.turns_completed,
        }

    @app.post("/incoming-call")
    async def incoming_call(request: Request) -> Response:
        """TwiML webhook for incoming Twilio calls."""
        signature = request.headers.get("X-Twilio-Signature", "")
        form = dict(await request.form())
        proto = request.headers.get("x-forwarded-proto", "https")
        host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
        url = f"{proto}://{host}{request.url.path}"

        if not validator.validate(url, form, signature):
            logger.warning("Invalid Twilio signature")
            return JSONResponse({"error": "Forbidden"}, status_code=403)

        caller = str(form.get("From", ""))
        allowed = settings.allowed_caller_list
        if allowed and caller not in allowed:
            logger.warning("Unauthorized caller: %s", caller)
            return JSONResponse({"error": "Forbidden"}, status_code=403)

        logger.info("Incoming call from %s", caller or "unknown number")
        response = VoiceResponse()
        if settings.WELCOME_MESSAGE:
            response.say(settings.WELCOME_MESSAGE)
        connect = response.connect()
        stream = connect.stream(url=f"wss://{host}/media-stream")
        stream.parameter(name="From", value=caller or "Unknown")

        return Response(content=str(response), media_type="application/xml")

    @app.websocket("/media-stream")
    async def media_stream(websocket: WebSocket) -> None:
        """Accept Twilio Media Stream and put the caller on the show."""
        await websocket.accept()
        logger.info("Media stream connected from %s", websocket.client)
        try:
            await run_bridge(websocket, show.telephony)
        except Exception:
            logger.exception("Bridge error")
        finally:
            logger.info("Media stream closed")

    @app.post("/signals", status_code=202)
    async def signals(body: SignalRequest) -> Response:
        """Producer input: breaking news, listener comments, trends, background news."""
        try:
            show.submit(body.source, body.payload, origin=body.origin)
        except ValueError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        return JSONResponse({"status": "queued", "source": body.source}, status_code=202)

    return app


def main() -> None:
    settings = Settings()  # type: ignore[call-arg]
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    main()
