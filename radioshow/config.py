"""Application configuration via environment variables."""

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class PersonaSettings(BaseModel):
    """One host, as listed in the PERSONAS JSON array."""

    id: str
    name: str
    voice: str = "ara"
    system_prompt: str = ""


DEFAULT_PERSONAS = [
    PersonaSettings(id="alex", name="Alex", voice="ara"),
    PersonaSettings(id="sam", name="Sam", voice="rex"),
]


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    PORT: int = 5050
    LOG_LEVEL: str = "INFO"

    # Telephony carrier
    TWILIO_AUTH_TOKEN: str
    ALLOWED_CALLERS: str = ""
    WELCOME_MESSAGE: str = "Welcome to the A I podcast. You can speak anytime to join the conversation."

    # Collaborators
    GENERATOR: str = "xai"
    SYNTHESIZER: str = "xai"
    TRANSCRIBER: str = "xai"
    XAI_API_KEY: str = ""
    XAI_BASE_URL: str = "https://api.x.ai/v1"
    MODEL: str = "grok-3"
    TEMPERATURE: float = 0.7
    MAX_TOKENS: int = 1024

    # Show
    TOPIC: str = "The future of AI"
    PERSONAS: list[PersonaSettings] = DEFAULT_PERSONAS
    MAX_TURNS: int | None = None
    FALLBACK_TEXT: str = "Sorry, I lost my train of thought there."
    HISTORY_WINDOW: int = 20
    GENERATION_TIMEOUT: float = 30.0
    SYNTHESIS_TIMEOUT: float = 35.0
    MAX_RETRIES: int = 2
    RETRY_DELAY: float = 2.0
    POLL_INTERVAL_MS: float = 50.0
    SENTENCE_OVERLAP_MS: float = 500.0
    MIN_SENTENCE_WAIT_MS: float = 100.0
    PREGEN_PADDING_MS: float = 200.0
    MAX_TURN_SECONDS: float = 90.0
    ADLIB_PROBABILITY: float = 0.0
    CALLER_HOLD_SECONDS: float = 8.0

    # Outputs
    ENCODER_COMMAND: str = ""
    PREVIEW_COMMAND: str = ""
    KEEPALIVE_MS: float = 100.0

    # Caller audio
    VAD_THRESHOLD: float = 500.0
    VAD_START_FRAMES: int = 3
    VAD_END_FRAMES: int = 25
    VAD_MIN_SPEECH_MS: float = 500.0
    CALLER_GAIN: float = 1.5
    MAX_CODEC_FAILURES: int = 10
    MAX_CALL_DURATION: int = 300

    @property
    def allowed_caller_list(self) -> list[str]:
        """Split ALLOWED_CALLERS into a list, filtering empty strings."""
        return [c.strip() for c in self.ALLOWED_CALLERS.split(",") if c.strip()]
