from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


SANDBOX_PHONE_NUMBER = "whatsapp:+14155238886"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    The admin server rewrites the provider/AI keys in ENV_FILE_PATH, and the
    chat server picks them up the next time it is started.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Databases
    HISTORY_DATABASE_URL: str = "sqlite:///./history.db"
    WORD_BLOCKS_DATABASE_URL: str = "sqlite:///./word_blocks.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # File written by PUT /api/information
    ENV_FILE_PATH: str = ".env"

    # Twilio
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = SANDBOX_PHONE_NUMBER
    TWILIO_VALIDATE_SIGNATURE: bool = False

    # Gemini
    GEMINI_API_KEYS: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"

    # Chat server + tunnel, managed by the admin server
    CHAT_HOST: str = "127.0.0.1"
    CHAT_PORT: int = 3000
    NGROK_BINARY: str = "ngrok"
    NGROK_API_URL: str = "http://127.0.0.1:4040/api/tunnels"
    NGROK_POLL_ATTEMPTS: int = 10
    NGROK_POLL_INTERVAL: float = 1.0
    SERVICE_STOP_TIMEOUT: float = 5.0

    @property
    def is_sandbox(self) -> bool:
        return self.TWILIO_PHONE_NUMBER == SANDBOX_PHONE_NUMBER


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
