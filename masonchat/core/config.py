from pydantic_settings import BaseSettings



class Settings(BaseSettings):
    PROJECT_NAME: str = "Mason Chat"
    DEBUG: bool = False

    DATABASE_URL: str = "sqlite+aiosqlite:///./masonchat.db"
    LOG_DIR: str = "logs"

    # Room addressing
    NORMALIZE_IDENTITIES: bool = True
    ROOM_SEPARATOR: str = "_"

    # Client controller
    CHAT_SERVER_URL: str = "http://localhost:8000"
    JOIN_TIMEOUT_SECONDS: float = 5.0
    HISTORY_POLL_INTERVAL_SECONDS: float = 5.0
    RECONNECT_BACKOFF_INITIAL_SECONDS: float = 1.0
    RECONNECT_BACKOFF_MAX_SECONDS: float = 30.0
    HTTP_TIMEOUT_SECONDS: float = 10.0

    class Config:
        env_file = ".env"


settings = Settings()
