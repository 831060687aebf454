from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    ws_path: str = "/ws"
    allowed_origins: list[str] = ["*"]
    log_level: str = "INFO"

    # Phase timing, in seconds
    night_duration: int = 60
    day_duration: int = 120
    # Length of one countdown step; tests shrink it
    tick_seconds: float = 1.0
    # Night on which nobody may act (0 disables)
    skip_night_number: int = 2

    max_players: int = 10
    max_chat_length: int = 500
    # "delimited" -> event@@@{json}; "json" -> {"event": ..., "data": ...}
    outbound_framing: Literal["delimited", "json"] = "delimited"

    model_config = SettingsConfigDict(
        env_prefix="MAFIA_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
