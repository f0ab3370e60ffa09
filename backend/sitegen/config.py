from pydantic_settings import BaseSettings
from functools import lru_cache
import os


class Settings(BaseSettings):
    anthropic_api_key: str = ""
    daytona_api_key: str = ""

    # Generation defaults
    default_model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8000
    # When set, generation frames are read from this URL instead of the
    # in-process Anthropic proxy
    generation_stream_url: str = ""

    # Timeouts for every network suspension point (seconds)
    stream_read_timeout_s: float = 120.0
    install_timeout_s: float = 60.0
    write_timeout_s: float = 30.0

    # Preview refresh after an apply run (milliseconds)
    default_refresh_delay_ms: int = 2000
    package_install_refresh_delay_ms: int = 5000

    # Package installation
    restart_after_install: bool = True
    use_legacy_peer_deps: bool = True
    preinstalled_packages: list[str] = [
        "react",
        "react-dom",
        "vite",
        "@vitejs/plugin-react",
        "tailwindcss",
        "postcss",
        "autoprefixer",
    ]

    # Sandbox layout
    project_root: str = "/home/daytona/app"
    dev_server_port: int = 5173

    log_level: str = "INFO"
    max_chat_messages: int = 100

    class Config:
        # Look for .env in the repo root (two levels up from backend/sitegen/)
        # In deployment env vars are injected directly, .env is optional
        _env_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file = _env_path if os.path.exists(_env_path) else None
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
