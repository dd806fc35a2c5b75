# [Core: Configuration]
"""
Application configuration via environment variables.
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment / .env file."""

    # App
    app_name: str = "Loop Forge"
    debug: bool = True

    # CORS
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Model transport (any OpenAI-compatible endpoint)
    llm_api_key: str = ""
    llm_base_url: str = ""  # e.g. https://generativelanguage.googleapis.com/v1beta/openai/
    llm_timeout_seconds: float = 300.0
    llm_max_retries: int = 0  # the loop itself never retries; keep the SDK quiet too

    # Run defaults (used when a start request omits a field)
    default_model_name: str = "gemini-2.5-flash"
    default_min_iterations: int = 2
    default_max_iterations: int = 5
    default_target_score: int = 80
    default_draft_count: int = 2

    # Writer prompt
    selected_excerpt_chars: int = 300

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
