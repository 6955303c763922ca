# Test Configuration - Settings for live model streaming tests.
from pydantic_settings import BaseSettings

class TestSettings(BaseSettings):
    """Runtime configuration for live tests against a real model endpoint."""
    # Provider Logic (Options: 'local', 'openai', 'openrouter')
    LIVE_PROVIDER: str = "openrouter"
    LIVE_MODEL: str = "z-ai/glm-4.5-air:free"
    LIVE_BASE_URL: str = ""
    LIVE_API_KEY: str = ""

    # Local LLM Configuration (Docker Model Runner / Ollama)
    LOCAL_LLM_URL: str = "http://host.docker.internal:12434"

    # Guard rails for a live run
    LIVE_TIMEOUT_SECONDS: float = 120.0
    LIVE_DEBATE_ROUNDS: int = 1

    model_config = {"env_file": ".env", "extra": "ignore"}

settings = TestSettings()


def test_settings_defaults_are_usable():
    fresh = TestSettings(_env_file=None)
    assert fresh.LIVE_PROVIDER in ("local", "openai", "openrouter")
    assert fresh.LIVE_TIMEOUT_SECONDS > 0
    assert fresh.LIVE_DEBATE_ROUNDS >= 1
