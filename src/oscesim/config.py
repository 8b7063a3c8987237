"""
Centralized configuration loaded from .env via Pydantic Settings.

Every tunable of the session and scoring engine lives here: model names,
persona limits, credit thresholds, timer defaults. A deployment can
swap the backing language model without touching the engine.
"""

from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict


# Project root is two levels up from this file (src/oscesim/config.py → project root)
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# Load .env globally so litellm can read provider keys
load_dotenv(PROJECT_ROOT / ".env")


class Settings(BaseSettings):
    """Application-wide settings sourced from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Path Utils ───────────────────────────────────────
    PROJECT_ROOT: Path = PROJECT_ROOT

    # ── LLM ──────────────────────────────────────────────
    llm_api_key: str = ""
    patient_model: str = "gemini/gemini-1.5-flash"
    scoring_model: str = "gemini/gemini-2.5-pro"
    patient_temperature: float = 0.8
    patient_max_tokens: int = 200
    scoring_temperature: float = 0.2
    scoring_max_tokens: int = 4096

    # ── Persona ──────────────────────────────────────────
    patient_max_chars: int = 140
    greeting_template: str = "Namaste Doctor. {stem}"
    patient_fallback_deflection: str = (
        "I'm not sure what it is, doctor. That's why I came to see you."
    )

    # ── Scoring ──────────────────────────────────────────
    semantic_confidence_threshold: float = 0.6  # credit requires strictly greater
    semantic_full_credit_confidence: float = 0.8
    deterministic_min_token_length: int = 3

    # ── Session ──────────────────────────────────────────
    default_time_limit_minutes: float = 12

    # ── Data Files ───────────────────────────────────────
    data_dir: Path = DATA_DIR
    case_dir: Path = DATA_DIR / "cases"
    assignments_file: Path = DATA_DIR / "assignments.json"

    # ── Server ───────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    # ── Observability (LangSmith) ────────────────────────
    langchain_tracing_v2: str = "false"
    langchain_api_key: str = ""
    langchain_project: str = "OsceSim"


# Singleton — import `settings` from anywhere
settings = Settings()
