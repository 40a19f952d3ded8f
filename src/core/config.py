"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    # ── Warehouse ────────────────────────────────────────
    bigquery_project_id: str = ""
    bigquery_dataset_id: str = ""
    bigquery_table_id: str = ""
    schema_type: str = "canton_transaction"  # canton_transaction | actions
    database_url_override: str = ""

    # ── LLM ──────────────────────────────────────────────
    llm_provider: str = "mock"  # mock | openai | anthropic
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    llm_timeout_s: float = 30.0
    llm_temperature: float = 0.2

    # ── Execution ────────────────────────────────────────
    max_retries: int = 2
    query_timeout_ms: int = 60_000
    query_cache_ttl_s: float = 300.0
    default_report_limit: int = 5000
    default_query_limit: int = 1000

    # ── Presentation ─────────────────────────────────────
    max_display_rows: int = 100
    download_row_limit: int = 5000
    percent_scale_threshold: float = 10.0  # 0 disables the small-value scaling
    include_sql: bool = False
    include_performance_metrics: bool = True
    suggest_visualizations: bool = True
    suggest_alternatives: bool = True
    confirmation_threshold: float = 0.7
    always_confirm: bool = True
    session_ttl_s: float = 1800.0

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    streamlit_port: int = 8501
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return f"bigquery://{self.bigquery_project_id}/{self.bigquery_dataset_id}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
