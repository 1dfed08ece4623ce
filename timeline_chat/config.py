from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # LLM providers (empty key => provider reports not_configured)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    llm_timeout_seconds: float = 60.0

    # Folder-backed stores
    store_dir: str = ".timeline"
    store_timeout_seconds: float = 15.0
    store_max_parallel_reads: int = 4
    store_max_summary_reads: int = 20

    # Context pack budgets
    max_context_chars: int = 12000
    max_snippet_chars: int = 800

    # Ranker heuristics (tie-breakers, not invariants)
    ranker_recent_days: int = 7
    ranker_recent_boost: float = 0.35
    ranker_month_days: int = 30
    ranker_month_boost: float = 0.15
    ranker_day_cap_large: int = 2
    ranker_day_cap_small: int = 1

    # Originals augmentation
    originals_max_items: int = 3
    originals_max_chars_per_item: int = 150_000
    originals_max_chars_total: int = 300_000

    # App
    admin_token: str = ""
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
