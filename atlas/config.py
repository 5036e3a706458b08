from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_referer: str = "https://ar.khamel.com"
    openrouter_title: str = "Atlas Researcher"
    completion_timeout_seconds: float = 120.0
    completion_max_tokens: int = 4000
    completion_temperature: float = 0.7

    # Model strategy (task kind -> primary model)
    planning_model: str = "google/gemini-2.5-flash-preview-09-2025"
    reasoning_model: str = "google/gemini-2.5-flash-preview-09-2025"
    summarization_model: str = "google/gemini-2.5-flash-preview-09-2025"
    synthesis_model: str = "google/gemini-2.5-flash-preview-09-2025"
    fallback_models: str = (
        "google/gemini-2.5-flash-lite-preview-09-2025,"
        "meta-llama/llama-3.1-70b-instruct:free,"
        "meta-llama/llama-3.1-8b-instruct:free,"
        "google/gemini-2.0-flash-001"
    )

    # Search providers, tried in order
    search_providers: str = "tavily,tavily_backup,brave"
    tavily_api_key: str = ""
    tavily_api_key_backup: str = ""
    brave_api_key: str = ""
    search_max_results: int = 5
    search_delay_seconds: float = 1.0
    search_timeout_seconds: float = 15.0

    # Evaluation
    evaluation_batch_size: int = 4
    evaluation_max_sources: int = 10  # per subtopic in "normal" mode
    evaluation_delay_seconds: float = 0.5
    fetch_timeout_seconds: float = 10.0
    fetch_max_chars: int = 5000
    min_relevance: float = 5.0
    min_credibility: float = 4.0

    # Pipeline
    heartbeat_interval_seconds: float = 5.0
    client_timeout_seconds: float = 600.0
    min_question_length: int = 10

    # Sessions
    session_store_path: str = ".cache/research_sessions.json"
    session_autosave_seconds: float = 30.0
    session_cleanup_interval_seconds: float = 3600.0
    session_retention_hours: float = 24.0
    resume_window_hours: float = 2.0

    # Reports
    reports_dir: str = "reports"
    reports_index_limit: int = 100

    # App
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

    @property
    def fallback_model_list(self) -> list[str]:
        return [m.strip() for m in self.fallback_models.split(",") if m.strip()]

    @property
    def search_provider_list(self) -> list[str]:
        return [p.strip().lower() for p in self.search_providers.split(",") if p.strip()]


settings = Settings()
