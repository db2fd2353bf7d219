from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter (default chat-completion gateway)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Perplexity (sonar family)
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"

    app_name: str = "Advanced Deep Research"
    app_url: str = "http://localhost:3000"
    default_model_key: str = "claude-3.7-sonnet"

    # Model call timeouts (seconds)
    llm_request_timeout: float = 60.0
    llm_stream_timeout: float = 180.0

    # Firecrawl search
    firecrawl_api_key: str = ""
    firecrawl_base_url: str = "https://api.firecrawl.dev/v1"
    firecrawl_request_timeout: float = 60.0
    search_limit: int = 10
    search_country: str = "us"
    search_lang: str = "en"
    search_max_retries: int = 2

    # Research controls
    concurrency_limit: int = 2
    default_depth: int = 2
    default_breadth: int = 3
    learnings_per_query: int = 5
    follow_ups_per_query: int = 3
    report_max_chars: int = 150000

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_to_file: bool = True
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
