import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_hours: int,
        default_currency: str,
        fx_provider: str,
        fx_markup_bps: int,
        fx_timeout_secs: float,
        exchangerate_api_key: str,
        pdf_daily_limit: int,
        scheduler_enabled: bool,
        smart_input_provider: str,
        smart_input_timeout_secs: float,
        ai_api_keys: dict[str, str],
        ai_models: dict[str, str],
        ollama_base_url: str,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.default_currency = default_currency
        self.fx_provider = fx_provider
        self.fx_markup_bps = fx_markup_bps
        self.fx_timeout_secs = fx_timeout_secs
        self.exchangerate_api_key = exchangerate_api_key
        self.pdf_daily_limit = pdf_daily_limit
        self.scheduler_enabled = scheduler_enabled
        self.smart_input_provider = smart_input_provider
        self.smart_input_timeout_secs = smart_input_timeout_secs
        self.ai_api_keys = ai_api_keys
        self.ai_models = ai_models
        self.ollama_base_url = ollama_base_url


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("DASHBOARD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


AI_PROVIDERS = ("claude", "openai", "gemini", "openrouter", "ollama")
AI_DEFAULT_MODELS = {
    "claude": "claude-sonnet-4-20250514",
    "openai": "gpt-4o-mini",
    "gemini": "gemini-2.0-flash",
    "openrouter": "openai/gpt-4o-mini",
    "ollama": "llama3.2",
}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "dashboard.db"
    return Settings(
        data_dir=data_dir,
        database_url=os.getenv("DASHBOARD_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("DASHBOARD_TIMEZONE", "UTC"),
        secret_key=os.getenv(
            "DASHBOARD_SECRET_KEY",
            "3f0c2d4b8e41a9d7c5b6e2f18a7d90c4b1e3f5a6d8c2b4e6f1a3c5d7e9b0a2c4",
        ),
        token_max_age_hours=int(os.getenv("DASHBOARD_TOKEN_MAX_AGE_HOURS", "24")),
        default_currency=os.getenv("DASHBOARD_DEFAULT_CURRENCY", "USD").upper(),
        fx_provider=os.getenv("DASHBOARD_FX_PROVIDER", "frankfurter"),
        fx_markup_bps=int(os.getenv("DASHBOARD_FX_MARKUP_BPS", "0")),
        fx_timeout_secs=float(os.getenv("DASHBOARD_FX_TIMEOUT_SECS", "5")),
        exchangerate_api_key=os.getenv("DASHBOARD_EXCHANGERATE_API_KEY", ""),
        pdf_daily_limit=int(os.getenv("DASHBOARD_PDF_DAILY_LIMIT", "10")),
        scheduler_enabled=_env_flag("DASHBOARD_SCHEDULER_ENABLED", "true"),
        smart_input_provider=os.getenv("DASHBOARD_SMART_INPUT_PROVIDER", "claude").lower(),
        smart_input_timeout_secs=float(os.getenv("DASHBOARD_SMART_INPUT_TIMEOUT_SECS", "30")),
        ai_api_keys={
            name: os.getenv(f"DASHBOARD_{name.upper()}_API_KEY", "") for name in AI_PROVIDERS
        },
        ai_models={
            name: os.getenv(f"DASHBOARD_{name.upper()}_MODEL", model)
            for name, model in AI_DEFAULT_MODELS.items()
        },
        ollama_base_url=os.getenv("DASHBOARD_OLLAMA_BASE_URL", "http://localhost:11434"),
    )
