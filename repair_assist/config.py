"""
Configuration for the Repair Assist diagnosis service.

Everything the pipeline needs from the environment is read once into a
Settings object and passed to the orchestrator, so which stages are active
is decided by which credentials are present.
"""
import os
from dataclasses import dataclass, field
from typing import Optional

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


# Per-adapter-type timeouts in seconds
DEFAULT_TIMEOUTS = {
    "direct_ai": 45.0,
    "database": 10.0,
    "web_search": 10.0,
    "search_summary": 30.0,
    "image_analysis": 30.0,
    "description_analysis": 20.0,
}

DEFAULT_DAILY_SCAN_LIMIT = 2


@dataclass
class Settings:
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com"
    openai_model: str = "gpt-4o-mini"
    search_api_key: Optional[str] = None
    search_engine_id: Optional[str] = None
    database_url: str = "sqlite:///./repair_assist.db"
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    daily_scan_limit: int = DEFAULT_DAILY_SCAN_LIMIT
    timeouts: dict = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    trust_proxy_headers: bool = False
    log_json: bool = True
    log_level: str = "INFO"
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from process environment (and .env, if present)."""
        origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            search_api_key=os.getenv("GOOGLE_SEARCH_API_KEY"),
            search_engine_id=os.getenv("GOOGLE_CSE_ID"),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./repair_assist.db"),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY"),
            daily_scan_limit=max(0, int(os.getenv("DAILY_SCAN_LIMIT", str(DEFAULT_DAILY_SCAN_LIMIT)))),
            timeouts={
                "direct_ai": _env_float("TIMEOUT_DIRECT_AI", DEFAULT_TIMEOUTS["direct_ai"]),
                "database": _env_float("TIMEOUT_DATABASE", DEFAULT_TIMEOUTS["database"]),
                "web_search": _env_float("TIMEOUT_WEB_SEARCH", DEFAULT_TIMEOUTS["web_search"]),
                "search_summary": _env_float("TIMEOUT_SEARCH_SUMMARY", DEFAULT_TIMEOUTS["search_summary"]),
                "image_analysis": _env_float("TIMEOUT_IMAGE_ANALYSIS", DEFAULT_TIMEOUTS["image_analysis"]),
                "description_analysis": _env_float(
                    "TIMEOUT_DESCRIPTION_ANALYSIS", DEFAULT_TIMEOUTS["description_analysis"]
                ),
            },
            trust_proxy_headers=_env_bool("TRUST_PROXY_HEADERS", False),
            log_json=_env_bool("LOG_JSON", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )

    @property
    def gemini_configured(self) -> bool:
        return bool(self.gemini_api_key)

    @property
    def openai_configured(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def search_configured(self) -> bool:
        # Both the API key and the engine id are required
        return bool(self.search_api_key and self.search_engine_id)

    @property
    def auth_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    def timeout_for(self, adapter_type: str) -> float:
        return self.timeouts.get(adapter_type, DEFAULT_TIMEOUTS.get(adapter_type, 30.0))

