import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_csv_list(name: str, default: str | None = None) -> list[str]:
    raw = _getenv(name, default)
    if raw is None:
        return []
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./tamilsubs.db") or "sqlite:///./tamilsubs.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.port = int(_getenv("PORT") or _getenv("SERVER_PORT", "4000") or "4000")
        self.static_dist = _getenv("STATIC_DIST")

        self.session_secret = _getenv("SESSION_SECRET")
        self.session_cookie_name = _getenv("SESSION_COOKIE_NAME", "tamilsubs_session") or "tamilsubs_session"
        self.session_ttl_days = int(_getenv("SESSION_TTL_DAYS", "30") or "30")
        self.session_cookie_secure = _getenv_bool("SESSION_COOKIE_SECURE", default=(self.environment == "production"))

        self.google_client_id = _getenv("GOOGLE_CLIENT_ID")
        self.google_jwks_url = (
            _getenv("GOOGLE_JWKS_URL", "https://www.googleapis.com/oauth2/v3/certs")
            or "https://www.googleapis.com/oauth2/v3/certs"
        )

        self.razorpay_key_id = _getenv("RAZORPAY_KEY_ID")
        self.razorpay_key_secret = _getenv("RAZORPAY_KEY_SECRET")
        self.razorpay_api_base = _getenv("RAZORPAY_API_BASE", "https://api.razorpay.com") or "https://api.razorpay.com"

        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS") or _getenv("CLIENT_ORIGIN")

        self.dev_bypass_login = _getenv_bool("DEV_BYPASS_LOGIN", default=False)
        self.dev_bypass_user_id = _getenv("DEV_BYPASS_USER_ID", "dev-user") or "dev-user"
        self.dev_bypass_name = _getenv("DEV_BYPASS_NAME", "Dev User") or "Dev User"
        self.dev_bypass_email = _getenv("DEV_BYPASS_EMAIL", "dev@example.com") or "dev@example.com"
        self.dev_bypass_allowed_origins = _getenv_csv_list("DEV_BYPASS_ALLOWED_ORIGINS", "http://localhost:3000")

        self.llm_api_key = _getenv("LLM_API_KEY") or _getenv("GEMINI_API_KEY")
        self.llm_base_url = (
            _getenv("LLM_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/")
            or "https://generativelanguage.googleapis.com/v1beta/openai/"
        )
        self.llm_model = _getenv("LLM_MODEL", "gemini-2.5-flash") or "gemini-2.5-flash"
        self.llm_temperature = float(_getenv("LLM_TEMPERATURE", "0.2") or "0.2")

        self.ledger_queue_mode = (_getenv("LEDGER_QUEUE_MODE", "per_account") or "per_account").lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def missing_required(self) -> list[str]:
        missing: list[str] = []
        if not self.session_secret:
            missing.append("SESSION_SECRET")
        if not self.google_client_id:
            missing.append("GOOGLE_CLIENT_ID")
        if not self.razorpay_key_id:
            missing.append("RAZORPAY_KEY_ID")
        if not self.razorpay_key_secret:
            missing.append("RAZORPAY_KEY_SECRET")
        return missing

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:3000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins


settings = Settings()
