# backend/callscribe/config.py
import os
import re
from pathlib import Path
from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parents[1]   # backend/
REPO_DIR = BACKEND_DIR.parent                        # repo root

ENV_BACKEND = BACKEND_DIR / ".env"
ENV_REPO = REPO_DIR / ".env"
ENV_FILE = ENV_BACKEND if ENV_BACKEND.exists() else ENV_REPO

# Values already present in the process environment win over the file.
load_dotenv(dotenv_path=str(ENV_FILE), override=False)


def _parse_origins(raw: str) -> list[str]:
    # split, strip, drop empties, drop trailing slashes
    out = []
    for o in (raw or "").split(","):
        o = (o or "").strip().rstrip("/")
        if o:
            out.append(o)
    return out


def _env_bool(name: str, default: str = "true") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./callscribe.db")

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    # Empty disables the rotating file sink
    LOG_DIR: str = os.getenv("LOG_DIR", "")

    # Public origin used to build provider callback URLs. Falls back to the
    # origin of the request that started the pipeline.
    PUBLIC_BASE_URL: str | None = os.getenv("PUBLIC_BASE_URL")

    # Shared secret for the internal trigger endpoint (X-Internal-Secret)
    INTERNAL_API_SECRET: str | None = os.getenv("INTERNAL_API_SECRET")

    # ================= Identity provider =================
    # Tokens are issued elsewhere; we only verify them.
    JWT_SECRET_KEY: str | None = os.getenv("JWT_SECRET_KEY")
    JWT_AUDIENCE: str | None = os.getenv("JWT_AUDIENCE")

    # ================= HighLevel (CRM) =================
    GHL_API_BASE_URL: str = os.getenv("GHL_API_BASE_URL", "https://services.leadconnectorhq.com")
    GHL_API_VERSION: str = os.getenv("GHL_API_VERSION", "2021-07-28")
    GHL_TIMEOUT_SECONDS: float = float(os.getenv("GHL_TIMEOUT_SECONDS", "25"))
    CRM_NOTES_ENABLED: bool = _env_bool("CRM_NOTES_ENABLED", "true")

    # ================= AssemblyAI (speech-to-text) =================
    ASSEMBLYAI_API_KEY: str | None = os.getenv("ASSEMBLYAI_API_KEY")
    ASSEMBLYAI_BASE_URL: str = os.getenv("ASSEMBLYAI_BASE_URL", "https://api.assemblyai.com")
    # When set, AssemblyAI sends it back in X-Callback-Secret on every callback
    ASSEMBLYAI_WEBHOOK_SECRET: str | None = os.getenv("ASSEMBLYAI_WEBHOOK_SECRET")

    # ================= LLM analysis =================
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    ANALYSIS_TIMEOUT_SECONDS: float = float(os.getenv("ANALYSIS_TIMEOUT_SECONDS", "45"))

    # ================= Reconciliation sweep =================
    RECONCILE_ENABLED: bool = _env_bool("RECONCILE_ENABLED", "true")
    RECONCILE_INTERVAL_SECONDS: int = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "300"))
    STALE_PROCESSING_MINUTES: int = int(os.getenv("STALE_PROCESSING_MINUTES", "30"))

    RATE_LIMIT_ENABLED: bool = _env_bool("RATE_LIMIT_ENABLED", "true")

    # IMPORTANT: keep localhost + 127.0.0.1 for the dashboard dev server
    CORS_ORIGINS: list[str] = _parse_origins(
        os.getenv(
            "CORS_ORIGINS",
            "http://127.0.0.1:3000,http://localhost:3000",
        )
    )


settings = Settings()


# =============================================================================
# CONFIGURATION VALIDATION
# =============================================================================

class ConfigValidationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(raise_on_error: bool = True) -> dict:
    """
    Validate all configuration settings.

    Args:
        raise_on_error: If True, raises ConfigValidationError on critical errors.
                       If False, returns dict with errors and warnings.

    Returns:
        Dict with 'errors' (critical) and 'warnings' (non-critical) lists.

    Raises:
        ConfigValidationError: If raise_on_error=True and critical errors found.
    """
    errors = []
    warnings = []

    if not settings.DATABASE_URL:
        errors.append("DATABASE_URL is required")

    # Required for the transcription pipeline
    if not settings.ASSEMBLYAI_API_KEY:
        errors.append("ASSEMBLYAI_API_KEY is required for transcription")
    if not settings.INTERNAL_API_SECRET:
        errors.append("INTERNAL_API_SECRET is required for the internal trigger endpoint")
    if not settings.JWT_SECRET_KEY:
        errors.append("JWT_SECRET_KEY is required to verify dashboard sessions")

    # Warnings - Degraded functionality
    if not settings.OPENAI_API_KEY:
        warnings.append("OPENAI_API_KEY missing - transcripts get fallback analysis only")
    if not settings.ASSEMBLYAI_WEBHOOK_SECRET:
        warnings.append("ASSEMBLYAI_WEBHOOK_SECRET missing - transcription callbacks are unauthenticated")
    if not settings.PUBLIC_BASE_URL:
        warnings.append("PUBLIC_BASE_URL missing - callback URLs derive from the request origin")

    if settings.ENVIRONMENT == "production":
        if not settings.CORS_ORIGINS or any("localhost" in o for o in settings.CORS_ORIGINS):
            warnings.append("CORS_ORIGINS includes localhost in production - consider restricting")
        if settings.DATABASE_URL.startswith("sqlite"):
            warnings.append("SQLite DATABASE_URL in production - a single writer process is assumed")

    result = {"errors": errors, "warnings": warnings}

    if raise_on_error and errors:
        raise ConfigValidationError(f"Configuration errors: {'; '.join(errors)}")

    return result


def get_config_status() -> dict:
    """
    Get configuration status for health check endpoints.

    Returns:
        Dict with configuration presence and validation status.
    """
    return {
        "environment": settings.ENVIRONMENT,
        "database_configured": bool(settings.DATABASE_URL),
        "assemblyai_configured": bool(settings.ASSEMBLYAI_API_KEY),
        "openai_configured": bool(settings.OPENAI_API_KEY),
        "auth_configured": bool(settings.JWT_SECRET_KEY),
        "internal_secret_configured": bool(settings.INTERNAL_API_SECRET),
        "callback_auth_enabled": bool(settings.ASSEMBLYAI_WEBHOOK_SECRET),
        "crm_notes_enabled": settings.CRM_NOTES_ENABLED,
        "reconcile_enabled": settings.RECONCILE_ENABLED,
    }


def mask_url(url: str) -> str:
    """Mask sensitive parts of URLs for safe logging."""
    if not url:
        return "[not set]"
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:****@", url)
