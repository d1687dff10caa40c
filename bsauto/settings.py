import secrets
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "B & S Auto Sales"
    APP_ENV: str = "development"
    PORT: int = 8080

    ADMIN_PASSWORD: str | None = None
    SESSION_SECRET: str | None = None
    SESSION_COOKIE_NAME: str = "bell_sid"
    SESSION_MAX_AGE_SECONDS: int = 8 * 60 * 60

    # Default to a SQLite database next to the package. In production set
    # DATA_DIR (or DATABASE_URL) to a persistent volume.
    DATA_DIR: str = BASE_DIR.as_posix()
    DATABASE_URL: str | None = None
    UPLOAD_DIR: str | None = None

    MAX_UPLOAD_BYTES: int = 15 * 1024 * 1024
    MAX_UPLOAD_FILES: int = 20

    CLOUDINARY_CLOUD_NAME: str | None = None
    CLOUDINARY_API_KEY: str | None = None
    CLOUDINARY_API_SECRET: str | None = None
    CLOUDINARY_FOLDER: str = "bs-auto-sales"

    SENDGRID_API_KEY: str | None = None
    CONTACT_TO: str | None = None
    FROM_EMAIL: str | None = None

    CORS_ORIGINS: str = ""
    # Proxy addresses whose X-Forwarded-For uvicorn trusts (comma separated)
    FORWARDED_ALLOW_IPS: str = "127.0.0.1"
    CONTACT_ALLOWED_ORIGINS: str = ""

    API_RATE_WINDOW_SECONDS: int = 15 * 60
    API_RATE_MAX: int = 100
    MUTATION_RATE_WINDOW_SECONDS: int = 15 * 60
    MUTATION_RATE_MAX: int = 30
    LOGIN_RATE_WINDOW_SECONDS: int = 15 * 60
    LOGIN_RATE_MAX: int = 5
    CONTACT_RATE_WINDOW_SECONDS: int = 60 * 60
    CONTACT_RATE_MAX: int = 5

    # Random per-process secret used when SESSION_SECRET is unset (dev only)
    dev_secret: str = Field(default_factory=lambda: secrets.token_hex(32), exclude=True)

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() == "production"

    @property
    def admin_password(self) -> str:
        return self.ADMIN_PASSWORD or "bell1234"  # dev-only fallback

    @property
    def session_secret(self) -> str:
        return self.SESSION_SECRET or self.dev_secret

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL or f"sqlite:///{Path(self.DATA_DIR) / 'cars.db'}"

    @property
    def upload_dir(self) -> Path:
        return Path(self.UPLOAD_DIR) if self.UPLOAD_DIR else Path(self.DATA_DIR) / "uploads"

    @property
    def csrf_cookie_name(self) -> str:
        return "__Host-csrf" if self.is_production else "csrf"

    @property
    def cloudinary_configured(self) -> bool:
        return bool(self.CLOUDINARY_CLOUD_NAME and self.CLOUDINARY_API_KEY and self.CLOUDINARY_API_SECRET)

    def cors_origins(self) -> list[str]:
        origins = _split(self.CORS_ORIGINS)
        if not self.is_production:
            origins += self._local_origins()
        return origins

    def contact_origins(self) -> set[str]:
        origins = set(_split(self.CONTACT_ALLOWED_ORIGINS or self.CORS_ORIGINS))
        if not self.is_production:
            origins.update(self._local_origins())
        return origins

    def _local_origins(self) -> list[str]:
        ports = {8080, self.PORT}
        return [f"http://{host}:{p}" for p in sorted(ports) for host in ("localhost", "127.0.0.1")]

    def check_production(self) -> None:
        """Refuse to start a production instance without real secrets."""
        if not self.is_production:
            return
        missing = [k for k in ("ADMIN_PASSWORD", "SESSION_SECRET") if not getattr(self, k)]
        if missing:
            raise RuntimeError(f"missing required settings in production: {', '.join(missing)}")


def _split(value: str) -> list[str]:
    return [o.strip() for o in (value or "").split(",") if o.strip()]


settings = Settings()
