import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")
    cors_origins: list = field(default_factory=lambda: os.getenv("CORS_ORIGINS", "*").split(","))

    # Database
    data_file: str = os.getenv("LIBRARY_DB_FILE", "libdesk.db")

    # Redis cache
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_ttl: int = int(os.getenv("CACHE_TTL", "300"))  # 5 minutes

    # Security
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", secret_key)
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days
    staff_roles: list = field(default_factory=lambda: ["admin", "librarian"])

    # Circulation rules
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    default_max_books: int = int(os.getenv("DEFAULT_MAX_BOOKS", "5"))
    overdue_fine_per_day: float = float(os.getenv("OVERDUE_FINE_PER_DAY", "10"))
    due_reminder_days: int = int(os.getenv("DUE_REMINDER_DAYS", "3"))
    auto_overdue_fines: bool = _flag("AUTO_OVERDUE_FINES", "True")

    # Shelf layout
    shelf_grid_columns: int = int(os.getenv("SHELF_GRID_COLUMNS", "4"))
    shelf_spacing_x: int = int(os.getenv("SHELF_SPACING_X", "260"))
    shelf_spacing_y: int = int(os.getenv("SHELF_SPACING_Y", "180"))

    # E-mail
    smtp_host: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: Optional[str] = os.getenv("SMTP_USERNAME")
    smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD")
    smtp_from_email: str = os.getenv("SMTP_FROM_EMAIL", "noreply@library.local")
    smtp_from_name: str = os.getenv("SMTP_FROM_NAME", "Library")
    enable_email_notifications: bool = _flag("ENABLE_EMAIL_NOTIFICATIONS", "False")

    # Open Library
    openlibrary_timeout: float = float(os.getenv("OPENLIBRARY_TIMEOUT", "10"))

    # AI assistant (OpenRouter)
    openrouter_api_key: Optional[str] = os.getenv("OPENROUTER_API_KEY")
    openrouter_base_url: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    openrouter_model: str = os.getenv("OPENROUTER_MODEL", "openai/gpt-4o-mini")
    openrouter_timeout: float = float(os.getenv("OPENROUTER_TIMEOUT", "60"))
    enable_ai_assistant: bool = _flag("ENABLE_AI_ASSISTANT", "True")

    # Uploads
    covers_dir: str = os.getenv("COVERS_DIR", "covers")
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "10485760"))  # 10MB
    cover_max_width: int = int(os.getenv("COVER_MAX_WIDTH", "900"))

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Desk")
    app_version: str = os.getenv("APP_VERSION", "1.4.0")
    debug: bool = _flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
