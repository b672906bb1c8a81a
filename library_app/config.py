import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    # Storage
    data_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    static_dir: str = os.getenv("STATIC_DIR", "static")
    covers_dir: str = os.getenv("COVERS_DIR", os.path.join("static", "src", "assets", "images"))

    # Loan rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "15"))
    loan_extension_days: int = int(os.getenv("LOAN_EXTENSION_DAYS", "5"))
    max_loan_extensions: int = int(os.getenv("MAX_LOAN_EXTENSIONS", "2"))
    max_loan_quantity: int = int(os.getenv("MAX_LOAN_QUANTITY", "20"))

    # Security
    min_password_length: int = int(os.getenv("MIN_PASSWORD_LENGTH", "4"))
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "10"))
    password_reset_ttl_seconds: int = int(os.getenv("PASSWORD_RESET_TTL_SECONDS", "600"))

    # Uploads
    max_cover_bytes: int = int(os.getenv("MAX_COVER_BYTES", str(6 * 1024 * 1024)))
    allowed_image_extensions: list = field(default_factory=lambda: [".jpg", ".jpeg", ".png", ".webp", ".gif"])

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Management API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _flag("DEBUG")


settings = Settings()
