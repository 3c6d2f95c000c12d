from pydantic_settings import BaseSettings
from typing import List, Any, Optional
import json


def parse_list(v: Any) -> List[str]:
    """Parse a list setting from a JSON array or a comma-separated string"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in v.split(',') if item.strip()]
    return []


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "Alumni Records API"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    PORT: int = 8000

    # ==========================================
    # Database
    # ==========================================
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: str = "alumni_records"

    # ==========================================
    # Auth
    # ==========================================
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 30  # 30 days
    BCRYPT_ROUNDS: int = 12
    # Least privilege unless an operator opts in
    DEFAULT_USER_ROLE: str = "user"
    MIN_PASSWORD_LENGTH: int = 6

    # ==========================================
    # CORS
    # ==========================================
    CORS_ORIGINS_STR: str = "http://localhost:3000"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        return parse_list(self.CORS_ORIGINS_STR)

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # ==========================================
    # File storage
    # ==========================================
    STORAGE_BACKEND: str = "local"  # "s3" or "local"
    S3_BUCKET_NAME: str = ""
    S3_PUBLIC_URL: str = ""
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_REGION: str = "ap-south-1"
    UPLOAD_DIR: str = "uploads"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    MAX_UPLOAD_SIZE_MB: int = 10
    ALLOWED_UPLOAD_EXTENSIONS_STR: str = "jpg,jpeg,png,pdf"

    @property
    def ALLOWED_UPLOAD_EXTENSIONS(self) -> List[str]:
        return [ext.lower().lstrip('.') for ext in parse_list(self.ALLOWED_UPLOAD_EXTENSIONS_STR)]

    # ==========================================
    # Alumni records
    # ==========================================
    STRICT_NESTED_JSON: bool = False
    ENFORCE_PASSING_YEAR_FORMAT: bool = False
    DEFAULT_PAGE_SIZE: int = 10
    MAX_PAGE_SIZE: int = 100
    SEARCH_RESULT_LIMIT: int = 20

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


# Create settings instance
settings = Settings()
