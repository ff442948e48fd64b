from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # CRM backend
    CRM_API_BASE_URL: str = "http://localhost:3000/api"

    @field_validator('CRM_API_BASE_URL', mode='before')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Paths are joined with a leading slash, so the base never ends in one."""
        if v and v.endswith('/'):
            return v.rstrip('/')
        return v

    CRM_API_TOKEN: str | None = None
    CRM_INSTANCE_ID: str | None = None
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    @field_validator('REQUEST_TIMEOUT_SECONDS')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("REQUEST_TIMEOUT_SECONDS must be positive")
        return v

    # Generative segments
    GENERATIVE_TEMPERATURE: float = 0.1
    GENERATIVE_INCLUDE_CONTEXT: bool = True
    AI_FILTER_FALLBACK_TITLE: str = "AI Filter"

    @field_validator('GENERATIVE_TEMPERATURE')
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("GENERATIVE_TEMPERATURE must be between 0 and 1")
        return v

    # Table defaults
    DEFAULT_PAGE_SIZE: int = 25
    DEFAULT_ORDER_BY: str = "createdAt"
    DEFAULT_ORDER: str = "desc"

    @field_validator('DEFAULT_PAGE_SIZE')
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if not 1 <= v <= 500:
            raise ValueError("DEFAULT_PAGE_SIZE must be between 1 and 500")
        return v

    @field_validator('DEFAULT_ORDER', mode='before')
    @classmethod
    def normalize_order(cls, v: str) -> str:
        """Anything other than asc sorts descending, matching the backend."""
        return "asc" if str(v).lower() == "asc" else "desc"

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def DOCS_ENABLED(self) -> bool:
        """API docs are only served outside production."""
        return not self.is_production

    @property
    def LOG_LEVEL(self) -> str:
        return "DEBUG" if self.DEBUG else "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
