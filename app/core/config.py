from typing import List, Union, Optional
from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "Clinic Scheduling Engine"
    API_V1_STR: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Database
    POSTGRES_SERVER: Optional[str] = None
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None
    POSTGRES_DB: Optional[str] = None
    POSTGRES_PORT: str = "5432"
    DATABASE_URL: Optional[str] = None

    # Scheduling policy
    BUSINESS_OPEN_HOUR: int = 7
    BUSINESS_CLOSE_HOUR: int = 19
    SNAP_INTERVAL_MINUTES: int = 15
    MIN_APPOINTMENT_MINUTES: int = 15
    RESIZE_PIXELS_PER_MINUTE: float = 2.0
    CALENDAR_HOUR_HEIGHT_PX: float = 64.0
    MAX_RECURRENCE_OCCURRENCES: int = 100

    @model_validator(mode='after')
    def assemble_db_connection(self) -> 'Settings':
        if not self.DATABASE_URL:
            if all([self.POSTGRES_USER, self.POSTGRES_PASSWORD, self.POSTGRES_SERVER, self.POSTGRES_DB]):
                self.DATABASE_URL = str(
                    f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@"
                    f"{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
                )
            else:
                self.DATABASE_URL = "sqlite+aiosqlite:///./scheduling.db"

        if self.DATABASE_URL.startswith("postgresql://"):
            self.DATABASE_URL = self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg spells the ssl flag differently
        self.DATABASE_URL = self.DATABASE_URL.replace("sslmode=require", "ssl=require")

        return self

    @model_validator(mode='after')
    def check_business_hours(self) -> 'Settings':
        if not 0 <= self.BUSINESS_OPEN_HOUR < self.BUSINESS_CLOSE_HOUR <= 24:
            raise ValueError("BUSINESS_OPEN_HOUR must be before BUSINESS_CLOSE_HOUR (0-24)")
        if self.SNAP_INTERVAL_MINUTES <= 0 or self.MIN_APPOINTMENT_MINUTES <= 0:
            raise ValueError("Snap interval and minimum duration must be positive")
        if self.RESIZE_PIXELS_PER_MINUTE <= 0:
            raise ValueError("RESIZE_PIXELS_PER_MINUTE must be positive")
        return self

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra='ignore')

settings = Settings()
