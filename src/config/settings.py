from typing import Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BACKENDS = ("rest", "sql", "memory")


class Settings(BaseSettings):
    """
    Environment-backed settings for the node agent.
    Loaded once by the entry point and turned into an AgentConfig.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    COMMAND_HMAC_SECRET: str = Field(min_length=24)

    PROJECT_ID: str = Field(
        default="global",
        min_length=1,
        validation_alias=AliasChoices("PROJECT_ID", "HOCKER_PROJECT_ID"),
    )
    NODE_ID: str = Field(default="node-agent-1", min_length=1)

    BACKEND: str = "rest"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    DATABASE_URL: Optional[str] = None

    SANDBOX_ROOT: str = "./sandbox"
    SHELL_ALLOWLIST: str = "ls,whoami,pwd,echo,cat,uname,df,uptime"
    SHELL_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    MAX_OUTPUT_BYTES: int = Field(default=65536, gt=0)
    FILE_HEAD_MAX_BYTES: int = Field(default=65536, gt=0)
    MAX_DIR_ENTRIES: int = Field(default=500, gt=0)

    POLL_INTERVAL_SECONDS: float = Field(default=2.0, gt=0)
    BATCH_SIZE: int = Field(default=5, gt=0, le=100)
    HEARTBEAT_INTERVAL_SECONDS: float = Field(default=30.0, gt=0)

    PORT: int = Field(default=8080, ge=0, le=65535)
    LOG_LEVEL: str = "INFO"

    @field_validator("BACKEND")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in BACKENDS:
            raise ValueError(f"BACKEND must be one of {', '.join(BACKENDS)}")
        return value

    @field_validator("SUPABASE_URL")
    @classmethod
    def _http_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _backend_credentials(self) -> "Settings":
        if self.BACKEND == "rest":
            if not self.SUPABASE_URL or not self.SUPABASE_SERVICE_ROLE_KEY:
                raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the rest backend")
            if len(self.SUPABASE_SERVICE_ROLE_KEY) < 20:
                raise ValueError("SUPABASE_SERVICE_ROLE_KEY looks truncated")
        if self.BACKEND == "sql" and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required for the sql backend")
        return self


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
