from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Fixed by design, not configurable from the environment.
SHUTDOWN_GRACE_SECONDS = 10.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8080, alias="PORT")
    read_timeout: float = Field(default=10.0, alias="READ_TIMEOUT")
    write_timeout: float = Field(default=10.0, alias="WRITE_TIMEOUT")

    log_level: str = Field(default="DEBUG", alias="LOG_LEVEL")
    log_file_location: str = Field(default="", alias="LOG_FILE_LOCATION")
    elasticsearch_url: str = Field(default="http://localhost:9200", alias="ELASTICSEARCH_URL")
    log_index_prefix: str = Field(default="greeter-", alias="LOG_INDEX_PREFIX")
    log_sink_level: str = Field(default="DEBUG", alias="LOG_SINK_LEVEL")
    log_sink_host: str = Field(default="localhost", alias="LOG_SINK_HOST")
    apm_server_url: str = Field(default="", alias="APM_SERVER_URL")

    persist_guests: bool = Field(default=True, alias="PERSIST_GUESTS")
    database_url: str = Field(default="sqlite:///test.db", alias="DATABASE_URL")

    @property
    def log_file_path(self) -> Path | None:
        if not self.log_file_location:
            return None
        return Path(self.log_file_location)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
