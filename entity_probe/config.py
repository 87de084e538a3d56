from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SCHEMA_URL = "https://warexo.github.io/entity-docs/data/entities.json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ENTITY_PROBE_", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")

    database_url: str = Field(default="sqlite:///./entity_probe.db")

    schema_url: str = Field(default=DEFAULT_SCHEMA_URL)
    schema_timeout_sec: float = Field(default=15.0, ge=1.0, le=300.0)

    api_prefix: str = Field(default="/api/v1")
    clients_page_size: int = Field(default=100, ge=1, le=1000)

    proxy_base_url: str = Field(default="http://localhost:3001")
    proxy_prefix: str = Field(default="/proxy")
    proxy_timeout_sec: float = Field(default=30.0, ge=1.0, le=600.0)
    proxy_allowed_hosts: str = Field(default="")

    history_limit: int = Field(default=100, ge=1, le=10000)

    def parsed_proxy_allowed_hosts(self) -> set[str]:
        return {host.strip().lower() for host in self.proxy_allowed_hosts.split(",") if host.strip()}

    def normalized_proxy_prefix(self) -> str:
        value = "/" + self.proxy_prefix.strip().strip("/")
        return value if value != "/" else ""

    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @staticmethod
    def _contains_placeholder(value: str) -> bool:
        return "replace-with" in value.strip().lower()

    def production_safety_errors(self) -> list[str]:
        if not self.is_production():
            return []

        errors: list[str] = []

        if not self.parsed_proxy_allowed_hosts():
            errors.append("ENTITY_PROBE_PROXY_ALLOWED_HOSTS must be configured in production")

        if not self.normalized_proxy_prefix():
            errors.append("ENTITY_PROBE_PROXY_PREFIX must not be empty in production")

        if self._contains_placeholder(self.proxy_allowed_hosts):
            errors.append("ENTITY_PROBE_PROXY_ALLOWED_HOSTS must not use placeholder values in production")

        if self._contains_placeholder(self.database_url):
            errors.append("ENTITY_PROBE_DATABASE_URL must not use placeholder values in production")

        return errors


def get_settings() -> Settings:
    return Settings()
