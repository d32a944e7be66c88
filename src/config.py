"""
Logger settings from the environment.

Invalid values never fail startup: every field falls back to its default.
Nested sections are set with a double underscore, e.g. LOG_OPENSEARCH__URL.
"""

from functools import lru_cache
from typing import Any, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from records import normalize_level

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def as_int(value: Any, default: int, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Coerce to int within [minimum, maximum], else default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        value = value.strip()
        if not value.lstrip("-").isdigit():
            return default
        value = int(value)
    if not isinstance(value, int):
        return default
    if minimum is not None and value < minimum:
        return default
    if maximum is not None and value > maximum:
        return default
    return value


def as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    return default


def as_url(value: Any, default: str) -> str:
    if not isinstance(value, str):
        return default
    parsed = urlparse(value.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return default
    return value.strip()


def as_level(value: Any, default: str) -> str:
    try:
        return normalize_level(value).label
    except (ValueError, TypeError):
        return default


def blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


class _Section(BaseModel):
    """Settings section whose invalid values revert to the field default."""

    @classmethod
    def _default(cls, info: ValidationInfo) -> Any:
        return cls.model_fields[info.field_name].default


class OpenSearchSettings(_Section):
    url: str = "http://localhost:9200"
    default_index: str = "general_log"
    username: Optional[str] = None
    password: Optional[str] = None
    verify_tls: bool = True
    timeout: int = 2
    silent: bool = True
    max_retries: int = 3
    level: str = "debug"
    document_builder: str = "builders.DefaultOpenSearchDocumentBuilder"

    @field_validator("url", mode="before")
    @classmethod
    def _url(cls, value, info: ValidationInfo):
        return as_url(value, cls._default(info))

    @field_validator("default_index", "document_builder", mode="before")
    @classmethod
    def _non_empty(cls, value, info: ValidationInfo):
        return value if isinstance(value, str) and value.strip() else cls._default(info)

    @field_validator("username", "password", mode="before")
    @classmethod
    def _credentials(cls, value):
        return blank_to_none(value)

    @field_validator("verify_tls", "silent", mode="before")
    @classmethod
    def _bools(cls, value, info: ValidationInfo):
        return as_bool(value, cls._default(info))

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout(cls, value, info: ValidationInfo):
        return as_int(value, cls._default(info), minimum=1, maximum=60)

    @field_validator("max_retries", mode="before")
    @classmethod
    def _retries(cls, value, info: ValidationInfo):
        return as_int(value, cls._default(info), minimum=1, maximum=10)

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, value, info: ValidationInfo):
        return as_level(value, cls._default(info))


class KafkaSettings(_Section):
    rest_proxy_url: str = "http://localhost:8082"
    topic: str = "app-logs"
    timeout: int = 2
    silent: bool = True
    level: str = "debug"
    value_builder: str = "builders.IndexKeyKafkaValueBuilder"

    @field_validator("rest_proxy_url", mode="before")
    @classmethod
    def _url(cls, value, info: ValidationInfo):
        return as_url(value, cls._default(info))

    @field_validator("topic", "value_builder", mode="before")
    @classmethod
    def _non_empty(cls, value, info: ValidationInfo):
        return value if isinstance(value, str) and value.strip() else cls._default(info)

    @field_validator("silent", mode="before")
    @classmethod
    def _bools(cls, value, info: ValidationInfo):
        return as_bool(value, cls._default(info))

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout(cls, value, info: ValidationInfo):
        return as_int(value, cls._default(info), minimum=1, maximum=60)

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, value, info: ValidationInfo):
        return as_level(value, cls._default(info))


class IndexFileSettings(_Section):
    directory: str = "logs/deferred-logger"
    retention_days: int = 14
    level: str = "debug"

    @field_validator("retention_days", mode="before")
    @classmethod
    def _retention(cls, value, info: ValidationInfo):
        return as_int(value, cls._default(info), minimum=0)

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, value, info: ValidationInfo):
        return as_level(value, cls._default(info))


class DeferredSettings(_Section):
    max_logs: int = 1000
    warn_on_limit: bool = True

    @field_validator("max_logs", mode="before")
    @classmethod
    def _max_logs(cls, value, info: ValidationInfo):
        return as_int(value, cls._default(info), minimum=0)

    @field_validator("warn_on_limit", mode="before")
    @classmethod
    def _bools(cls, value, info: ValidationInfo):
        return as_bool(value, cls._default(info))

    @property
    def limit(self) -> Optional[int]:
        """Buffer limit, None when disabled."""
        return self.max_logs if self.max_logs > 0 else None


class LimitsSettings(_Section):
    max_request_body_size: int = 10240
    max_response_body_size: int = 10240
    max_bindings_size: int = 2048

    @field_validator("max_request_body_size", "max_response_body_size", "max_bindings_size", mode="before")
    @classmethod
    def _sizes(cls, value, info: ValidationInfo):
        return as_int(value, cls._default(info), minimum=0)


class MiddlewareSettings(_Section):
    request_id_enabled: bool = True
    request_id_header: str = "X-Request-Id"
    api_access_log_enabled: bool = True

    @field_validator("request_id_enabled", "api_access_log_enabled", mode="before")
    @classmethod
    def _bools(cls, value, info: ValidationInfo):
        return as_bool(value, cls._default(info))

    @field_validator("request_id_header", mode="before")
    @classmethod
    def _header(cls, value, info: ValidationInfo):
        return value if isinstance(value, str) and value.strip() else cls._default(info)


class OrmSettings(_Section):
    enabled: bool = False
    log_read_operations: bool = False
    slow_query_threshold_ms: int = 1000
    ignore_patterns: List[str] = Field(default_factory=lambda: [
        "from migrations",
        "from jobs",
        "from failed_jobs",
        "from job_batches",
    ])

    @field_validator("enabled", "log_read_operations", mode="before")
    @classmethod
    def _bools(cls, value, info: ValidationInfo):
        return as_bool(value, cls._default(info))

    @field_validator("slow_query_threshold_ms", mode="before")
    @classmethod
    def _threshold(cls, value, info: ValidationInfo):
        return as_int(value, cls._default(info), minimum=0)


class JobSettings(_Section):
    enabled: bool = True

    @field_validator("enabled", mode="before")
    @classmethod
    def _bools(cls, value, info: ValidationInfo):
        return as_bool(value, cls._default(info))


class LoggerSettings(BaseSettings):
    """Logger settings from environment."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_nested_delimiter="__",
        env_file="config/.env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    stack: str = "single,opensearch"
    default_channel: str = "single"
    environment: Optional[str] = None
    service_name: Optional[str] = None
    app_version: Optional[str] = None
    single_level: str = "debug"

    opensearch: OpenSearchSettings = Field(default_factory=OpenSearchSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    index_file: IndexFileSettings = Field(default_factory=IndexFileSettings)
    deferred: DeferredSettings = Field(default_factory=DeferredSettings)
    limits: LimitsSettings = Field(default_factory=LimitsSettings)
    middleware: MiddlewareSettings = Field(default_factory=MiddlewareSettings)
    orm: OrmSettings = Field(default_factory=OrmSettings)
    job: JobSettings = Field(default_factory=JobSettings)

    @field_validator("single_level", mode="before")
    @classmethod
    def _level(cls, value):
        return as_level(value, "debug")

    @field_validator("environment", "service_name", "app_version", mode="before")
    @classmethod
    def _optional(cls, value):
        return blank_to_none(value)

    @property
    def stack_channels(self) -> List[str]:
        """Ordered, de-duplicated channel names; the default channel when the stack is empty."""
        channels = []
        for name in self.stack.split(","):
            name = name.strip()
            if name and name not in channels:
                channels.append(name)
        return channels or [self.default_channel or "single"]


@lru_cache()
def get_settings() -> LoggerSettings:
    return LoggerSettings()
