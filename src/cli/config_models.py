"""Pydantic configuration models for the portfolio chat core."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

VALID_VENDORS = {"openrouter", "deepseek", "qwen", "openai", "custom"}


def _expand_env(value: Optional[str]) -> Optional[str]:
    """Resolve a ``${VAR}`` placeholder; other values pass through."""
    if value and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1], "")
    return value


class PriceConfig(BaseModel):
    """USD per one million tokens."""

    in_price: float = 0.0
    out_price: float = 0.0


class ModelConfig(BaseModel):
    """One model offered by a vendor."""

    name: str
    display_name: Optional[str] = None
    enabled: bool = True
    api_key: Optional[str] = None  # overrides the vendor key
    supports_tools: Optional[bool] = None  # None = vendor default
    supports_streaming: bool = True
    price: PriceConfig = Field(default_factory=PriceConfig)


class ProviderConfig(BaseModel):
    """One vendor account and the models used through it."""

    vendor: str
    enabled: bool = True
    api_key: Optional[str] = None
    endpoint: Optional[str] = None  # None = vendor default
    models: list[ModelConfig] = Field(default_factory=list)

    @field_validator("vendor")
    @classmethod
    def validate_vendor(cls, v: str) -> str:
        v = v.lower()
        if v not in VALID_VENDORS:
            raise ValueError(f"Invalid vendor: {v}. Must be one of {VALID_VENDORS}")
        return v

    @model_validator(mode="after")
    def check_custom_endpoint(self):
        if self.vendor == "custom" and not self.endpoint:
            raise ValueError("custom vendor requires an endpoint")
        return self


class LLMConfig(BaseModel):
    """Generation provider configuration."""

    providers: list[ProviderConfig] = Field(default_factory=list)
    max_attempts: int = 3
    timeout_seconds: float = 120.0
    max_tokens: int = 2000
    temperature: float = 0.7

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_attempts must be >= 1, got {v}")
        return v


class CacheConfig(BaseModel):
    """Session cache time-to-live per fact kind, in seconds."""

    price_ttl: int = 300
    total_value_ttl: int = 300
    metric_ttl: int = 3600
    holding_ttl: int = 86400

    @model_validator(mode="after")
    def validate_ttls(self):
        for name in ("price_ttl", "total_value_ttl", "metric_ttl", "holding_ttl"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self


class FinancialDataConfig(BaseModel):
    """financialdatasets.ai fetcher."""

    enabled: bool = True
    api_key: Optional[str] = None
    base_url: str = "https://api.financialdatasets.ai"
    max_subjects: int = 3
    timeout_seconds: float = 10.0


class RetryConfig(BaseModel):
    """Retry/backoff configuration for external data fetches."""

    max_attempts: int = 3
    min_wait: float = 2.0
    max_wait: float = 10.0


class PathsConfig(BaseModel):
    """File paths configuration."""

    session_db: Path = Path("~/.portfolio-chat/sessions.db")
    log_file: Path = Path("~/.portfolio-chat/portfolio-chat.log")

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.session_db = self.session_db.expanduser()
        self.log_file = self.log_file.expanduser()
        return self


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_mode: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class AppConfig(BaseModel):
    """Main configuration model."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    financial_data: FinancialDataConfig = Field(default_factory=FinancialDataConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def expand_env_vars(self):
        """Expand ${VAR} patterns in API keys."""
        for provider in self.llm.providers:
            provider.api_key = _expand_env(provider.api_key)
            for model in provider.models:
                model.api_key = _expand_env(model.api_key)
        self.financial_data.api_key = _expand_env(self.financial_data.api_key)
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        """Create config from dict."""
        # Paths may arrive as plain strings from YAML
        if "paths" in data:
            for key in ["session_db", "log_file"]:
                if key in data["paths"] and isinstance(data["paths"][key], str):
                    data["paths"][key] = Path(data["paths"][key])
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")
