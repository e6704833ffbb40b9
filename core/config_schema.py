"""Pydantic configuration schema for the Lambda container."""

import codecs
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

EVENT_TYPES = ("proxy", "http_api_v2")


class LoggingConfig(BaseModel):
    """Logging section of the container configuration."""

    level: str = Field(default="INFO", description="Root log level")
    pretty: bool = Field(
        default=False, description="Indented JSON logs for local development"
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate that the level is a standard logging level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    class Config:
        """Pydantic config."""

        extra = "forbid"


class ContainerConfig(BaseModel):
    """Configuration schema for the Struts Lambda container.

    This schema validates the YAML file or the JSON passed through the
    environment. Every key is optional so a bare deployment can rely on an
    application injected in code.
    """

    application: Optional[str] = Field(
        None, description="WSGI application import string, e.g. 'shop.web:app'"
    )
    event_type: str = Field(
        default="proxy", description="Lambda event shape: 'proxy' or 'http_api_v2'"
    )
    strip_base_path: bool = Field(
        default=False, description="Strip service_base_path from incoming paths"
    )
    service_base_path: Optional[str] = Field(
        None, description="Base path mapping of the API (e.g. /shop)"
    )
    default_content_charset: str = Field(
        default="utf-8", description="Charset used for text request and response bodies"
    )
    latch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=900,
        description="Seconds to wait for the response to be completed",
    )
    enable_timers: bool = Field(
        default=False, description="Record phase timings for each invocation"
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("application")
    @classmethod
    def validate_application(cls, v: Optional[str]) -> Optional[str]:
        """Validate the 'module:attribute' shape of the import string."""
        if v is None:
            return v
        module, _, attribute = v.partition(":")
        if not module or not attribute:
            raise ValueError("application must look like 'package.module:attribute'")
        return v

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        """Validate that the event type is one the container can read."""
        if v not in EVENT_TYPES:
            raise ValueError(f"event_type must be one of {', '.join(EVENT_TYPES)}")
        return v

    @field_validator("service_base_path")
    @classmethod
    def validate_service_base_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the base path is absolute."""
        if v is None:
            return v
        if not v.startswith("/"):
            raise ValueError("service_base_path must start with '/'")
        return v.rstrip("/") or "/"

    @field_validator("default_content_charset")
    @classmethod
    def validate_charset(cls, v: str) -> str:
        """Validate that Python knows the codec."""
        try:
            codecs.lookup(v)
        except LookupError:
            raise ValueError(f"Unknown charset: {v}")
        return v

    @model_validator(mode="after")
    def validate_base_path_stripping(self) -> "ContainerConfig":
        """strip_base_path needs a base path to strip."""
        if self.strip_base_path and not self.service_base_path:
            raise ValueError("strip_base_path requires service_base_path")
        return self

    class Config:
        """Pydantic config."""

        extra = "forbid"  # Reject unknown fields
