"""Pydantic models for validating usage-bearing JSONL records."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator, model_validator


class UsageData(BaseModel):
    """Token counts block found under ``message.usage`` or ``usage``."""

    model_config = ConfigDict(extra="ignore")

    input_tokens: NonNegativeInt = 0
    output_tokens: NonNegativeInt = 0
    cache_creation_input_tokens: NonNegativeInt = 0
    cache_read_input_tokens: NonNegativeInt = 0
    service_tier: str | None = None

    @model_validator(mode="before")
    @classmethod
    def require_token_counts(cls, data: Any) -> Any:
        """A usage block must carry input or output token counts."""
        if not isinstance(data, dict):
            raise ValueError("usage must be an object")
        if "input_tokens" not in data and "output_tokens" not in data:
            raise ValueError("usage has no input_tokens or output_tokens")
        return data

    @field_validator(
        "input_tokens",
        "output_tokens",
        "cache_creation_input_tokens",
        "cache_read_input_tokens",
        mode="before",
    )
    @classmethod
    def none_as_zero(cls, value: Any) -> Any:
        """Treat explicit nulls as zero."""
        return 0 if value is None else value


class MessageData(BaseModel):
    """The ``message`` object of a Claude Code assistant record."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    model: str | None = None
    usage: dict[str, Any] | None = None

    @field_validator("id", "model", mode="before")
    @classmethod
    def coerce_identifier(cls, value: Any) -> Any:
        """Keep identifiers as strings, dropping anything unusable."""
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, int | float):
            return str(value)
        return None

    @field_validator("usage", mode="before")
    @classmethod
    def non_dict_usage_as_none(cls, value: Any) -> Any:
        """A usage value that is not an object is treated as absent."""
        return value if isinstance(value, dict) else None


class UsageRecord(BaseModel):
    """Top-level fields of a JSONL record that may describe a billable event."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str | None = None
    timestamp: str | None = None
    request_id: str | None = Field(default=None, alias="requestId")
    session_id: str | None = Field(default=None, alias="sessionId")
    cost_usd: float | None = Field(default=None, alias="costUSD")
    message: MessageData | None = None
    usage: dict[str, Any] | None = None
    model: str | None = None
    message_id: str | None = None
    request: dict[str, Any] | None = None
    response: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_snake_case_ids(cls, data: Any) -> Any:
        """Legacy records spell the IDs in snake case."""
        if isinstance(data, dict):
            if "requestId" not in data and "request_id" in data:
                data = {**data, "requestId": data["request_id"]}
            if "sessionId" not in data and "session_id" in data:
                data = {**data, "sessionId": data["session_id"]}
            if not isinstance(data.get("message"), dict | None):
                data = {**data, "message": None}
        return data

    @field_validator("request_id", "session_id", "message_id", "model", mode="before")
    @classmethod
    def coerce_identifier(cls, value: Any) -> Any:
        """IDs occasionally arrive as numbers; keep them as strings."""
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, int | float):
            return str(value)
        return None

    @field_validator("usage", "request", "response", mode="before")
    @classmethod
    def non_dict_as_none(cls, value: Any) -> Any:
        """Nested blocks that are not objects are treated as absent."""
        return value if isinstance(value, dict) else None

    @field_validator("type", "timestamp", mode="before")
    @classmethod
    def non_string_as_none(cls, value: Any) -> Any:
        """Drop non-string type and timestamp values."""
        return value if isinstance(value, str) else None

    @field_validator("cost_usd", mode="before")
    @classmethod
    def invalid_cost_as_none(cls, value: Any) -> Any:
        """Ignore unparseable recorded costs."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def resolve_usage(self) -> dict[str, Any] | None:
        """Find the usage block across the supported record shapes."""
        if self.message is not None and isinstance(self.message.usage, dict):
            return self.message.usage
        if isinstance(self.usage, dict):
            return self.usage
        if self.response is not None and isinstance(self.response.get("usage"), dict):
            return self.response["usage"]
        return None

    def resolve_model(self) -> str:
        """Find the model name across the supported record shapes."""
        if self.message is not None and self.message.model:
            return self.message.model
        if self.model:
            return self.model
        if self.request is not None and isinstance(self.request.get("model"), str):
            return self.request["model"]
        return ""

    def resolve_message_id(self) -> str:
        """Find the message ID across the supported record shapes."""
        if self.message is not None and self.message.id:
            return self.message.id
        if self.message_id:
            return self.message_id
        if self.response is not None and isinstance(self.response.get("id"), str):
            return self.response["id"]
        return ""
