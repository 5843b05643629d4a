from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class ChatCompletionMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "developer", "user", "assistant", "tool"]
    # Text, or a list of content parts ({"type": "text", "text": ...}, images, ...).
    content: str | list[dict[str, Any]] | None = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[ChatCompletionMessage]
    stream: bool = False

    temperature: float | None = None
    max_tokens: int | None = None
    max_completion_tokens: int | None = None
    top_p: float | None = None
    stop: str | list[str] | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    user: str | None = None

    @model_validator(mode="after")
    def _validate_max_tokens_alias(self) -> "ChatCompletionRequest":
        if self.max_tokens is not None and self.max_completion_tokens is not None:
            if self.max_tokens != self.max_completion_tokens:
                raise ValueError("Provide only one of max_tokens or max_completion_tokens.")
        return self

    @field_validator("temperature")
    @classmethod
    def _validate_temperature(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not (0.0 <= v <= 2.0):
            raise ValueError("temperature must be between 0 and 2.")
        return v

    @field_validator("top_p")
    @classmethod
    def _validate_top_p(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not (0.0 < v <= 1.0):
            raise ValueError("top_p must be > 0 and <= 1.")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _validate_max_tokens(cls, v: int | None) -> int | None:
        if v is None:
            return None
        if v <= 0:
            raise ValueError("max_tokens must be > 0.")
        return v

    @field_validator("max_completion_tokens")
    @classmethod
    def _validate_max_completion_tokens(cls, v: int | None) -> int | None:
        if v is None:
            return None
        if v <= 0:
            raise ValueError("max_completion_tokens must be > 0.")
        return v

    @field_validator("stop")
    @classmethod
    def _validate_stop(cls, v: str | list[str] | None) -> str | list[str] | None:
        if v is None:
            return None
        if isinstance(v, str):
            if not v:
                raise ValueError("stop must be non-empty.")
            return v
        if not v:
            raise ValueError("stop list must be non-empty.")
        if any((not isinstance(s, str) or not s) for s in v):
            raise ValueError("stop sequences must be non-empty strings.")
        return v

    @field_validator("presence_penalty", "frequency_penalty")
    @classmethod
    def _validate_penalties(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not (-2.0 <= v <= 2.0):
            raise ValueError("penalty must be between -2 and 2.")
        return v

    def effective_max_tokens(self) -> int | None:
        return self.max_tokens if self.max_tokens is not None else self.max_completion_tokens

    def to_upstream_payload(self, upstream_model: str) -> dict[str, Any]:
        """The request as received (unknown fields included), addressed to the provider's model name."""
        payload = self.model_dump(exclude_none=True)
        payload["model"] = upstream_model
        return payload


def _content_chars(content: str | list[dict[str, Any]] | None) -> int:
    if content is None:
        return 0
    if isinstance(content, str):
        return len(content)
    return sum(len(part.get("text", "")) for part in content if isinstance(part.get("text"), str))


def estimate_cost(req: ChatCompletionRequest, *, minimum: int = 1) -> int:
    """Rough token estimate used to pre-filter accounts: ~4 chars per token plus the output budget."""
    prompt_tokens = sum(_content_chars(m.content) for m in req.messages) // 4
    return max(minimum, prompt_tokens + (req.effective_max_tokens() or 0))


class ModelCard(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int = 0
    owned_by: str


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelCard]


class OpenAIError(BaseModel):
    message: str
    type: str = "api_error"
    param: str | None = None
    code: str | None = None


class OpenAIErrorResponse(BaseModel):
    error: OpenAIError


def make_openai_error_response(
    *,
    message: str,
    type: str = "api_error",
    param: str | None = None,
    code: str | None = None,
) -> OpenAIErrorResponse:
    return OpenAIErrorResponse(error=OpenAIError(message=message, type=type, param=param, code=code))
