"""
Pipeline data model.

Every model here is request-scoped: created while handling one submission
and discarded when the response is returned.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator, model_validator


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    CONFIGURATION_MISSING = "configuration_missing"
    AGENT_EXECUTION_FAILED = "agent_execution_failed"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"


class ToolServerConfig(BaseModel):
    """Launch descriptor for one tool-execution environment."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    command: str = Field(..., min_length=1)
    args: tuple[str, ...] = ()
    env: Optional[dict[str, str]] = None
    # None exposes every discovered tool
    allowed_tools: Optional[tuple[str, ...]] = None
    # Tools the stage cannot do its job without; launch fails if one is absent
    required_tools: tuple[str, ...] = ()

    @model_validator(mode="after")
    def check_required_allowed(self):
        if self.allowed_tools is not None:
            outside = [t for t in self.required_tools if t not in self.allowed_tools]
            if outside:
                raise ValueError(f"required tools not in allowed_tools: {', '.join(outside)}")
        return self


class AgentConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_servers: dict[str, ToolServerConfig]
    model_id: str = Field(..., min_length=1)
    temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    max_steps: int = Field(..., gt=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_server_names(self):
        for key, server in self.tool_servers.items():
            if key != server.name:
                raise ValueError(f"tool server key '{key}' does not match server name '{server.name}'")
        return self


class PipelineRequest(BaseModel):
    """Validated inbound submission. Field aliases match the wire names."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    email: StrictStr = Field(..., alias="email")
    problem_description: StrictStr = Field(..., alias="problemDescription")

    @field_validator("email", "problem_description")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be a non-empty string")
        return value

    @field_validator("email")
    @classmethod
    def single_token(cls, value: str) -> str:
        # Embedded verbatim in instruction text, outside the quoted user block
        if any(ch.isspace() or not ch.isprintable() for ch in value.strip()):
            raise ValueError("must not contain whitespace or control characters")
        return value.strip()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PipelineRequest":
        return cls.model_validate(dict(payload))


class StageSuccess(BaseModel):
    status: Literal["success"] = "success"
    # Plain text, or the model's content blocks when it answered in several parts
    output: Union[str, list[Any]]
    steps: int = 0


class StageFailure(BaseModel):
    status: Literal["failure"] = "failure"
    kind: ErrorKind
    detail: Optional[str] = None
    steps: int = 0


StageResult = Annotated[Union[StageSuccess, StageFailure], Field(discriminator="status")]


class PipelineResponse(BaseModel):
    success: bool
    stage: Optional[Literal["lookup", "issue"]] = None
    lookup_output: Optional[str] = None
    issue_output: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None


class StepBudget(BaseModel):
    """Counted transition budget for one agent run."""

    max_steps: int
    current_steps: int = 0
    current_tool_calls: int = 0

    def is_exhausted(self) -> bool:
        return self.current_steps >= self.max_steps

    def record_step(self) -> None:
        self.current_steps += 1

    def record_tool_call(self) -> None:
        self.current_tool_calls += 1


class TokenUsage(BaseModel):
    agent_name: str
    input_tokens: int
    output_tokens: int
    total_tokens: int

    @model_validator(mode="after")
    def check_total(self):
        if self.total_tokens != self.input_tokens + self.output_tokens:
            raise ValueError("total_tokens must equal input_tokens + output_tokens")
        return self
