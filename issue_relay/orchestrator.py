"""
Support Issue Pipeline Orchestrator

Runs the two-stage flow for one user submission:
- Lookup: an agent with the data-store tool server finds the user's records
- Issue: an agent with the issue-tracker tool server files an issue grounded
  in what the lookup found

States: validating input -> composing configuration -> running lookup ->
extracting context -> running issue creation -> done.
A failed stage ends the pipeline; nothing is retried, since re-running the
issue stage could file duplicate issues.
"""

import uuid
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from issue_relay.agents.agent_runner import AgentRunner
from issue_relay.agents.context_extractor import EXTRACTION_PLACEHOLDER, extract
from issue_relay.agents.prompts import build_issue_instruction, build_lookup_instruction
from issue_relay.integrations.connection_config import ConfigurationMissingError, ResolvedSettings
from issue_relay.integrations.tool_servers import DATA_STORE, ISSUE_TRACKER, compose_tool_servers
from issue_relay.models.schemas import (
    AgentConfig,
    ErrorKind,
    PipelineRequest,
    PipelineResponse,
    StageFailure,
    ToolServerConfig,
)
from issue_relay.utils.logger import get_logger, request_scope

logger = get_logger("orchestrator")

STAGE_LABELS = {"lookup": "Lookup", "issue": "Issue"}
ISSUE_UNCONFIRMED = "Issue agent finished without confirmation text; the issue URL is unknown."


def describe_validation_error(exc: ValidationError) -> str:
    reasons = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ())) or "body"
        if err.get("type") == "missing":
            reasons.append(f"{field} is required")
        elif err.get("type") == "string_type":
            reasons.append(f"{field} must be a string")
        else:
            reasons.append(f"{field} {err.get('msg', 'is invalid').removeprefix('Value error, ')}")
    return "; ".join(reasons)


class PipelineOrchestrator:
    """Sequences the lookup and issue-filing agents for one submission at a time.

    Holds only read-only settings and the runners, so one instance can
    serve concurrent requests.
    """

    def __init__(
        self,
        settings: ResolvedSettings,
        lookup_runner: Optional[AgentRunner] = None,
        issue_runner: Optional[AgentRunner] = None,
    ):
        self.settings = settings
        self.lookup_runner = lookup_runner or AgentRunner(
            api_key=settings.anthropic_api_key, agent_name="lookup_agent"
        )
        self.issue_runner = issue_runner or AgentRunner(
            api_key=settings.anthropic_api_key, agent_name="issue_agent"
        )

    async def handle(self, payload: Union[PipelineRequest, Mapping[str, Any], None]) -> PipelineResponse:
        request_id = uuid.uuid4().hex
        with request_scope(request_id=request_id):
            return await self._handle(payload, request_id)

    async def _handle(self, payload, request_id: str) -> PipelineResponse:
        # Validating input
        request = self._validate(payload)
        if isinstance(request, PipelineResponse):
            logger.info("Request rejected", extra={"action": "invalid_request", "extra": {"detail": request.detail}})
            return request

        logger.info("Pipeline started", extra={"action": "start"})

        # Composing configuration: every secret both stages need is checked before anything runs
        try:
            servers = compose_tool_servers([DATA_STORE, ISSUE_TRACKER], self.settings)
        except ConfigurationMissingError as e:
            return PipelineResponse(
                success=False,
                error=str(e),
                error_kind=ErrorKind.CONFIGURATION_MISSING,
                detail=", ".join(e.missing),
            )

        # Running lookup
        logger.info("Stage started", extra={"stage": "lookup", "action": "stage_start"})
        lookup_result = await self.lookup_runner.run(
            build_lookup_instruction(
                request.email, request.problem_description, self.settings.supabase_project_ref
            ),
            self._agent_config(servers[DATA_STORE], self.settings.lookup_max_steps),
            request_id=request_id,
        )
        if isinstance(lookup_result, StageFailure):
            return self._stage_failed("lookup", lookup_result)

        # Extracting context
        issue_context = extract(lookup_result)
        if issue_context == EXTRACTION_PLACEHOLDER or not issue_context.strip():
            logger.warning("Lookup returned no text", extra={"stage": "lookup", "action": "extract_failed"})
            return PipelineResponse(
                success=False,
                stage="lookup",
                error="Lookup agent returned no usable text.",
                error_kind=ErrorKind.AGENT_EXECUTION_FAILED,
                detail=EXTRACTION_PLACEHOLDER if issue_context.strip() else "Lookup output was blank",
            )
        logger.info("Context extracted", extra={
            "stage": "lookup", "action": "extracted",
            "extra": {"length": len(issue_context), "steps": lookup_result.steps},
        })

        # Running issue creation
        logger.info("Stage started", extra={"stage": "issue", "action": "stage_start"})
        issue_result = await self.issue_runner.run(
            build_issue_instruction(issue_context, request.email, self.settings.github_issue_repo),
            self._agent_config(servers[ISSUE_TRACKER], self.settings.issue_max_steps),
            request_id=request_id,
        )
        if isinstance(issue_result, StageFailure):
            return self._stage_failed("issue", issue_result, lookup_output=issue_context)

        issue_output = extract(issue_result)
        detail = None
        if issue_output == EXTRACTION_PLACEHOLDER or not issue_output.strip():
            detail = ISSUE_UNCONFIRMED
            logger.warning("Issue agent returned no text", extra={"stage": "issue", "action": "extract_failed"})
        logger.info("Pipeline completed", extra={
            "action": "complete", "extra": {"issue_steps": issue_result.steps},
        })
        return PipelineResponse(
            success=True, lookup_output=issue_context, issue_output=issue_output, detail=detail,
        )

    def _validate(self, payload) -> Union[PipelineRequest, PipelineResponse]:
        if isinstance(payload, PipelineRequest):
            return payload
        if not isinstance(payload, Mapping):
            return self._invalid("Request body must be a JSON object")
        try:
            return PipelineRequest.from_payload(payload)
        except ValidationError as e:
            return self._invalid(describe_validation_error(e))

    @staticmethod
    def _invalid(detail: str) -> PipelineResponse:
        return PipelineResponse(
            success=False,
            error="Invalid request",
            error_kind=ErrorKind.INVALID_REQUEST,
            detail=detail,
        )

    def _agent_config(self, server: ToolServerConfig, max_steps: int) -> AgentConfig:
        return AgentConfig(
            tool_servers={server.name: server},
            model_id=self.settings.model_id,
            temperature=self.settings.temperature,
            max_steps=max_steps,
            timeout_seconds=self.settings.agent_timeout_seconds,
        )

    @staticmethod
    def _stage_failed(
        stage: str, result: StageFailure, lookup_output: Optional[str] = None
    ) -> PipelineResponse:
        label = STAGE_LABELS[stage]
        if result.kind == ErrorKind.STEP_LIMIT_EXCEEDED:
            error = f"{label} agent reached its step limit without a final answer."
        else:
            error = f"{label} agent execution failed."
        logger.error("Stage failed", extra={
            "stage": stage, "action": "stage_failed",
            "extra": {"kind": result.kind.value, "detail": result.detail, "steps": result.steps},
        })
        return PipelineResponse(
            success=False,
            stage=stage,
            lookup_output=lookup_output,
            error=error,
            error_kind=result.kind,
            detail=result.detail,
        )
