"""Human feedback (CTA) protocol.

A CTA is a rendezvous keyed by a generated id:
1. the id is generated and a CtaEvent row recorded
2. a ``cta.requested`` event is published to the notification surface
3. the workflow suspends on ``cta.responded`` with that id
4. the wait resolves with the response, or with None once the timeout passes

Timeouts are ordinary outcomes (``CtaOutcome.timed_out``). A response that
fails validation, answers a different kind, or picks an option that was
never offered is a ProtocolViolation and aborts the caller.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from featureforge.agent.tools import ToolRegistry, ToolSpec
from featureforge.database.repository import PipelineStore
from featureforge.durable.step import StepContext
from featureforge.errors import ProtocolViolation
from featureforge.schemas import (
    CTA_REQUEST_ADAPTER,
    CTA_RESPONSE_ADAPTER,
    ApprovalRequest,
    ChoiceOption,
    ChoiceRequest,
    ChoiceResponse,
    CtaOutcome,
    CtaRequestEvent,
    TextRequest,
    ToolCall,
)


logger = logging.getLogger(__name__)

CTA_REQUESTED = "cta.requested"
CTA_RESPONDED = "cta.responded"

AnyCtaRequest = ApprovalRequest | TextRequest | ChoiceRequest


def parse_cta_response(request: AnyCtaRequest, data: dict[str, Any]) -> Any:
    """Validate a response event against the request it answers.

    Raises:
        ProtocolViolation: malformed payload, kind mismatch or unknown choice
    """
    try:
        response = CTA_RESPONSE_ADAPTER.validate_python(data.get("response"))
    except ValidationError as e:
        raise ProtocolViolation(f"Malformed CTA response: {e}") from e

    if response.kind != request.kind:
        raise ProtocolViolation(
            f"CTA response kind {response.kind!r} does not match request kind {request.kind!r}"
        )
    if isinstance(request, ChoiceRequest) and isinstance(response, ChoiceResponse):
        offered = {option.id for option in request.options}
        if response.selected_id not in offered:
            raise ProtocolViolation(
                f"Selected option {response.selected_id!r} was not offered ({sorted(offered)})"
            )
    return response


async def request_cta(
    step: StepContext,
    store: PipelineStore,
    *,
    key: str,
    run_id: str,
    phase_result_id: str,
    request: AnyCtaRequest,
    timeout: timedelta,
    invocation_id: str | None = None,
    tool_call_id: str | None = None,
) -> CtaOutcome:
    """Ask a human and durably wait for the answer.

    Args:
        step: Step context of the caller
        store: Persistence for the CtaEvent audit row
        key: Step key prefix, unique within the caller
        run_id: Owning feature run
        phase_result_id: Phase the request belongs to
        request: Approval, text or choice request
        timeout: How long to wait before resolving as timed out
        invocation_id: Agent invocation that asked, if any
        tool_call_id: Tool call that asked, if any

    Returns:
        CtaOutcome with the validated response, or ``timed_out=True``
    """
    cta_id = await step.run(f"{key}-id", lambda: f"cta-{uuid4().hex[:16]}")
    await step.run(f"{key}-record", lambda: store.create_cta_event(
        cta_id,
        run_id=run_id,
        phase_result_id=phase_result_id,
        request=request,
        invocation_id=invocation_id,
        tool_call_id=tool_call_id,
    ))

    event = CtaRequestEvent(cta_id=cta_id, run_id=run_id, phase_result_id=phase_result_id, request=request)
    await step.send_event(f"{key}-publish", CTA_REQUESTED, event.model_dump(mode="json"), correlation_id=cta_id)
    logger.info(f"[{run_id}] Waiting for {request.kind} response to {cta_id}")

    data = await step.wait_for_event(f"{key}-wait", CTA_RESPONDED, cta_id, timeout)
    if data is None:
        await step.run(f"{key}-timeout", lambda: store.timeout_cta_event(cta_id))
        logger.warning(f"[{run_id}] CTA {cta_id} timed out")
        return CtaOutcome(cta_id=cta_id, timed_out=True)

    response = parse_cta_response(request, data)
    await step.run(f"{key}-complete", lambda: store.complete_cta_event(cta_id, response))
    return CtaOutcome(cta_id=cta_id, response=response)


# =============================================================================
# request_human_feedback tool
# =============================================================================

class RequestHumanFeedbackInput(BaseModel):
    kind: Literal["approval", "text", "choice"]
    message: str | None = Field(default=None, description="Approval: what the operator approves")
    prompt: str | None = Field(default=None, description="Text/choice: the question to ask")
    placeholder: str | None = Field(default=None, description="Text: hint shown in the input box")
    options: list[ChoiceOption] | None = Field(default=None, description="Choice: at least two options")


REQUEST_HUMAN_FEEDBACK_SPEC = ToolSpec(
    "request_human_feedback",
    "Ask the human operator for an approval, a free-text answer or a choice between options. "
    "Blocks until they answer; a timeout returns {\"error\": \"timeout\"}.",
    RequestHumanFeedbackInput,
)


def add_feedback_tool(
    registry: ToolRegistry,
    step: StepContext,
    store: PipelineStore,
    *,
    run_id: str,
    phase_result_id: str,
    invocation_id: str | None,
    timeout: timedelta,
) -> ToolRegistry:
    async def _request_human_feedback(args: RequestHumanFeedbackInput, call: ToolCall) -> Any:
        try:
            request = CTA_REQUEST_ADAPTER.validate_python(args.model_dump(exclude_none=True))
        except ValidationError as e:
            return {"error": f"invalid {args.kind} request: {e}", "code": "INVALID_INPUT"}

        outcome = await request_cta(
            step,
            store,
            key=f"cta-{call.step_key or call.id}",
            run_id=run_id,
            phase_result_id=phase_result_id,
            request=request,
            timeout=timeout,
            invocation_id=invocation_id,
            tool_call_id=call.id,
        )
        return outcome.to_tool_output()

    return registry.add(REQUEST_HUMAN_FEEDBACK_SPEC, _request_human_feedback)
