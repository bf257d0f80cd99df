"""Pydantic schemas for all pipeline I/O contracts.

These schemas define the strict contracts between:
- API endpoints and clients
- LLM model inputs/outputs and tool calls
- Human feedback (CTA) requests and responses
- Per-phase outputs stored on PhaseResult rows (tagged union on ``phase``)
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


# =============================================================================
# Enums
# =============================================================================

class Phase(str, Enum):
    """Values of ``FeatureRun.current_phase``."""
    ANALYSIS = "analysis"
    APPROACHES = "approaches"
    JUDGING = "judging"
    IMPLEMENTATION = "implementation"
    PR = "pr"
    COMPLETED = "completed"
    FAILED = "failed"


# Fixed progression; FAILED is reachable from any non-terminal phase
PHASE_ORDER: list[Phase] = [
    Phase.ANALYSIS,
    Phase.APPROACHES,
    Phase.JUDGING,
    Phase.IMPLEMENTATION,
    Phase.PR,
    Phase.COMPLETED,
]


class PhaseStatus(str, Enum):
    """Status of a PhaseResult row."""
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


class SandboxStatus(str, Enum):
    """Lifecycle status of a sandbox."""
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    ABORTED = "aborted"
    SNAPSHOTTING = "snapshotting"


class AgentType(str, Enum):
    """Kinds of agent invocation."""
    ORCHESTRATOR = "orchestrator"
    EXPLORER = "explorer"
    CODER = "coder"
    JUDGE = "judge"
    META_JUDGE = "meta_judge"


class CtaKind(str, Enum):
    """Kinds of human feedback request."""
    APPROVAL = "approval"
    TEXT = "text"
    CHOICE = "choice"


class MemoryKind(str, Enum):
    """Kinds of cross-phase memory record."""
    INSIGHT = "insight"
    FAILURE = "failure"
    DECISION = "decision"
    CONSTRAINT = "constraint"


class GateName(str, Enum):
    """Quality gates, in execution order."""
    TYPECHECK = "typecheck"
    LINT = "lint"
    TEST = "test"
    BUILD = "build"


class GateStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


class Criterion(str, Enum):
    """Review criteria, one specialist judge each."""
    SECURITY = "security"
    BUGS = "bugs"
    COMPATIBILITY = "compatibility"
    PERFORMANCE = "performance"
    QUALITY = "quality"


class Verdict(str, Enum):
    PASS = "pass"
    CONCERN = "concern"
    FAIL = "fail"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class OverallVerdict(str, Enum):
    APPROVED = "approved"
    APPROVED_WITH_CONDITIONS = "approved_with_conditions"
    REJECTED = "rejected"


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class Complexity(str, Enum):
    """Estimated complexity of an approach."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Input Schemas
# =============================================================================

class FeatureRequest(BaseModel):
    """Input that launches a feature run."""
    prompt: str = Field(..., min_length=1, description="Natural language feature request")
    repo_url: str = Field(..., description="Repository locator, e.g. https://github.com/org/app")
    branch: str = Field(default="main", description="Branch to base changes on")

    model_config = {
        "json_schema_extra": {
            "example": {
                "prompt": "Add dark mode toggle",
                "repo_url": "https://github.com/org/app",
                "branch": "main",
            }
        }
    }


# =============================================================================
# Tool Schemas
# =============================================================================

class ToolResult(BaseModel):
    """Standard response from any tool call."""
    ok: bool = Field(..., description="Whether the tool call succeeded")
    data: Any | None = Field(default=None, description="Tool-specific response data")
    error_code: str | None = Field(default=None, description="Error code if failed")
    error_message: str | None = Field(default=None, description="Human-readable error message")
    retryable: bool = Field(default=False, description="Whether the error is retryable")
    latency_ms: int | None = Field(default=None, description="Time taken in milliseconds")

    def to_tool_output(self) -> Any:
        """Render the result the way the model sees it."""
        if self.ok:
            return self.data
        return {"error": self.error_message or "tool failed", "code": self.error_code}


class ToolCall(BaseModel):
    """One tool call emitted by the model."""
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    # Durable key assigned by the agent loop; provider ids may repeat
    step_key: str | None = Field(default=None, exclude=True)



class ToolResultPart(BaseModel):
    """Result for one tool call, injected back into the conversation."""
    tool_call_id: str
    tool_name: str
    output: Any = None


# =============================================================================
# LLM Schemas
# =============================================================================

class LLMMessage(BaseModel):
    """A single message in an LLM conversation.

    A ``tool`` message either answers one call (``tool_call_id``) or carries
    every result of one step in ``tool_results``, in emission order.
    """
    role: Literal["system", "user", "assistant", "tool"] = Field(...)
    content: str | None = Field(default="")
    name: str | None = Field(default=None, description="Name for tool messages")
    tool_calls: list[dict[str, Any]] | None = Field(default=None)
    tool_call_id: str | None = Field(default=None)
    tool_results: list[ToolResultPart] | None = Field(default=None)


class LLMResponse(BaseModel):
    """Response from an LLM provider."""
    content: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    model: str
    usage: dict[str, int] = Field(default_factory=dict)
    finish_reason: str | None = None
    raw_response: dict[str, Any] | None = None


# =============================================================================
# Memory Records
# =============================================================================

class MemoryRecord(BaseModel):
    """Append-only cross-phase note."""
    phase: Phase
    kind: MemoryKind
    content: str = Field(..., min_length=1)


# =============================================================================
# Human Feedback (CTA)
# =============================================================================

class ApprovalRequest(BaseModel):
    kind: Literal["approval"] = "approval"
    message: str = Field(..., min_length=1)


class TextRequest(BaseModel):
    kind: Literal["text"] = "text"
    prompt: str = Field(..., min_length=1)
    placeholder: str | None = None


class ChoiceOption(BaseModel):
    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)


class ChoiceRequest(BaseModel):
    kind: Literal["choice"] = "choice"
    prompt: str = Field(..., min_length=1)
    options: list[ChoiceOption] = Field(..., min_length=2)


CtaRequest = Annotated[
    Union[ApprovalRequest, TextRequest, ChoiceRequest],
    Field(discriminator="kind"),
]


class ApprovalResponse(BaseModel):
    kind: Literal["approval"] = "approval"
    approved: bool
    reason: str | None = None


class TextResponse(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ChoiceResponse(BaseModel):
    kind: Literal["choice"] = "choice"
    selected_id: str = Field(..., min_length=1)


CtaResponse = Annotated[
    Union[ApprovalResponse, TextResponse, ChoiceResponse],
    Field(discriminator="kind"),
]

CTA_REQUEST_ADAPTER: TypeAdapter[Any] = TypeAdapter(CtaRequest)
CTA_RESPONSE_ADAPTER: TypeAdapter[Any] = TypeAdapter(CtaResponse)


class CtaRequestEvent(BaseModel):
    """Payload published when a human decision is needed."""
    cta_id: str
    run_id: str
    phase_result_id: str
    request: CtaRequest


class CtaOutcome(BaseModel):
    """Resolution of a CTA: a validated response or a timeout."""
    cta_id: str
    timed_out: bool = False
    response: CtaResponse | None = None

    def to_tool_output(self) -> Any:
        if self.timed_out or self.response is None:
            return {"error": "timeout", "message": "No response from the operator before the deadline"}
        return self.response.model_dump(mode="json")


# =============================================================================
# Quality Gates
# =============================================================================

class GateResult(BaseModel):
    """Outcome of one quality gate in one coder attempt."""
    gate: GateName
    status: GateStatus
    output: str = ""
    attempt: int = Field(default=1, ge=1)

    @property
    def passed(self) -> bool:
        return self.status == GateStatus.PASSED


# =============================================================================
# Analysis Output
# =============================================================================

class CodebaseEntry(BaseModel):
    path: str
    purpose: str
    relevance: str = ""


class AnalysisOutput(BaseModel):
    """Output of the analysis phase."""
    phase: Literal["analysis"] = "analysis"
    affected_systems: list[str] = Field(default_factory=list)
    architectural_constraints: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    codebase_map: list[CodebaseEntry] = Field(default_factory=list)
    feasibility_assessment: str = Field(..., description="Whether and how the feature fits")

    def to_markdown(self) -> str:
        """Render analysis as markdown."""
        md = "## Feasibility\n"
        md += f"{self.feasibility_assessment}\n"
        if self.affected_systems:
            md += "\n## Affected Systems\n"
            for s in self.affected_systems:
                md += f"- {s}\n"
        if self.architectural_constraints:
            md += "\n## Architectural Constraints\n"
            for c in self.architectural_constraints:
                md += f"- {c}\n"
        if self.risks:
            md += "\n## Risks\n"
            for r in self.risks:
                md += f"- {r}\n"
        if self.codebase_map:
            md += "\n## Codebase Map\n"
            for entry in self.codebase_map:
                md += f"- `{entry.path}`: {entry.purpose}"
                md += f" ({entry.relevance})\n" if entry.relevance else "\n"
        return md


# =============================================================================
# Approaches Output
# =============================================================================

class Tradeoffs(BaseModel):
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)


class Assumption(BaseModel):
    claim: str
    validated: bool = False
    evidence: str = ""


class Approach(BaseModel):
    """One candidate way of implementing the feature."""
    id: str = Field(..., min_length=1)
    title: str
    summary: str
    rationale: str = ""
    implementation: str = Field(..., description="Step-by-step implementation plan")
    affected_files: list[str] = Field(default_factory=list)
    tradeoffs: Tradeoffs = Field(default_factory=Tradeoffs)
    assumptions: list[Assumption] = Field(default_factory=list)
    estimated_complexity: Complexity = Complexity.MEDIUM

    def to_markdown(self) -> str:
        """Render approach as markdown."""
        md = f"### {self.title}\n\n{self.summary}\n\n"
        if self.rationale:
            md += f"**Rationale:** {self.rationale}\n\n"
        md += f"**Plan:**\n{self.implementation}\n"
        if self.affected_files:
            md += "\n**Affected files:**\n"
            for f in self.affected_files:
                md += f"- `{f}`\n"
        md += f"\n**Complexity:** {self.estimated_complexity.value}\n"
        return md


class ApproachesOutput(BaseModel):
    """Output of the approaches phase."""
    phase: Literal["approaches"] = "approaches"
    approaches: list[Approach] = Field(..., min_length=1)
    recommendation: str = ""
    single_approach_justification: str | None = None

    def find(self, approach_id: str) -> Approach | None:
        for approach in self.approaches:
            if approach.id == approach_id:
                return approach
        return None


# =============================================================================
# Judging Output
# =============================================================================

class Finding(BaseModel):
    severity: Severity
    description: str
    recommendation: str = ""


class JudgeVerdict(BaseModel):
    """One specialist judge's review of the selected approach."""
    criterion: Criterion
    verdict: Verdict
    findings: list[Finding] = Field(default_factory=list)
    overall_assessment: str = ""


class JudgingOutput(BaseModel):
    """Output of the judging phase."""
    phase: Literal["judging"] = "judging"
    selected_approach_id: str
    verdicts: list[JudgeVerdict] = Field(default_factory=list)
    overall_verdict: OverallVerdict
    conditions: list[str] = Field(default_factory=list)
    rejection_reason: str | None = None


# =============================================================================
# Implementation Output
# =============================================================================

class FileChange(BaseModel):
    path: str
    change_type: ChangeType


class ImplementationAttempt(BaseModel):
    """One fresh coder attempt and the gates it produced."""
    attempt: int = Field(..., ge=1)
    coder_summary: str = ""
    files_touched: list[str] = Field(default_factory=list)
    gate_results: list[GateResult] = Field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return len(self.gate_results) == len(GateName) and all(g.passed for g in self.gate_results)


class ImplementationOutput(BaseModel):
    """Output of the implementation phase."""
    phase: Literal["implementation"] = "implementation"
    branch: str
    base_branch: str
    files_changed: list[FileChange] = Field(default_factory=list)
    gate_results: list[GateResult] = Field(default_factory=list)
    attempts: list[ImplementationAttempt] = Field(default_factory=list)
    total_coder_attempts: int = 0
    conditions_addressed: list[str] = Field(default_factory=list)
    all_gates_passed: bool = False

    def to_markdown(self) -> str:
        """Render implementation result as markdown."""
        md = f"Branch `{self.branch}` after {self.total_coder_attempts} coder attempt(s).\n\n"
        md += "### Files Changed\n"
        for change in self.files_changed:
            md += f"- {change.change_type.value}: `{change.path}`\n"
        md += "\n### Quality Gates\n"
        for gate in self.gate_results:
            md += f"- {gate.gate.value}: {gate.status.value}\n"
        if self.conditions_addressed:
            md += "\n### Review Conditions Addressed\n"
            for c in self.conditions_addressed:
                md += f"- {c}\n"
        return md


# =============================================================================
# PR Output
# =============================================================================

class PrOutput(BaseModel):
    """Output of the PR phase."""
    phase: Literal["pr"] = "pr"
    url: str
    number: int
    title: str
    branch: str


# =============================================================================
# API Request/Response Schemas
# =============================================================================

class RunCreateResponse(BaseModel):
    """API response after launching a run."""
    run_id: str
    status: str = "launched"


class PhaseResultResponse(BaseModel):
    id: str
    phase: str
    status: str
    output: dict[str, Any] | None = None
    started_at: datetime
    completed_at: datetime | None = None


class RunResponse(BaseModel):
    """API response for run status."""
    run_id: str
    prompt: str
    repo_url: str
    current_phase: str
    sandbox_id: str | None = None
    memories: list[dict[str, Any]] = Field(default_factory=list)
    phases: list[PhaseResultResponse] = Field(default_factory=list)
    created_at: datetime
    completed_at: datetime | None = None


class CtaEventResponse(BaseModel):
    id: str
    run_id: str
    phase_result_id: str
    kind: str
    request: dict[str, Any]
    response: dict[str, Any] | None = None
    requested_at: datetime
    responded_at: datetime | None = None
    timed_out: bool = False


class InvocationNode(BaseModel):
    """One node of the reconstructed invocation forest."""
    id: str
    agent_type: str
    model_id: str
    finish_reason: str | None = None
    steps: int = 0
    tool_calls: int = 0
    total_tokens: int = 0
    children: list[InvocationNode] = Field(default_factory=list)
