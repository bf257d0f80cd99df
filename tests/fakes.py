"""In-memory stand-ins for the model, sandbox, source host and notifier."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

from featureforge.agent.prompts import ANALYSIS_SYSTEM_PROMPT, APPROACHES_SYSTEM_PROMPT, CODER_SYSTEM_PROMPT
from featureforge.errors import SandboxError
from featureforge.llm.base import AgentModel, ModelSource
from featureforge.pipeline.notifications import Notifier
from featureforge.pipeline.pr import PullRequest, SourceHost
from featureforge.schemas import AgentType, CtaRequestEvent, LLMMessage, LLMResponse, ToolResult
from featureforge.tools.sandbox import CommandResult, Sandbox, SandboxHandle, SandboxProvider, SandboxSpec


GATE_COMMANDS = {
    "typecheck": ["tsc", "--noEmit"],
    "lint": ["eslint", "."],
    "test": ["vitest", "run"],
    "build": ["vite", "build"],
}
GATE_BY_PROGRAM = {command[0]: gate for gate, command in GATE_COMMANDS.items()}


# =============================================================================
# Model
# =============================================================================

def final(text: str, usage: dict[str, int] | None = None) -> LLMResponse:
    """A response that ends the loop."""
    return LLMResponse(content=text, model="fake", finish_reason="stop", usage=usage or {})


def calls(*tool_calls: tuple[str, str, dict[str, Any]], text: str = "") -> LLMResponse:
    """A response emitting ``(id, name, arguments)`` tool calls."""
    return LLMResponse(
        content=text,
        model="fake",
        finish_reason="tool_calls",
        tool_calls=[
            {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}
            for call_id, name, args in tool_calls
        ],
    )


Responder = Callable[[str, list[LLMMessage]], LLMResponse]


class ScriptedModel(AgentModel):
    """Answers from a list of responses, or from a function of the conversation."""

    def __init__(self, script: list[LLMResponse] | Responder, model_id: str = "fake/model"):
        self._script = script
        self._model_id = model_id
        self.calls: list[tuple[str, list[LLMMessage], list[dict[str, Any]] | None]] = []

    @property
    def model_id(self) -> str:
        return self._model_id

    async def complete(
        self,
        system: str,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        self.calls.append((system, list(messages), tools))
        if callable(self._script):
            return self._script(system, messages)
        if not self._script:
            return final("")
        return self._script.pop(0)


ANALYSIS = {
    "feasibility_assessment": "Fits well; styles already use CSS variables.",
    "affected_systems": ["header", "styles"],
    "codebase_map": [{"path": "src/app.ts", "purpose": "Application entry"}],
}
APPROACHES = {
    "approaches": [
        {
            "id": "css-vars",
            "title": "CSS variable swap",
            "summary": "Toggle a data-theme attribute on the root element.",
            "implementation": "1. Add dark palette\n2. Add toggle button",
        },
        {
            "id": "context",
            "title": "Theme context provider",
            "summary": "Hold the theme in a context and persist it.",
            "implementation": "1. Add ThemeContext\n2. Add Toggle component",
        },
    ],
    "recommendation": "context",
}
PASS_VERDICT = {"criterion": "security", "verdict": "pass", "findings": [], "overall_assessment": "Looks fine"}


def pipeline_model(approaches=APPROACHES, judge=lambda system: PASS_VERDICT) -> ScriptedModel:
    """Answers every agent of a feature run in one turn, keyed by its system prompt."""

    def respond(system: str, messages: list[LLMMessage]) -> LLMResponse:
        if system == ANALYSIS_SYSTEM_PROMPT:
            return final(json.dumps(ANALYSIS))
        if system == APPROACHES_SYSTEM_PROMPT:
            return final(f"```json\n{json.dumps(approaches)}\n```")
        if system == CODER_SYSTEM_PROMPT:
            return final("Added ThemeContext and the toggle.")
        if "code review judge" in system:
            return final(json.dumps(judge(system)))
        raise AssertionError(f"Unexpected agent: {system[:60]}")

    return ScriptedModel(respond)


class FakeModelSource(ModelSource):
    def __init__(self, models: dict[AgentType, AgentModel] | None = None, default: AgentModel | None = None):
        self.models = models or {}
        self.default = default or ScriptedModel([final("{}")])

    def for_agent(self, agent_type: AgentType) -> AgentModel:
        return self.models.get(agent_type, self.default)


# =============================================================================
# Sandbox
# =============================================================================

GateOutcome = Callable[[int, str], tuple[int, str]]


def all_gates_pass(attempt: int, gate: str) -> tuple[int, str]:
    return 0, f"{gate} ok"


class FakeSandbox(Sandbox):
    """Records commands; git and gate commands answer from a script.

    ``gate_outcome(attempt, gate)`` returns ``(exit_code, output)``; the
    attempt number advances every time the typecheck gate runs.
    """

    def __init__(self, sandbox_id: str = "sbx-test", gate_outcome: GateOutcome = all_gates_pass):
        self.sandbox_id = sandbox_id
        self.gate_outcome = gate_outcome
        self.commands: list[list[str]] = []
        self.files: dict[str, str] = {"src/app.ts": "export const app = 1;\n"}
        self.gate_runs = 0
        self.status_output = " M src/app.ts\n?? src/toggle.ts\n"
        self.diff_output = "M\tsrc/app.ts\nA\tsrc/toggle.ts\n"

    @property
    def gate_commands_run(self) -> list[str]:
        return [GATE_BY_PROGRAM[c[0]] for c in self.commands if c[0] in GATE_BY_PROGRAM]

    @property
    def git_commands(self) -> list[list[str]]:
        return [c[1:] for c in self.commands if c[0] == "git"]

    async def run_command(self, cmd: str, args: list[str] | None = None, timeout: int | None = None) -> CommandResult:
        argv = [cmd, *(args or [])]
        self.commands.append(argv)
        if cmd in GATE_BY_PROGRAM:
            gate = GATE_BY_PROGRAM[cmd]
            if gate == "typecheck":
                self.gate_runs += 1
            exit_code, output = self.gate_outcome(self.gate_runs, gate)
            return CommandResult(stdout=output, exit_code=exit_code)
        if cmd == "git":
            return self._git(argv[1:])
        return CommandResult(stdout="", exit_code=0)

    def _git(self, args: list[str]) -> CommandResult:
        if "status" in args:
            return CommandResult(stdout=self.status_output, exit_code=0)
        if "diff" in args:
            return CommandResult(stdout=self.diff_output, exit_code=0)
        if "rev-parse" in args:
            return CommandResult(stdout="abc123\n", exit_code=0)
        return CommandResult(stdout="", exit_code=0)

    async def read_file(self, path: str, start_line: int | None = None, end_line: int | None = None) -> ToolResult:
        if path not in self.files:
            return ToolResult(ok=False, error_code="FILE_NOT_FOUND", error_message=f"File not found: {path}")
        return ToolResult(ok=True, data={"path": path, "content": self.files[path]})

    async def write_file(self, path: str, content: str) -> ToolResult:
        self.files[path] = content
        return ToolResult(ok=True, data={"path": path, "bytes_written": len(content)})

    async def edit_file(self, path: str, old_string: str, new_string: str, replace_all: bool = False) -> ToolResult:
        if path not in self.files:
            return ToolResult(ok=False, error_code="FILE_NOT_FOUND", error_message=f"File not found: {path}")
        self.files[path] = self.files[path].replace(old_string, new_string)
        return ToolResult(ok=True, data={"path": path})

    async def glob(self, pattern: str, dir_path: str = ".") -> ToolResult:
        return ToolResult(ok=True, data={"files": sorted(self.files)})

    async def grep(self, pattern: str, dir_path: str = ".", file_pattern: str | None = None) -> ToolResult:
        matches = [
            {"path": path, "line": i + 1, "text": line}
            for path, content in self.files.items()
            for i, line in enumerate(content.splitlines())
            if pattern in line
        ]
        return ToolResult(ok=True, data={"matches": matches})


class FakeSandboxProvider(SandboxProvider):
    def __init__(self, sandbox: FakeSandbox | None = None, fail_create: bool = False):
        self.sandbox = sandbox or FakeSandbox()
        self.fail_create = fail_create
        self.created: list[SandboxSpec] = []
        self.stopped: list[str] = []

    async def create(self, spec: SandboxSpec) -> SandboxHandle:
        if self.fail_create:
            raise SandboxError("git clone failed: repository not found", retriable=False)
        self.created.append(spec)
        return SandboxHandle(sandbox_id=self.sandbox.sandbox_id, cwd=f"/tmp/{self.sandbox.sandbox_id}")

    async def connect(self, sandbox_id: str) -> Sandbox:
        if sandbox_id != self.sandbox.sandbox_id:
            raise SandboxError(f"Sandbox {sandbox_id} does not exist", retriable=False)
        return self.sandbox

    async def stop(self, sandbox_id: str) -> None:
        self.stopped.append(sandbox_id)


# =============================================================================
# Source host and notifier
# =============================================================================

class FakeSourceHost(SourceHost):
    def __init__(self, number: int = 7):
        self.number = number
        self.requests: list[dict[str, str]] = []

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> PullRequest:
        self.requests.append({"owner": owner, "repo": repo, "head": head, "base": base, "title": title, "body": body})
        return PullRequest(url=f"https://github.com/{owner}/{repo}/pull/{self.number}", number=self.number)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.ctas: list[CtaRequestEvent] = []
        self.failures: list[dict[str, str]] = []
        self.completions: list[tuple[str, str]] = []

    async def cta_requested(self, event: CtaRequestEvent) -> None:
        self.ctas.append(event)

    async def phase_failed(self, run_id: str, phase: str, message: str, detail: str = "") -> None:
        self.failures.append({"run_id": run_id, "phase": phase, "message": message, "detail": detail})

    async def run_completed(self, run_id: str, pr_url: str) -> None:
        self.completions.append((run_id, pr_url))


# =============================================================================
# Clock
# =============================================================================

class FixedClock:
    """Engine clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta
