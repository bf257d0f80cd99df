"""Tool definitions and dispatch for agent loops.

A ToolRegistry pairs each tool's pydantic input model (advertised to the
model as JSON schema) with an async handler. ``registry.dispatch`` is the
``on_tool_call`` callback the agent loop uses:
- unknown tool names answer ``{"error": "unknown tool"}``
- input that fails validation answers a structured INVALID_INPUT error
- ToolResult values are rendered with ``ToolResult.to_tool_output``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field, ValidationError

from featureforge.schemas import ToolCall, ToolResult
from featureforge.tools.sandbox import Sandbox, run_allowed_command


logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any, ToolCall], Awaitable[Any]]


@dataclass
class ToolSpec:
    """A tool the model may call."""
    name: str
    description: str
    input_model: type[BaseModel]

    def to_openai(self) -> dict[str, Any]:
        """Function-calling definition in the OpenAI-compatible format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }


class ToolRegistry:
    """Tools available to one agent invocation."""

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolSpec, ToolHandler]] = {}

    def add(self, spec: ToolSpec, handler: ToolHandler) -> ToolRegistry:
        self._tools[spec.name] = (spec, handler)
        return self

    @property
    def specs(self) -> list[ToolSpec]:
        return [spec for spec, _ in self._tools.values()]

    async def dispatch(self, call: ToolCall) -> Any:
        entry = self._tools.get(call.name)
        if entry is None:
            logger.warning(f"Model called unknown tool {call.name}")
            return {"error": "unknown tool", "tool": call.name}

        spec, handler = entry
        try:
            args = spec.input_model.model_validate(call.input)
        except ValidationError as e:
            return {"error": f"invalid input for {call.name}: {e}", "code": "INVALID_INPUT"}

        result = await handler(args, call)
        if isinstance(result, ToolResult):
            return result.to_tool_output()
        return result


# =============================================================================
# Input models
# =============================================================================

class ReadInput(BaseModel):
    path: str = Field(..., description="File path relative to the repository root")
    start_line: int | None = Field(default=None, ge=1)
    end_line: int | None = Field(default=None, ge=1)


class GlobInput(BaseModel):
    pattern: str = Field(..., description="Glob pattern, e.g. 'src/**/*.ts'")
    dir_path: str = Field(default=".", description="Directory to search from")


class GrepInput(BaseModel):
    pattern: str = Field(..., description="Regular expression to search for")
    dir_path: str = Field(default=".")
    file_pattern: str | None = Field(default=None, description="Only search files matching this glob")


class WriteInput(BaseModel):
    path: str
    content: str


class EditInput(BaseModel):
    path: str
    old_string: str = Field(..., description="Exact text to replace; must be unique unless replace_all")
    new_string: str
    replace_all: bool = False


class BashInput(BaseModel):
    command: str = Field(..., description="Command line to run in the repository root")


READ_SPEC = ToolSpec("read", "Read a file from the repository.", ReadInput)
GLOB_SPEC = ToolSpec("glob", "List repository files matching a glob pattern.", GlobInput)
GREP_SPEC = ToolSpec("grep", "Search repository files with a regular expression.", GrepInput)
WRITE_SPEC = ToolSpec("write", "Create or overwrite a file.", WriteInput)
EDIT_SPEC = ToolSpec("edit", "Replace exact text in a file.", EditInput)
BASH_SPEC = ToolSpec("bash", "Run an allowlisted command (tests, linters, package scripts).", BashInput)


def add_read_tools(registry: ToolRegistry, sandbox: Sandbox) -> ToolRegistry:
    """Read-only file tools: read, glob, grep."""

    async def _read(args: ReadInput, call: ToolCall) -> ToolResult:
        return await sandbox.read_file(args.path, args.start_line, args.end_line)

    async def _glob(args: GlobInput, call: ToolCall) -> ToolResult:
        return await sandbox.glob(args.pattern, args.dir_path)

    async def _grep(args: GrepInput, call: ToolCall) -> ToolResult:
        return await sandbox.grep(args.pattern, args.dir_path, args.file_pattern)

    registry.add(READ_SPEC, _read)
    registry.add(GLOB_SPEC, _glob)
    registry.add(GREP_SPEC, _grep)
    return registry


def add_write_tools(
    registry: ToolRegistry,
    sandbox: Sandbox,
    allowed_commands: list[str] | None = None,
) -> ToolRegistry:
    """Mutating tools for the coder: write, edit, bash."""

    async def _write(args: WriteInput, call: ToolCall) -> ToolResult:
        return await sandbox.write_file(args.path, args.content)

    async def _edit(args: EditInput, call: ToolCall) -> ToolResult:
        return await sandbox.edit_file(args.path, args.old_string, args.new_string, args.replace_all)

    async def _bash(args: BashInput, call: ToolCall) -> ToolResult:
        return await run_allowed_command(sandbox, args.command, allowed_commands)

    registry.add(WRITE_SPEC, _write)
    registry.add(EDIT_SPEC, _edit)
    registry.add(BASH_SPEC, _bash)
    return registry
