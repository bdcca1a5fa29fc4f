"""Tool registry and the two adapters the model drives tools through.

``ToolRuntime.execute`` serves the raw function-call protocol: it takes a
``function_call`` item and always returns a JSON string. ``AgentTool``
wraps the same handlers for the agent runner. Handlers may raise; this
module is the only place their exceptions are caught.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Callable

from . import fmt
from .errors import ConfigError

DEBUG_SNIPPET_CHARS = 600

WEB_SEARCH_PREVIEW_TOOL = {"type": "web_search_preview"}


@dataclass
class ExecutionContext:
    """What a handler may touch: the workspace root and a logger."""

    cwd: str
    log: fmt.Logger = field(default_factory=fmt.Logger)


@dataclass
class ToolRegistration:
    """A function tool: its Responses API definition plus the handler.

    The handler is called as ``handler(args, context)`` and returns a dict
    with at least a ``success`` key.
    """

    definition: dict
    handler: Callable[[dict, ExecutionContext], dict]

    @property
    def name(self) -> str:
        return self.definition["name"]


def snippet(text: str, limit: int = DEBUG_SNIPPET_CHARS) -> str:
    """Truncate text for debug logs, noting how much was cut."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}…(+{len(text) - limit} chars)"


def _dump(result: dict) -> str:
    return json.dumps(result, ensure_ascii=False)


class ToolRuntime:
    """Name -> registration map. Duplicate names are rejected up front."""

    def __init__(
        self, registrations: list[ToolRegistration], *, logger: fmt.Logger | None = None
    ):
        self.logger = logger or fmt.Logger()
        self._tools: dict[str, ToolRegistration] = {}
        for reg in registrations:
            if reg.name in self._tools:
                raise ConfigError(f"Duplicate tool name detected: {reg.name}")
            self._tools[reg.name] = reg

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def registrations(self) -> list[ToolRegistration]:
        return list(self._tools.values())

    @property
    def definitions(self) -> list[dict]:
        return [reg.definition for reg in self._tools.values()]

    def get(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def invoke(self, name: str, args: dict, context: ExecutionContext) -> dict:
        """Run a handler by name and return its result dict. Never raises."""
        reg = self._tools.get(name)
        if reg is None:
            return {"success": False, "message": f"Unknown tool: {name}"}
        t0 = time.monotonic()
        try:
            result = reg.handler(args, context)
        except Exception as e:
            self.logger.debug(f"{name} failed: {e}")
            return {"success": False, "message": str(e)}
        if not isinstance(result, dict):
            result = {"success": True, "message": str(result)}
        self.logger.debug(f"{name} finished in {time.monotonic() - t0:.1f}s")
        return result

    def execute(self, call: dict, context: ExecutionContext) -> str:
        """Run one ``function_call`` item. Always returns a JSON string."""
        name = call.get("name") or ""
        raw_args = call.get("arguments") or "{}"
        try:
            args = json.loads(raw_args)
        except (json.JSONDecodeError, TypeError) as e:
            return _dump(
                {"success": False, "message": f"Failed to parse arguments for {name}: {e}"}
            )
        if not isinstance(args, dict):
            return _dump(
                {
                    "success": False,
                    "message": f"Failed to parse arguments for {name}: expected a JSON object",
                }
            )
        self.logger.info(f"[tool] {name} invoked")
        return _dump(self.invoke(name, args, context))


@dataclass
class AgentTool:
    """Agent-runner view of one registered tool."""

    name: str
    description: str
    parameters: dict
    runtime: ToolRuntime
    context: ExecutionContext

    def needs_approval(self) -> bool:
        return False

    def is_enabled(self) -> bool:
        return self.runtime.get(self.name) is not None

    def invoke(self, call_id: str, raw_args: str) -> str:
        """Run the tool for one call, logging truncated input and output."""
        log = self.runtime.logger
        log.info(f"tool handling {self.name} ({call_id})")
        log.debug(f"{self.name} args: {snippet(raw_args or '')}")
        output = self.runtime.execute(
            {"name": self.name, "arguments": raw_args, "call_id": call_id}, self.context
        )
        log.debug(f"{self.name} output: {snippet(output)}")
        return output


def build_agent_tools(runtime: ToolRuntime, context: ExecutionContext) -> list[AgentTool]:
    return [
        AgentTool(
            name=reg.name,
            description=reg.definition.get("description", ""),
            parameters=reg.definition.get("parameters", {}),
            runtime=runtime,
            context=context,
        )
        for reg in runtime.registrations
    ]


def build_tool_list(
    runtime: ToolRuntime,
    *,
    web_search_preview: bool = True,
    extra_tools: list[dict] | None = None,
) -> list[dict]:
    """Tool definitions for a request.

    Function tools come first, deduplicated by name. ``extra_tools`` are
    appended as-is; when one of them is a web search tool, the generic
    ``web_search_preview`` placeholder is left out.
    """
    tools: list[dict] = []
    seen: set[str] = set()
    for definition in runtime.definitions:
        name = definition.get("name")
        if name in seen:
            continue
        seen.add(name)
        tools.append(definition)
    extra = list(extra_tools or [])
    tools.extend(extra)
    has_search = any(str(t.get("type", "")).startswith("web_search") for t in extra)
    if web_search_preview and not has_search:
        tools.append(dict(WEB_SEARCH_PREVIEW_TOOL))
    return tools
