"""Tool-calling loop over the Responses API."""

import json
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable

import tiktoken

from . import fmt
from .errors import AgentError, ConfigError, IterationCapReached
from .responses import (
    call_responses,
    extract_response_text,
    function_calls,
    message_fragments,
)
from .runtime import ExecutionContext, ToolRuntime, build_agent_tools, snippet

CAP_POLICIES = ("partial", "throw")
MAX_TOOL_WORKERS = 8
MAX_RESULT_PREVIEW = 500

_encoder = tiktoken.get_encoding("cl100k_base")


@dataclass
class AgentResult:
    """Outcome of one loop run."""

    assistant_text: str
    response_id: str | None
    reached_max_iterations: bool = False
    iterations: int = 0


def estimate_tokens(items: list, tools: list | None = None) -> int:
    """Approximate token count of a request's input items using tiktoken."""
    total = 0
    for item in items:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        text = ""
        if isinstance(content, str):
            text = content
        elif isinstance(content, list):
            text = "".join(
                p.get("text", "") or "" for p in content if isinstance(p, dict)
            )
        if item.get("type") == "function_call_output":
            text += item.get("output", "") or ""
        total += len(_encoder.encode(text))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-item overhead (role, separators), ~4 tokens each
    total += 4 * len(items)
    return total


def has_user_input(items: list) -> bool:
    """True if any user message carries non-blank text or an image."""
    for item in items:
        if not isinstance(item, dict) or item.get("role") != "user":
            continue
        content = item.get("content")
        if isinstance(content, str):
            if content.strip():
                return True
            continue
        for part in content or []:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "input_image":
                return True
            if part.get("type") == "input_text" and (part.get("text") or "").strip():
                return True
    return False


def _report_tool(call: dict, output: str, elapsed: float) -> None:
    name = call.get("name") or "?"
    fmt.tool_call(name, call.get("arguments") or "")
    try:
        result = json.loads(output)
    except json.JSONDecodeError:
        result = {}
    if isinstance(result, dict) and result.get("success"):
        fmt.tool_result(name, elapsed, snippet(output, MAX_RESULT_PREVIEW))
    else:
        message = result.get("message") if isinstance(result, dict) else None
        fmt.tool_error(name, message or snippet(output, MAX_RESULT_PREVIEW))


def run_tool_calls(
    calls: list[dict],
    runtime: ToolRuntime,
    context: ExecutionContext,
    *,
    verbose: bool = False,
) -> list[dict]:
    """Execute every pending call concurrently.

    Returns one ``function_call_output`` per call, in call order, matched
    by ``call_id`` regardless of completion order.
    """
    agent_tools = {
        tool.name: tool
        for tool in build_agent_tools(runtime, context)
        if tool.is_enabled()
    }

    def _invoke(call: dict) -> tuple[str, float]:
        call_id = call.get("call_id") or call.get("id") or ""
        tool = agent_tools.get(call.get("name"))
        t0 = time.monotonic()
        if tool is None:
            output = runtime.execute(call, context)
        else:
            output = tool.invoke(call_id, call.get("arguments") or "{}")
        return output, time.monotonic() - t0

    outputs: list[str | None] = [None] * len(calls)
    elapsed: list[float] = [0.0] * len(calls)
    with ThreadPoolExecutor(max_workers=min(len(calls), MAX_TOOL_WORKERS)) as executor:
        futures = {executor.submit(_invoke, call): i for i, call in enumerate(calls)}
        for future in as_completed(futures):
            i = futures[future]
            outputs[i], elapsed[i] = future.result()

    if verbose:
        for call, output, took in zip(calls, outputs, elapsed):
            _report_tool(call, output, took)

    return [
        {
            "type": "function_call_output",
            "call_id": call.get("call_id") or call.get("id") or "",
            "output": output,
        }
        for call, output in zip(calls, outputs)
    ]


def _follow_up(request: dict, outputs: list[dict], response_id: str | None) -> dict:
    follow = {k: request[k] for k in ("model", "reasoning", "text", "tools") if k in request}
    follow["input"] = outputs
    if response_id:
        follow["previous_response_id"] = response_id
    return follow


def run_agent_loop(
    request: dict,
    runtime: ToolRuntime,
    context: ExecutionContext,
    *,
    max_iterations: int,
    on_cap_reached: str = "partial",
    call: Callable[[dict], dict] = call_responses,
    logger: fmt.Logger | None = None,
    verbose: bool = False,
) -> AgentResult:
    """Drive the model until it stops requesting tools.

    Each round, all function calls in the response run concurrently and
    their outputs go back in a follow-up chained on the response id. Once
    ``max_iterations`` follow-ups have been sent and the model still asks
    for tools, ``on_cap_reached`` decides: "throw" raises
    IterationCapReached, "partial" returns whatever assistant text the
    responses carried so far with ``reached_max_iterations`` set.
    """
    if on_cap_reached not in CAP_POLICIES:
        raise ConfigError(f"unknown iteration cap policy {on_cap_reached!r}")
    if not has_user_input(request.get("input") or []):
        raise ConfigError("No user input found for agent execution")
    logger = logger or fmt.Logger()

    fragments: list[str] = []
    last_response_id: str | None = None
    iteration = 0
    current = request

    while True:
        if verbose:
            fmt.turn_header(
                iteration + 1,
                max_iterations + 1,
                estimate_tokens(current.get("input") or [], current.get("tools")),
            )
        t0 = time.monotonic()
        response = call(current)
        if verbose:
            fmt.llm_timing(time.monotonic() - t0, str(response.get("status", "")))

        last_response_id = response.get("id") or last_response_id
        fragments.extend(message_fragments(response))
        calls = function_calls(response)

        if not calls:
            text = extract_response_text(response) or "\n\n".join(fragments)
            if not text.strip():
                raise AgentError("model returned an empty response")
            if verbose:
                fmt.completion(iteration + 1, False)
            return AgentResult(text, last_response_id, False, iteration)

        if iteration >= max_iterations:
            if on_cap_reached == "throw":
                raise IterationCapReached(
                    f"Tool call iteration limit exceeded ({max_iterations})"
                )
            logger.warning(
                f"tool call iteration limit reached ({max_iterations}), "
                "returning partial output"
            )
            text = "\n\n".join(fragments) or extract_response_text(response)
            if not text.strip():
                text = (
                    f"(stopped after {iteration} tool iterations "
                    "before the model produced a final answer)"
                )
            if verbose:
                fmt.completion(iteration + 1, True)
            return AgentResult(text, last_response_id, True, iteration)

        logger.debug(
            f"iteration {iteration + 1}: {len(calls)} tool call(s) "
            f"[{', '.join(c.get('name') or '?' for c in calls)}]"
        )
        outputs = run_tool_calls(calls, runtime, context, verbose=verbose)
        current = _follow_up(request, outputs, response.get("id"))
        iteration += 1
