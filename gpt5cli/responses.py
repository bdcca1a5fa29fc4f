"""Responses API requests: building, calling through LiteLLM, reading results."""

import base64
import mimetypes
from pathlib import Path
from typing import Callable

from . import fmt
from .errors import AgentError, ValidationError, WorkspaceViolationError
from .history import HistoryStore, apply_compaction, format_turns_for_summary

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}

SUMMARY_INSTRUCTION = (
    "You summarize conversation logs. Keep every point that matters and be concise."
)
SUMMARY_HEADER = (
    "Below is the conversation so far. Read every message and reflect it in the summary."
)


def input_message(role: str, text: str) -> dict:
    return {"role": role, "content": [{"type": "input_text", "text": text}]}


def load_image_data_url(raw_path: str) -> str:
    """Read an image under $HOME and return it as a base64 data URL."""
    home = Path.home().resolve()
    path = Path(raw_path).expanduser()
    resolved = (path if path.is_absolute() else Path.cwd() / path).resolve()
    if not resolved.is_relative_to(home):
        raise WorkspaceViolationError(f"image must be inside {home}: {raw_path}")
    if resolved.suffix.lower() not in IMAGE_EXTENSIONS:
        raise ValidationError(
            f"unsupported image type {resolved.suffix!r} "
            f"(expected one of {', '.join(sorted(IMAGE_EXTENSIONS))})"
        )
    if not resolved.is_file():
        raise ValidationError(f"image not found: {raw_path}")
    mime = mimetypes.guess_type(resolved.name)[0] or "image/png"
    data = base64.b64encode(resolved.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{data}"


def build_request(
    *,
    model: str,
    effort: str,
    verbosity: str,
    tools: list[dict],
    input_text: str,
    context,
    continuing: bool,
    system_prompt: str | None = None,
    extra_system_messages: list[dict] | None = None,
    image_data_url: str | None = None,
    logger: fmt.Logger | None = None,
) -> dict:
    """Assemble the first request of a turn.

    Input order: the system prompt (new conversations only), mode-specific
    system messages, the carried-over summary, then the user message.
    """
    logger = logger or fmt.Logger()
    messages: list[dict] = []
    if context.is_new_conversation and system_prompt:
        messages.append(input_message("system", system_prompt))
    messages.extend(extra_system_messages or [])
    messages.extend(context.resume_base_messages)

    user_content = [{"type": "input_text", "text": input_text}]
    if image_data_url:
        user_content.append(
            {"type": "input_image", "image_url": image_data_url, "detail": "auto"}
        )
    messages.append({"role": "user", "content": user_content})

    request = {
        "model": model,
        "reasoning": {"effort": effort},
        "text": {"verbosity": verbosity},
        "tools": tools,
        "input": messages,
    }
    if continuing and context.previous_response_id:
        request["previous_response_id"] = context.previous_response_id
    elif continuing and not context.resume_summary_text:
        logger.warning("no previous response id found, starting a new conversation")
    return request


def response_to_dict(response) -> dict:
    if isinstance(response, dict):
        return response
    if hasattr(response, "model_dump"):
        return response.model_dump()
    return dict(vars(response))


def _message_texts(item: dict) -> list[str]:
    texts = []
    for part in item.get("content") or []:
        if isinstance(part, dict) and part.get("type") in ("output_text", "text"):
            text = part.get("text")
            if isinstance(text, str) and text:
                texts.append(text)
    return texts


def message_fragments(response: dict) -> list[str]:
    """Text parts of every ``message`` item in a response, in order."""
    fragments = []
    for item in response.get("output") or []:
        if isinstance(item, dict) and item.get("type") == "message":
            fragments.extend(_message_texts(item))
    return fragments


def extract_response_text(response: dict) -> str:
    """Flattened ``output_text`` if present, else the message items' text."""
    output_text = response.get("output_text")
    if isinstance(output_text, list) and output_text:
        return "".join(str(t) for t in output_text)
    if isinstance(output_text, str) and output_text.strip():
        return output_text
    return "".join(message_fragments(response))


def function_calls(response: dict) -> list[dict]:
    return [
        item
        for item in response.get("output") or []
        if isinstance(item, dict) and item.get("type") == "function_call"
    ]


def call_responses(
    request: dict, *, api_key: str | None = None, base_url: str | None = None
) -> dict:
    """Send one request through LiteLLM's Responses API bridge."""
    import litellm

    litellm.suppress_debug_info = True

    kwargs = dict(request)
    if api_key:
        kwargs["api_key"] = api_key
    if base_url:
        kwargs["api_base"] = base_url
    try:
        response = litellm.responses(**kwargs)
    except Exception as e:
        raise AgentError(f"LLM call failed: {e}")
    return response_to_dict(response)


def perform_compact(
    store: HistoryStore,
    index: int,
    *,
    model: str,
    call: Callable[[dict], dict] = call_responses,
    logger: fmt.Logger | None = None,
) -> str:
    """Summarize entry ``index`` with ``model`` and store the summary in its place.

    Returns the summary text.
    """
    logger = logger or fmt.Logger()
    entry = store.select_by_number(index)
    turns = entry.turns or []
    transcript = format_turns_for_summary(turns)
    if not transcript:
        raise ValidationError(f"history entry {index} has no messages to summarize")
    if not entry.last_response_id:
        raise ValidationError(f"history entry {index} has no last_response_id")

    prompt = (
        f"{SUMMARY_HEADER}\n---\n{transcript}\n---\n\n"
        "Output requirements:\n"
        "- Summarize the content plainly\n"
        "- Bullet points or short paragraphs are both fine"
    )
    request = {
        "model": model,
        "reasoning": {"effort": "medium"},
        "text": {"verbosity": "medium"},
        "input": [
            input_message("system", SUMMARY_INSTRUCTION),
            input_message("user", prompt),
        ],
    }
    summary = extract_response_text(call(request)).strip()
    if not summary:
        raise AgentError("failed to generate a summary")

    store.upsert_entry(apply_compaction(entry, summary))
    logger.info(f"compact: history={index}, summarized={len(turns)}")
    return summary
