"""Reconcile CLI options with the conversation being continued."""

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from . import fmt
from .config import LEVELS
from .history import HistoryEntry, HistoryStore

TITLE_MAX_CHARS = 50


@dataclass
class ConversationContext:
    """Everything the request builder and the history upsert need to know."""

    is_new_conversation: bool
    previous_response_id: str | None
    previous_title: str | None
    title_to_use: str
    resume_base_messages: list[dict] = field(default_factory=list)
    resume_summary_text: str | None = None
    resume_summary_created_at: str | None = None
    active_entry: HistoryEntry | None = None
    active_last_response_id: str | None = None
    previous_context: Any = None


def _backfill_level(options, name: str, value: str | None) -> None:
    if getattr(options, f"{name}_explicit", False) or not value:
        return
    lower = value.lower()
    if lower in LEVELS:
        setattr(options, name, lower)


def compute_context(
    options,
    store: HistoryStore,
    input_text: str,
    *,
    active_entry: HistoryEntry | None = None,
    previous_response_id: str | None = None,
    previous_title: str | None = None,
    synchronize_with_history: Callable | None = None,
    logger: fmt.Logger | None = None,
) -> ConversationContext:
    """Resolve which conversation this request belongs to.

    ``options`` is the parsed CLI namespace. When continuing, its model,
    effort and verbosity are backfilled from the active entry unless the
    matching ``*_explicit`` flag is set. ``synchronize_with_history`` is
    called as ``hook(options, entry, logger)`` so a mode can restore its
    own settings from the entry's context under the same rule.
    """
    logger = logger or fmt.Logger()
    continuing = bool(getattr(options, "continue_conversation", False))

    if not getattr(options, "has_explicit_history", False) and continuing:
        latest = store.find_latest()
        if latest is not None:
            active_entry = latest
            previous_response_id = latest.last_response_id or previous_response_id
            previous_title = latest.title or previous_title
        else:
            logger.warning("no history to continue (starting new)")

    resume_mode = ""
    summary_text = None
    summary_created_at = None
    base_messages: list[dict] = []

    if active_entry is not None:
        if continuing:
            if not getattr(options, "model_explicit", False) and active_entry.model:
                options.model = active_entry.model
            _backfill_level(options, "effort", active_entry.effort)
            _backfill_level(options, "verbosity", active_entry.verbosity)

        if synchronize_with_history is not None:
            synchronize_with_history(options, active_entry, logger)

        resume = active_entry.resume
        if resume is not None:
            resume_mode = resume.mode or ""
            if resume.summary is not None:
                summary_text = resume.summary.text or None
                summary_created_at = resume.summary.created_at or None
            if resume.previous_response_id:
                previous_response_id = resume.previous_response_id

        if summary_text:
            base_messages.append(
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": summary_text}],
                }
            )

        if not previous_title and active_entry.title:
            previous_title = active_entry.title

        if resume_mode == "new_request":
            previous_response_id = None

    is_new = True
    if continuing:
        if previous_response_id:
            is_new = False
        elif active_entry is not None and resume_mode == "new_request":
            is_new = False

    title = re.sub(r"\s+", " ", input_text)[:TITLE_MAX_CHARS]
    if is_new:
        if continuing and previous_title:
            title = previous_title
    else:
        title = previous_title or ""

    return ConversationContext(
        is_new_conversation=is_new,
        previous_response_id=previous_response_id or None,
        previous_title=previous_title,
        title_to_use=title,
        resume_base_messages=base_messages,
        resume_summary_text=summary_text,
        resume_summary_created_at=summary_created_at,
        active_entry=active_entry,
        active_last_response_id=active_entry.last_response_id if active_entry else None,
        previous_context=active_entry.context if active_entry else None,
    )
