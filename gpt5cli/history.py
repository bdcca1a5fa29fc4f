"""Conversation history index: a JSON array of entries on disk.

Each entry is one conversation thread. Entries are looked up by
``last_response_id`` when a conversation continues, and by 1-based
position in the filtered, newest-first view for user-facing commands
(``-r N``, ``-s N``, ``-d N``, ``--compact N``).

Writes overwrite the whole file in place. A crash mid-write can leave a
truncated index behind; concurrent invocations race and the last writer
wins.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, NonNegativeInt, TypeAdapter, field_validator

from . import fmt
from .errors import AgentError, HistoryCorruptionError, ValidationError

UNTITLED = "(untitled)"


def now_iso() -> str:
    """UTC timestamp with millisecond precision and a Z suffix."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class HistoryTurn(BaseModel):
    """One message within a conversation."""

    role: str
    text: str | None = None
    at: str | None = None
    response_id: str | None = None  # assistant turns only
    kind: str | None = None  # "summary" for compacted system turns


class HistorySummary(BaseModel):
    text: str | None = None
    created_at: str | None = None


class HistoryResume(BaseModel):
    """How the next request re-threads this conversation.

    ``response_id``: continue from ``previous_response_id``.
    ``new_request``: start a fresh wire thread seeded with ``summary.text``.
    """

    mode: str | None = None
    previous_response_id: str | None = None
    summary: HistorySummary | None = None


class HistoryEntry(BaseModel):
    """One persisted conversation thread. ``context`` is mode-defined."""

    title: str | None = None
    model: str | None = None
    effort: str | None = None
    verbosity: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    first_response_id: str | None = None
    last_response_id: str | None = None
    request_count: NonNegativeInt | None = None
    resume: HistoryResume | None = None
    turns: list[HistoryTurn] | None = None
    context: Any = None

    @field_validator("request_count", mode="before")
    @classmethod
    def _coerce_count(cls, value):
        # bool is an int subclass; a JSON true/false is corruption, not a count.
        if isinstance(value, bool):
            raise ValueError(f"request_count must be a non-negative integer, got {value!r}")
        # Older indexes stored the counter as a digit string.
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped.isdigit():
                raise ValueError(f"request_count must be a non-negative integer, got {value!r}")
            return int(stripped)
        return value

    def dump(self) -> dict:
        """Serialize for the index file, dropping unset fields.

        ``context`` is written back verbatim so mode-specific keys survive.
        """
        data = self.model_dump(exclude_none=True, exclude={"context"})
        if self.context is not None:
            data["context"] = self.context
        return data


_ENTRIES = TypeAdapter(list[HistoryEntry])


def _reject_nulls(data: Any, where: str) -> None:
    """Optional index fields may be omitted but never null. ``context`` is opaque."""
    if not isinstance(data, dict):
        return
    for key, value in data.items():
        if key == "context":
            continue
        if value is None:
            raise ValueError(f"{where}: {key!r} must not be null")
        if isinstance(value, dict):
            _reject_nulls(value, f"{where}.{key}")
        elif isinstance(value, list):
            for i, item in enumerate(value):
                _reject_nulls(item, f"{where}.{key}[{i}]")


def cli_entry_filter(cli_name: str) -> Callable[[HistoryEntry], bool]:
    """Keep entries recorded by ``cli_name``, plus entries that carry no cli tag."""

    def _filter(entry: HistoryEntry) -> bool:
        context = entry.context
        if not isinstance(context, dict):
            return True
        cli = context.get("cli")
        if not isinstance(cli, str):
            return True
        return cli == cli_name

    return _filter


def _check_index(index: int, count: int) -> None:
    if isinstance(index, bool) or not isinstance(index, int) or index < 1 or index > count:
        raise ValidationError(f"invalid history number (1-{count}): {index}")


class HistoryStore:
    """Read and update the history index file.

    context_validator is called with each entry's raw ``context`` on load
    and save; it returns the value to keep and raises ValueError or
    TypeError to reject it. entry_filter narrows the user-visible view.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        context_validator: Callable[[Any], Any] | None = None,
        entry_filter: Callable[[HistoryEntry], bool] | None = None,
        logger: fmt.Logger | None = None,
    ):
        self.path = Path(path)
        self.context_validator = context_validator
        self.entry_filter = entry_filter
        self.logger = logger or fmt.Logger()

    def ensure_initialized(self) -> None:
        """Create the parent directory and an empty index if missing."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("[]\n", encoding="utf-8")

    def _normalize(self, raw) -> list[HistoryEntry]:
        if isinstance(raw, list):
            for i, item in enumerate(raw, 1):
                _reject_nulls(item, f"entry {i}")
        entries = _ENTRIES.validate_python(raw)
        if self.context_validator is not None:
            for entry in entries:
                if entry.context is not None:
                    entry.context = self.context_validator(entry.context)
        return entries

    def load_entries(self) -> list[HistoryEntry]:
        """Return every entry in file order.

        Raises HistoryCorruptionError if the file cannot be read, parsed or
        validated. The file is left untouched in that case.
        """
        self.ensure_initialized()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return self._normalize(raw)
        except (OSError, ValueError, TypeError) as e:
            raise HistoryCorruptionError(f"failed to parse history index: {e}") from e

    def save_entries(self, entries: list[HistoryEntry]) -> None:
        """Re-validate and overwrite the index file."""
        self.ensure_initialized()
        raw = [e.dump() if isinstance(e, HistoryEntry) else e for e in entries]
        normalized = self._normalize(raw)
        text = json.dumps([e.dump() for e in normalized], indent=2, ensure_ascii=False)
        self.path.write_text(text + "\n", encoding="utf-8")

    def get_filtered_entries(self) -> list[HistoryEntry]:
        """Entries newest first by ``updated_at``, narrowed by the entry filter."""
        entries = sorted(
            self.load_entries(), key=lambda e: e.updated_at or "", reverse=True
        )
        if self.entry_filter is None:
            return entries
        try:
            return [e for e in entries if self.entry_filter(e)]
        except Exception as e:
            raise AgentError(f"history filter failed: {e}") from e

    def select_by_number(self, index: int) -> HistoryEntry:
        entries = self.get_filtered_entries()
        _check_index(index, len(entries))
        return entries[index - 1]

    def show_by_number(self, index: int) -> HistoryEntry:
        """Print entry ``index`` of the filtered view and return it."""
        entry = self.select_by_number(index)
        print_history_detail(entry, index)
        return entry

    def delete_by_number(self, index: int) -> tuple[str, str]:
        """Delete entry ``index`` of the filtered view.

        The entry is removed from the full file by its ``last_response_id``.
        Returns (removed_title, removed_id).
        """
        entry = self.select_by_number(index)
        last_id = entry.last_response_id
        if not last_id:
            raise ValidationError(
                f"history entry {index} has no last_response_id and cannot be deleted"
            )
        remaining = [e for e in self.load_entries() if e.last_response_id != last_id]
        self.save_entries(remaining)
        self.logger.debug(f"deleted history entry {last_id}")
        return entry.title or UNTITLED, last_id

    def find_latest(self) -> HistoryEntry | None:
        entries = self.get_filtered_entries()
        return entries[0] if entries else None

    def upsert_entry(self, entry: HistoryEntry) -> None:
        """Replace the entry sharing ``entry.last_response_id``, or append it."""
        entries = self.load_entries()
        for i, existing in enumerate(entries):
            if existing.last_response_id == entry.last_response_id:
                entries[i] = entry
                break
        else:
            entries.append(entry)
        self.save_entries(entries)

    def upsert_conversation(
        self,
        *,
        model: str,
        effort: str,
        verbosity: str,
        context,
        response_id: str,
        user_text: str,
        assistant_text: str,
        context_data: Any = None,
    ) -> HistoryEntry:
        """Fold one request/response round-trip into the index.

        ``context`` is the resolved conversation context (see
        context.ConversationContext). The entry continued is the one whose
        ``last_response_id`` equals the previous response id, falling back to
        the active entry's id. When nothing matches, a new entry is appended.
        Stored context precedence: context_data, then the carried-over
        previous context, then whatever the entry already held.
        """
        entries = self.load_entries()
        ts_now = now_iso()
        target_last_id = context.previous_response_id or context.active_last_response_id

        summary_text = context.resume_summary_text or ""
        summary_created = context.resume_summary_created_at or ""

        user_turn = HistoryTurn(role="user", text=user_text, at=ts_now)
        assistant_turn = HistoryTurn(
            role="assistant", text=assistant_text, at=ts_now, response_id=response_id
        )

        def _resolve_context(existing=None):
            for candidate in (context_data, context.previous_context, existing):
                if candidate is not None:
                    return candidate
            return None

        def _new_entry() -> HistoryEntry:
            resume = HistoryResume(mode="response_id", previous_response_id=response_id)
            if summary_text:
                resume.summary = HistorySummary(
                    text=summary_text, created_at=summary_created or ts_now
                )
            return HistoryEntry(
                title=context.title_to_use,
                model=model,
                effort=effort,
                verbosity=verbosity,
                created_at=ts_now,
                updated_at=ts_now,
                first_response_id=response_id,
                last_response_id=response_id,
                request_count=1,
                resume=resume,
                turns=[user_turn, assistant_turn],
                context=_resolve_context(),
            )

        if context.is_new_conversation and not target_last_id:
            entry = _new_entry()
            entries.append(entry)
            self.save_entries(entries)
            return entry

        for i, existing in enumerate(entries):
            if (existing.last_response_id or "") != (target_last_id or ""):
                continue
            resume = (
                existing.resume.model_copy(deep=True)
                if existing.resume
                else HistoryResume()
            )
            resume.mode = "response_id"
            resume.previous_response_id = response_id
            if summary_text:
                previous_created = resume.summary.created_at if resume.summary else None
                resume.summary = HistorySummary(
                    text=summary_text,
                    created_at=summary_created
                    or previous_created
                    or existing.created_at
                    or ts_now,
                )
            else:
                resume.summary = None
            entry = existing.model_copy(
                update={
                    "updated_at": ts_now,
                    "last_response_id": response_id,
                    "model": model,
                    "effort": effort,
                    "verbosity": verbosity,
                    "request_count": (existing.request_count or 0) + 1,
                    "turns": [*(existing.turns or []), user_turn, assistant_turn],
                    "resume": resume,
                    "context": _resolve_context(existing.context),
                }
            )
            entries[i] = entry
            self.save_entries(entries)
            return entry

        self.logger.debug(
            f"no history entry matches {target_last_id!r}, recording a new one"
        )
        entry = _new_entry()
        entries.append(entry)
        self.save_entries(entries)
        return entry


# -- Compaction --------------------------------------------------------------


def format_turns_for_summary(turns: list[HistoryTurn]) -> str:
    """Render turns as ``speaker:\\ntext`` blocks for the summarizer."""
    blocks = []
    for turn in turns:
        text = (turn.text or "").strip()
        if not text:
            continue
        speaker = "summary" if turn.kind == "summary" else turn.role
        blocks.append(f"{speaker}:\n{text}")
    return "\n\n---\n\n".join(blocks)


def apply_compaction(entry: HistoryEntry, summary_text: str) -> HistoryEntry:
    """Replace an entry's turns with one summary turn.

    The next request starts a new wire thread seeded with the summary.
    """
    ts_now = now_iso()
    resume = HistoryResume(
        mode="new_request",
        previous_response_id="",
        summary=HistorySummary(text=summary_text, created_at=ts_now),
    )
    return entry.model_copy(
        update={
            "turns": [
                HistoryTurn(role="system", kind="summary", text=summary_text, at=ts_now)
            ],
            "resume": resume,
            "updated_at": ts_now,
        }
    )


# -- Output ------------------------------------------------------------------


def _output_info(context) -> list[str]:
    if not isinstance(context, dict):
        return []
    parts = []
    if isinstance(context.get("relative_path"), str) and context["relative_path"]:
        parts.append(f"relative={context['relative_path']}")
    if isinstance(context.get("absolute_path"), str) and context["absolute_path"]:
        parts.append(f"absolute={context['absolute_path']}")
    if context.get("copy") is True:
        parts.append("copy")
    return parts


def print_history_list(store: HistoryStore) -> None:
    """Print the filtered view, newest first, numbered from 1."""
    entries = store.get_filtered_entries()
    if not entries:
        fmt.history_line("(no history)")
        return
    fmt.history_line("=== History (newest first) ===")
    for n, entry in enumerate(entries, start=1):
        meta = "/".join(
            [
                entry.model or "(no model)",
                entry.effort or "(no effort)",
                entry.verbosity or "(no verbosity)",
            ]
        )
        line = (
            f"{n:>2}) {entry.title or UNTITLED} [{meta} {entry.request_count or 0}req] "
            f"{entry.updated_at or '(never updated)'}"
        )
        parts = _output_info(entry.context)
        if parts:
            line += f" paths[{', '.join(parts)}]"
        fmt.history_line(line)


def print_history_detail(entry: HistoryEntry, index: int) -> None:
    """Print the user, assistant and summary turns of one entry."""
    fmt.history_line(
        f"=== History #{index}: {entry.title or UNTITLED} "
        f"(updated: {entry.updated_at or '(never updated)'}, "
        f"requests: {entry.request_count or 0}) ==="
    )
    parts = _output_info(entry.context)
    if parts:
        fmt.history_line(f"output: {', '.join(parts)}")
        fmt.history_line("")

    printable = [
        t
        for t in entry.turns or []
        if t.role in ("user", "assistant") or (t.role == "system" and t.kind == "summary")
    ]
    if not printable:
        fmt.history_line("(this entry has no stored messages)")
        return
    for turn in printable:
        fmt.history_label("summary" if turn.kind == "summary" else turn.role)
        fmt.history_line(turn.text or "")
        fmt.history_line("")
