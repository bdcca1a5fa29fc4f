"""Post-conversation steps: output delivery, ordered actions, history commit.

Steps run in order and stop at the first failure. Side effects of steps
that already completed (a written file, a clipboard copy) are kept.
"""

import secrets
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from . import fmt
from .errors import ConfigError, ExternalCommandError, ValidationError, WorkspaceViolationError
from .runtime import ExecutionContext, ToolRuntime

CLIPBOARD_PRIORITY = 100
RENDER_PRIORITY = 200


def ensure_workspace_path(raw_path: str, cwd: str) -> Path:
    """Resolve an output path that must stay inside the workspace."""
    if not raw_path or not str(raw_path).strip():
        raise ValidationError("output path must not be empty")
    root = Path(cwd).resolve()
    candidate = Path(str(raw_path).strip()).expanduser()
    resolved = (candidate if candidate.is_absolute() else root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise WorkspaceViolationError(
            f"output path must be inside the workspace ({root}): {raw_path}"
        )
    return resolved


def generate_default_output_path(
    mode: str, extension: str, *, cwd: str = ".", output_dir: str | None = None
) -> tuple[str, Path]:
    """Return (relative, absolute) for ``{mode}-{timestamp}-{4hex}.{ext}``.

    The file goes under ``output_dir`` (which must be inside the
    workspace) or ``output/{mode}``.
    """
    base = ensure_workspace_path(output_dir or f"output/{mode}", cwd)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    name = f"{mode}-{stamp}-{secrets.token_hex(2)}.{extension}"
    absolute = base / name
    return str(absolute.relative_to(Path(cwd).resolve())), absolute


def write_to_file(path: Path, content: str) -> int:
    if path.is_dir():
        raise ValidationError(f"output path is a directory: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    path.write_bytes(data)
    return len(data)


def clipboard_command() -> list[str]:
    if sys.platform == "darwin":
        return ["pbcopy"]
    if sys.platform == "win32":
        return ["clip"]
    return ["xclip", "-selection", "clipboard"]


def copy_to_clipboard(text: str, command: list[str] | None = None) -> None:
    """Pipe text into the OS clipboard helper."""
    argv = command or clipboard_command()
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise ExternalCommandError(f"failed to start {argv[0]}: {e}") from e
    _, stderr = proc.communicate(text)
    if proc.returncode != 0:
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        raise ExternalCommandError(
            f"{argv[0]} exited with code {proc.returncode}{detail}"
        )


@dataclass
class CopySource:
    """What a clipboard copy takes: the response text or a workspace file."""

    kind: str  # "content" | "file"
    value: str = ""


@dataclass
class Delivery:
    file_path: str | None = None
    bytes_written: int = 0
    copied: bool = False


def _read_copy_source(source: CopySource, content: str, cwd: str) -> str:
    if source.kind == "content":
        return source.value or content
    if source.kind == "file":
        path = ensure_workspace_path(source.value, cwd)
        if not path.is_file():
            raise ValidationError(f"copy target file does not exist: {source.value}")
        return path.read_text(encoding="utf-8")
    raise ConfigError(f"unknown copy source {source.kind!r}")


def deliver_output(
    *,
    content: str,
    cwd: str,
    file_path: str | None = None,
    copy: bool = False,
    copy_source: CopySource | None = None,
) -> Delivery:
    """Write content to a workspace file and/or copy it to the clipboard.

    The target path is checked before anything is written.
    """
    delivery = Delivery()
    if file_path:
        target = ensure_workspace_path(file_path, cwd)
        delivery.bytes_written = write_to_file(target, content)
        delivery.file_path = str(target)
    if copy:
        text = _read_copy_source(copy_source or CopySource("content"), content, cwd)
        copy_to_clipboard(text)
        delivery.copied = True
    return delivery


# -- Actions -----------------------------------------------------------------


@dataclass
class CommandAction:
    argv: list[str]
    cwd: str
    priority: int
    flag: str
    kind: str = field(default="command", init=False)


@dataclass
class ClipboardAction:
    source: CopySource
    cwd: str
    priority: int = CLIPBOARD_PRIORITY
    flag: str = "--copy"
    kind: str = field(default="clipboard", init=False)


@dataclass
class ToolAction:
    """Run a registered tool after the conversation, e.g. a final lint pass."""

    tool_name: str
    args: dict
    priority: int
    flag: str
    kind: str = field(default="tool", init=False)


FinalizeAction = CommandAction | ClipboardAction | ToolAction


def opener_command(path: str) -> list[str]:
    if sys.platform == "darwin":
        return ["open", path]
    if sys.platform == "win32":
        return ["cmd", "/c", "start", "", path]
    return ["xdg-open", path]


def d2_html_actions(
    source: str, html: str, cwd: str, priority: int = RENDER_PRIORITY
) -> list[CommandAction]:
    """Render a D2 file to HTML, then open it."""
    return [
        CommandAction(
            argv=["d2", "--layout=elk", source, html],
            cwd=cwd,
            priority=priority,
            flag="--open-html",
        ),
        CommandAction(argv=opener_command(html), cwd=cwd, priority=priority, flag="--open-html"),
    ]


def execute_finalize_action(
    action: FinalizeAction,
    *,
    content: str,
    cwd: str = ".",
    runtime: ToolRuntime | None = None,
    logger: fmt.Logger | None = None,
) -> None:
    """Run one action. Raises ExternalCommandError on any failure."""
    logger = logger or fmt.Logger()
    if isinstance(action, CommandAction):
        logger.debug(f"{action.flag}: running {' '.join(action.argv)}")
        try:
            proc = subprocess.run(action.argv, cwd=action.cwd)
        except OSError as e:
            raise ExternalCommandError(
                f"{action.flag}: failed to start {action.argv[0]}: {e}"
            ) from e
        if proc.returncode != 0:
            raise ExternalCommandError(
                f"{action.flag}: {action.argv[0]} exited with code {proc.returncode}"
            )
    elif isinstance(action, ClipboardAction):
        try:
            copy_to_clipboard(_read_copy_source(action.source, content, action.cwd))
        except ExternalCommandError as e:
            raise ExternalCommandError(f"{action.flag}: {e}") from e
    elif isinstance(action, ToolAction):
        if runtime is None:
            raise ConfigError(f"{action.flag}: no tool runtime for {action.tool_name}")
        result = runtime.invoke(
            action.tool_name, action.args, ExecutionContext(cwd=cwd, log=logger)
        )
        if not result.get("success"):
            raise ExternalCommandError(
                f"{action.flag}: {action.tool_name} failed: "
                f"{result.get('message') or result.get('stderr') or 'unknown error'}"
            )
    else:
        raise ConfigError(f"unknown finalize action {action!r}")
    logger.debug(f"{action.flag}: done")


# -- History context ---------------------------------------------------------


class FileHistoryContext(BaseModel):
    """Context stored by the file-producing modes (d2, mermaid)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    cli: str | None = None
    relative_path: str | None = None
    absolute_path: str | None = None
    copy_: bool | None = Field(None, alias="copy")


def file_context_validator(value: Any) -> Any:
    """Check a stored context against FileHistoryContext, returning it as stored."""
    if not isinstance(value, dict):
        raise TypeError(f"history context must be an object, got {type(value).__name__}")
    FileHistoryContext.model_validate(value)
    return value


def build_file_history_context(
    *,
    base: dict,
    previous_context: Any = None,
    context_path: str | None = None,
    default_file_path: str | None = None,
    history_artifact_path: str | None = None,
    copy_output: bool = False,
) -> dict:
    """Merge this turn's output path and copy flag with the previous context."""
    previous = previous_context if isinstance(previous_context, dict) else {}
    context = dict(base)
    absolute = context_path or previous.get("absolute_path")
    relative = history_artifact_path or default_file_path or previous.get("relative_path")
    if absolute:
        context["absolute_path"] = absolute
    if relative:
        context["relative_path"] = relative
    if copy_output or previous.get("copy") is True:
        context["copy"] = True
    return context


def synchronize_file_history(options, entry, logger: fmt.Logger) -> None:
    """Restore the artifact path and copy flag from a continued entry.

    Only applies to entries recorded by the same mode, and never overrides
    an explicit ``--output`` or ``--copy``.
    """
    context = entry.context
    if not isinstance(context, dict) or context.get("cli") != getattr(options, "mode", None):
        return
    relative = context.get("relative_path")
    if not getattr(options, "output_explicit", False) and isinstance(relative, str) and relative:
        options.artifact_path = relative
        options.output = relative
        logger.debug(f"restored output path {relative} from history")
    if not getattr(options, "copy_explicit", False) and context.get("copy") is True:
        options.copy = True


def resolve_result_output(
    *, output_path: str | None, output_explicit: bool, artifact_path: str | None
) -> tuple[str | None, str | None]:
    """Return (text_output_path, artifact_reference_path).

    The text summary only gets its own file when ``--output`` was given
    explicitly and differs from the artifact.
    """
    if output_explicit and output_path and output_path != artifact_path:
        return output_path, output_path
    return None, artifact_path


# -- Pipeline ----------------------------------------------------------------


@dataclass
class HistoryEffect:
    """Everything upsert_conversation needs once a response id exists."""

    store: Any
    model: str
    effort: str
    verbosity: str
    context: Any
    user_text: str
    context_data: Any = None


@dataclass
class FinalizeOutcome:
    exit_code: int
    stdout: str
    file_path: str | None = None
    bytes_written: int = 0
    copied: bool = False


def finalize_result(
    *,
    content: str,
    cwd: str,
    response_id: str | None,
    output_path: str | None = None,
    actions: list | None = None,
    history: HistoryEffect | None = None,
    runtime: ToolRuntime | None = None,
    logger: fmt.Logger | None = None,
) -> FinalizeOutcome:
    """Deliver the output, run actions by ascending priority, commit history.

    Actions with equal priority keep their registration order. History is
    written only when a response id was obtained.
    """
    logger = logger or fmt.Logger()
    delivery = deliver_output(content=content, cwd=cwd, file_path=output_path)
    if delivery.file_path:
        logger.info(f"wrote {delivery.bytes_written} bytes to {delivery.file_path}")

    copied = False
    for action in sorted(actions or [], key=lambda a: a.priority):
        logger.info(f"[{action.flag}] running {action.kind} action")
        execute_finalize_action(
            action, content=content, cwd=cwd, runtime=runtime, logger=logger
        )
        if isinstance(action, ClipboardAction):
            copied = True

    if response_id and history is not None:
        history.store.upsert_conversation(
            model=history.model,
            effort=history.effort,
            verbosity=history.verbosity,
            context=history.context,
            response_id=response_id,
            user_text=history.user_text,
            assistant_text=content,
            context_data=history.context_data,
        )

    return FinalizeOutcome(
        exit_code=0,
        stdout=content,
        file_path=delivery.file_path,
        bytes_written=delivery.bytes_written,
        copied=copied,
    )
