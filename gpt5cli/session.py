"""Public library API for gpt5cli: Session class and Result dataclass."""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from . import fmt
from .agent import run_agent_loop
from .config import DEFAULTS, resolve_history_path
from .context import compute_context
from .errors import ConfigError, ValidationError
from .finalize import (
    ClipboardAction,
    CopySource,
    FinalizeOutcome,
    HistoryEffect,
    build_file_history_context,
    d2_html_actions,
    ensure_workspace_path,
    file_context_validator,
    finalize_result,
    generate_default_output_path,
    resolve_result_output,
    synchronize_file_history,
)
from .history import HistoryStore, cli_entry_filter, print_history_list
from .responses import (
    build_request,
    call_responses,
    input_message,
    load_image_data_url,
    perform_compact,
)
from .runtime import ExecutionContext, ToolRuntime, build_tool_list
from .sql import (
    build_sql_history_context,
    resolve_dsn,
    snapshot_dsn,
    sql_context_validator,
    sql_instructions,
)
from .tools import MODE_EXTRA_TOOLS, MODE_TOOLS

MODES = ("ask", "d2", "mermaid", "sql")

# Modes whose main product is a file in the workspace, with its extension
ARTIFACT_EXTENSIONS = {"d2": "d2", "mermaid": "mmd", "sql": "sql"}

CONTEXT_VALIDATORS = {
    "d2": file_context_validator,
    "mermaid": file_context_validator,
    "sql": sql_context_validator,
}


@dataclass
class RunOptions:
    """Per-request options. compute_context may backfill model/effort/verbosity."""

    mode: str = "ask"
    model: str = DEFAULTS["model"]
    effort: str = DEFAULTS["effort"]
    verbosity: str = DEFAULTS["verbosity"]
    iterations: int = DEFAULTS["max_iterations"]
    continue_conversation: bool = False
    resume_index: int | None = None
    has_explicit_history: bool = False
    model_explicit: bool = False
    effort_explicit: bool = False
    verbosity_explicit: bool = False
    output: str | None = None
    output_explicit: bool = False
    copy: bool = False
    copy_explicit: bool = False
    image: str | None = None
    open_html: bool = False
    artifact_path: str | None = None
    dsn: str | None = None


@dataclass
class Result:
    """Result of a session run."""

    answer: str
    response_id: str | None
    reached_max_iterations: bool
    output: FinalizeOutcome | None


def _artifact_instructions(mode: str, relative_path: str, exists: bool) -> str:
    if mode == "d2":
        tools = [
            "- read_file: read the current diagram",
            "- write_file: overwrite the diagram with UTF-8 text",
            "- d2_check: validate the D2 syntax",
            "- d2_fmt: format the D2 file",
            "- web_search: search the official docs under d2lang.com only",
        ]
        check = "d2_check, then d2_fmt"
        kind = "D2"
    else:
        tools = [
            "- read_file: read the current diagram",
            "- write_file: overwrite the diagram with UTF-8 text",
            "- mermaid_check: validate the Mermaid syntax with mermaid-cli",
        ]
        check = "mermaid_check"
        kind = "Mermaid"
    first_step = (
        "Read the existing file with read_file before deciding what to change."
        if exists
        else "The file does not exist yet; create it with write_file."
    )
    return "\n\n".join(
        [
            f"You create and update {kind} diagrams.",
            "Only touch files inside the local workspace and only use the tools listed.",
            f"Target file: {relative_path}",
            "\n".join(tools),
            "\n".join(
                [
                    "Workflow:",
                    f"1. {first_step}",
                    f"2. After every change run {check} and fix any error it reports.",
                    "3. Repeat until the checks pass.",
                    "4. In the final answer, summarize the change, the file path and the "
                    "check results. Do not paste the full diagram source.",
                ]
            ),
        ]
    )


class Session:
    """Programmatic interface to one CLI mode.

    Holds configuration as plain attributes. ``run()`` performs a full
    request: context resolution, the tool loop, output delivery and the
    history update.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        mode: str = "ask",
        model: str = DEFAULTS["model"],
        model_mini: str = DEFAULTS["model_mini"],
        model_nano: str = DEFAULTS["model_nano"],
        effort: str = DEFAULTS["effort"],
        verbosity: str = DEFAULTS["verbosity"],
        max_iterations: int = DEFAULTS["max_iterations"],
        history_file: str = DEFAULTS["history_file"],
        output_dir: str | None = None,
        prompts_dir: str | None = None,
        web_search_preview: bool = True,
        api_key: str | None = None,
        base_url: str | None = None,
        on_cap_reached: str = "partial",
        debug: bool = False,
        verbose: bool = False,
        call: Callable[[dict], dict] | None = None,
    ):
        if mode not in MODES:
            raise ConfigError(f"unknown mode {mode!r}")
        self.base_dir = base_dir
        self.mode = mode
        self.model = model
        self.model_mini = model_mini
        self.model_nano = model_nano
        self.effort = effort
        self.verbosity = verbosity
        self.max_iterations = max_iterations
        self.history_file = history_file
        self.output_dir = output_dir
        self.prompts_dir = prompts_dir
        self.web_search_preview = web_search_preview
        self.api_key = api_key
        self.base_url = base_url
        self.on_cap_reached = on_cap_reached
        self.debug = debug
        self.verbose = verbose
        self._call = call

        self.logger = fmt.Logger(debug=debug)

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._store: HistoryStore | None = None
        self._runtime: ToolRuntime | None = None
        self._tools: list[dict] = []

    # -- Setup ---------------------------------------------------------------

    def _setup(self) -> None:
        """One-time setup: history store, tool runtime, request tool list."""
        if self._setup_done:
            return
        self._store = HistoryStore(
            resolve_history_path({"history_file": self.history_file}),
            context_validator=CONTEXT_VALIDATORS.get(self.mode),
            entry_filter=cli_entry_filter(self.mode),
            logger=self.logger,
        )
        self._runtime = ToolRuntime(MODE_TOOLS[self.mode], logger=self.logger)
        self._tools = build_tool_list(
            self._runtime,
            web_search_preview=self.web_search_preview,
            extra_tools=MODE_EXTRA_TOOLS.get(self.mode),
        )
        self._setup_done = True

    @property
    def store(self) -> HistoryStore:
        self._setup()
        return self._store

    @property
    def runtime(self) -> ToolRuntime:
        self._setup()
        return self._runtime

    @property
    def tools(self) -> list[dict]:
        self._setup()
        return self._tools

    def call(self, request: dict) -> dict:
        if self._call is not None:
            return self._call(request)
        return call_responses(request, api_key=self.api_key, base_url=self.base_url)

    def system_prompt(self) -> str | None:
        """Contents of ``<prompts_dir>/<mode>.md``, if present."""
        prompts_dir = Path(self.prompts_dir or Path(self.base_dir) / "prompts")
        path = prompts_dir / f"{self.mode}.md"
        if not path.is_file():
            return None
        text = path.read_text(encoding="utf-8").strip()
        return text or None

    def resolve_model(self, value: str) -> str:
        """Map the ``0``/``1``/``2`` shorthands to the nano, mini and main models."""
        return {"0": self.model_nano, "1": self.model_mini, "2": self.model}.get(value, value)

    def default_options(self, **overrides) -> RunOptions:
        options = RunOptions(
            mode=self.mode,
            model=self.model,
            effort=self.effort,
            verbosity=self.verbosity,
            iterations=self.max_iterations,
        )
        for key, value in overrides.items():
            setattr(options, key, value)
        return options

    # -- History commands ----------------------------------------------------

    def list_history(self) -> None:
        print_history_list(self.store)

    def show_history(self, index: int) -> None:
        self.store.show_by_number(index)

    def delete_history(self, index: int) -> tuple[str, str]:
        return self.store.delete_by_number(index)

    def compact(self, index: int) -> str:
        return perform_compact(
            self.store, index, model=self.model_mini, call=self.call, logger=self.logger
        )

    # -- Requests ------------------------------------------------------------

    def _prepare_artifact(self, options) -> tuple[str, Path]:
        raw = options.artifact_path or options.output
        if not raw:
            raw, _ = generate_default_output_path(
                self.mode,
                ARTIFACT_EXTENSIONS[self.mode],
                cwd=self.base_dir,
                output_dir=self.output_dir,
            )
        absolute = ensure_workspace_path(raw, self.base_dir)
        if absolute.is_dir():
            raise ValidationError(f"artifact path is a directory: {raw}")
        relative = str(absolute.relative_to(Path(self.base_dir).resolve()))
        options.artifact_path = relative
        # "./a.d2" and the absolute path of a.d2 name the artifact itself
        if options.output and ensure_workspace_path(options.output, self.base_dir) == absolute:
            options.output = relative
        return relative, absolute

    def run(self, question: str, options: RunOptions | None = None) -> Result:
        """Send one request and finalize its result."""
        if options is None:
            options = self.default_options()
        if not question or not question.strip():
            raise ValidationError("prompt is empty")
        options.model = self.resolve_model(options.model)

        store = self.store
        active_entry = None
        previous_id = None
        previous_title = None
        if options.resume_index is not None:
            active_entry = store.select_by_number(options.resume_index)
            previous_id = active_entry.last_response_id
            previous_title = active_entry.title
            options.continue_conversation = True
            options.has_explicit_history = True

        artifact_mode = self.mode in ARTIFACT_EXTENSIONS
        if artifact_mode and options.output and not options.artifact_path:
            options.artifact_path = options.output

        ctx = compute_context(
            options,
            store,
            question,
            active_entry=active_entry,
            previous_response_id=previous_id,
            previous_title=previous_title,
            synchronize_with_history=synchronize_file_history if artifact_mode else None,
            logger=self.logger,
        )

        snapshot = None
        if self.mode == "sql":
            snapshot = snapshot_dsn(resolve_dsn(options.dsn, ctx.active_entry))
            options.dsn = snapshot.dsn

        extra_messages = []
        artifact_relative = artifact_absolute = None
        if artifact_mode:
            artifact_relative, artifact_absolute = self._prepare_artifact(options)
            if snapshot is not None:
                instructions = sql_instructions(
                    snapshot, artifact_relative, options.iterations, artifact_absolute.exists()
                )
            else:
                instructions = _artifact_instructions(
                    self.mode, artifact_relative, artifact_absolute.exists()
                )
            extra_messages.append(input_message("system", instructions))

        image_url = load_image_data_url(options.image) if options.image else None
        request = build_request(
            model=options.model,
            effort=options.effort,
            verbosity=options.verbosity,
            tools=self.tools,
            input_text=question,
            context=ctx,
            continuing=options.continue_conversation,
            system_prompt=self.system_prompt(),
            extra_system_messages=extra_messages,
            image_data_url=image_url,
            logger=self.logger,
        )
        if self.verbose:
            fmt.model_info(
                f"model={options.model} effort={options.effort} verbosity={options.verbosity}"
            )

        result = run_agent_loop(
            request,
            self.runtime,
            ExecutionContext(cwd=str(Path(self.base_dir).resolve()), log=self.logger),
            max_iterations=options.iterations,
            on_cap_reached=self.on_cap_reached,
            call=self.call,
            logger=self.logger,
            verbose=self.verbose,
        )

        actions = []
        if artifact_mode:
            text_output, _ = resolve_result_output(
                output_path=options.output,
                output_explicit=options.output_explicit,
                artifact_path=artifact_relative,
            )
            if options.copy:
                actions.append(
                    ClipboardAction(CopySource("file", artifact_relative), cwd=self.base_dir)
                )
            if self.mode == "d2" and options.open_html:
                html = str(Path(artifact_relative).with_suffix(".html"))
                actions.extend(d2_html_actions(artifact_relative, html, self.base_dir))
            if snapshot is not None:
                context_data = build_sql_history_context(
                    snapshot,
                    previous_context=ctx.previous_context,
                    context_path=str(artifact_absolute),
                    history_artifact_path=artifact_relative,
                    copy_output=options.copy,
                )
            else:
                context_data = build_file_history_context(
                    base={"cli": self.mode},
                    previous_context=ctx.previous_context,
                    context_path=str(artifact_absolute),
                    history_artifact_path=artifact_relative,
                    copy_output=options.copy,
                )
        else:
            text_output = options.output
            if options.copy:
                source = (
                    CopySource("file", options.output)
                    if options.output
                    else CopySource("content")
                )
                actions.append(ClipboardAction(source, cwd=self.base_dir))
            context_data = build_file_history_context(
                base={"cli": self.mode},
                previous_context=ctx.previous_context,
                default_file_path=options.output,
                copy_output=options.copy,
            )

        outcome = finalize_result(
            content=result.assistant_text,
            cwd=self.base_dir,
            response_id=result.response_id,
            output_path=text_output,
            actions=actions,
            history=HistoryEffect(
                store=store,
                model=options.model,
                effort=options.effort,
                verbosity=options.verbosity,
                context=ctx,
                user_text=question,
                context_data=context_data,
            ),
            runtime=self.runtime,
            logger=self.logger,
        )
        return Result(
            answer=result.assistant_text,
            response_id=result.response_id,
            reached_max_iterations=result.reached_max_iterations,
            output=outcome,
        )
