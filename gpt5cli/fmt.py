"""ANSI-formatted terminal output using Rich.

Diagnostics go to stderr. History listings and final answers go to stdout.
"""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)
_out = Console(highlight=False)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(highlight=False, **kwargs)


class Logger:
    """Diagnostics sink handed to the core components.

    The store, context resolver, tool runtime and agent loop only ever
    talk to one of these, so tests can swap in a recording double.
    """

    def __init__(self, *, debug: bool = False):
        self.debug_enabled = debug

    def info(self, msg: str) -> None:
        info(msg)

    def warning(self, msg: str) -> None:
        warning(msg)

    def error(self, msg: str) -> None:
        error(msg)

    def debug(self, msg: str) -> None:
        if self.debug_enabled:
            debug(msg)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Request {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, status: str) -> None:
    style = "green" if status == "completed" else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  status={escape(str(status))}", style=style)
    _console.print(text)


def completion(requests: int, reached_cap: bool) -> None:
    if not reached_cap:
        _console.print(
            Text(f"  ✓ Conversation finished: {requests} requests", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Conversation stopped at the iteration cap: {requests} requests",
                style="bold yellow",
            )
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- History output (stdout) -------------------------------------------------


def history_line(line: str) -> None:
    _out.print(Text(line), soft_wrap=True)


def history_label(label: str) -> None:
    styles = {"user": "cyan", "assistant": "blue", "summary": "yellow"}
    _out.print(Text(f"{label}:", style=styles.get(label, "")))


def answer(text: str) -> None:
    _out.print(Text(text), soft_wrap=True)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def debug(msg: str) -> None:
    line = Text()
    line.append("  [debug] ", style="magenta")
    line.append(msg, style="dim")
    _console.print(line)


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
