"""Command-line entry points: gpt5-cli, gpt5-cli-d2, gpt5-cli-mermaid, gpt5-cli-sql."""

import argparse
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _UNSET,
    LEVELS,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    load_config,
)
from .errors import AgentError, ValidationError
from .session import RunOptions, Session

# Marker for a bare -r (list instead of resume)
_LIST_HISTORY = object()

_DESCRIPTIONS = {
    "ask": "Ask GPT-5 through the Responses API, with conversation history.",
    "d2": "Create or update a D2 diagram with GPT-5 and check it with the d2 CLI.",
    "mermaid": "Create or update a Mermaid diagram with GPT-5 and check it with mermaid-cli.",
    "sql": "Write or refine a SELECT query with GPT-5 and format it with sqruff.",
}


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected a positive integer, got {value!r}"
        ) from None
    if n < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return n


def build_parser(mode: str = "ask"):
    """Build and return the argument parser for one mode."""
    prog = "gpt5-cli" if mode == "ask" else f"gpt5-cli-{mode}"
    parser = argparse.ArgumentParser(
        prog=prog,
        usage="%(prog)s [options] <question>",
        description=_DESCRIPTIONS[mode],
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="*", help="The question or task for the model."
    )
    parser.add_argument(
        "-m",
        "--model",
        default=_UNSET,
        help=(
            "Model identifier, or 0/1/2 for the nano/mini/main model "
            "(default: gpt-5, or OPENAI_MODEL_MAIN)."
        ),
    )
    parser.add_argument(
        "-e",
        "--effort",
        choices=LEVELS,
        default=_UNSET,
        help="Reasoning effort (default: low).",
    )
    parser.add_argument(
        "-v",
        "--verbosity",
        choices=LEVELS,
        default=_UNSET,
        help="Answer verbosity (default: low).",
    )
    parser.add_argument(
        "-I",
        "--iterations",
        type=_positive_int,
        default=_UNSET,
        help="Maximum tool-call iterations (default: 10).",
    )
    parser.add_argument(
        "-c",
        "--continue-conversation",
        action="store_true",
        help="Continue the most recent conversation.",
    )
    parser.add_argument(
        "-r",
        "--resume",
        type=_positive_int,
        nargs="?",
        const=_LIST_HISTORY,
        default=None,
        metavar="N",
        help="Continue history entry N. Without N, list the history.",
    )
    parser.add_argument(
        "-s",
        "--show",
        type=_positive_int,
        default=None,
        metavar="N",
        help="Print the turns of history entry N.",
    )
    parser.add_argument(
        "-d",
        "--delete",
        type=_positive_int,
        default=None,
        metavar="N",
        help="Delete history entry N.",
    )
    parser.add_argument(
        "--compact",
        type=_positive_int,
        default=None,
        metavar="N",
        help="Replace the turns of history entry N with a summary.",
    )
    parser.add_argument(
        "-i",
        "--image",
        default=None,
        help="Attach an image file (must be under your home directory).",
    )
    parser.add_argument(
        "-o",
        "--output",
        default=_UNSET,
        help=(
            "Write the answer to this workspace file."
            if mode == "ask"
            else "File to create or update (default: generated under output/)."
        ),
    )
    parser.add_argument(
        "--copy",
        action="store_true",
        default=_UNSET,
        help="Copy the result to the clipboard.",
    )
    if mode == "d2":
        parser.add_argument(
            "--open-html",
            action="store_true",
            help="Render the diagram to HTML with d2 and open it.",
        )
    if mode == "sql":
        parser.add_argument(
            "-P",
            "--dsn",
            default=None,
            help="Database connection string (postgres:// or mysql://). Stored in history.",
        )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print debug diagnostics to stderr.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress per-request diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Workspace root for file tools and outputs (default: current directory).",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )
    return parser


def main(argv=None, mode: str = "ask"):
    parser = build_parser(mode)
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("gpt5-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)

    args.verbose = not args.quiet

    try:
        config = load_config(Path(args.base_dir), None)
        apply_config_to_args(args, config)
        fmt.init(color=args.color, no_color=args.no_color)
        _run_main(args, config, parser, mode)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def main_d2(argv=None):
    main(argv, mode="d2")


def main_mermaid(argv=None):
    main(argv, mode="mermaid")


def main_sql(argv=None):
    main(argv, mode="sql")


def _run_main(args, config, parser, mode):
    question = " ".join(args.question).strip()
    list_history = args.resume is _LIST_HISTORY
    resume_index = None if list_history else args.resume

    if args.compact is not None:
        others = [
            question,
            args.continue_conversation,
            args.resume is not None,
            args.show is not None,
            args.delete is not None,
        ]
        if any(others):
            raise ValidationError(
                "--compact cannot be combined with other history options or input"
            )

    session = Session(
        base_dir=args.base_dir,
        mode=mode,
        debug=args.debug,
        verbose=args.verbose,
        **config_to_session_kwargs(config),
    )

    if args.compact is not None:
        fmt.answer(session.compact(args.compact))
        return
    if list_history:
        session.list_history()
        return
    if args.show is not None:
        session.show_history(args.show)
        return
    if args.delete is not None:
        title, _ = session.delete_history(args.delete)
        fmt.history_line(f"deleted: {args.delete}) {title}")
        return

    if not question:
        parser.print_help(sys.stderr)
        sys.exit(1)

    options = RunOptions(
        mode=mode,
        model=args.model,
        effort=args.effort,
        verbosity=args.verbosity,
        iterations=args.iterations,
        continue_conversation=args.continue_conversation,
        resume_index=resume_index,
        model_explicit=args.model_explicit,
        effort_explicit=args.effort_explicit,
        verbosity_explicit=args.verbosity_explicit,
        output=args.output,
        output_explicit=args.output_explicit,
        copy=args.copy,
        copy_explicit=args.copy_explicit,
        image=args.image,
        open_html=getattr(args, "open_html", False),
        dsn=getattr(args, "dsn", None),
    )
    result = session.run(question, options)
    fmt.answer(result.answer)
