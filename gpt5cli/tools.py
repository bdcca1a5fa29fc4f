"""Built-in tools: workspace file access, diagram linters and the SQL formatter.

Handlers raise on failure; ToolRuntime turns the exception into a failed
result for the model.
"""

import re
import subprocess
import sys
import tempfile
from pathlib import Path

from .errors import ToolExecutionError, WorkspaceViolationError
from .runtime import ExecutionContext, ToolRegistration

MAX_TIMEOUT = 120
MAX_READ_BYTES = 1024 * 1024  # 1 MB

D2_DOCS_DOMAIN = "d2lang.com"

MERMAID_BIN = "mmdc.cmd" if sys.platform == "win32" else "mmdc"
SQRUFF_BIN = "sqruff"

# Whitespace and comments between statements
_SQL_TRIVIA = re.compile(r"(?:\s+|--[^\n]*(?:\n|\Z)|/\*.*?\*/)*", re.S)
_DOLLAR_TAG = re.compile(r"\$[A-Za-z0-9_]*\$")


def resolve_workspace_path(raw_path: str, cwd: str) -> Path:
    """Resolve a path, ensuring it stays within the workspace root.

    Resolves symlinks for both the root and the target, so ``..`` segments
    and absolute paths that leave the root are rejected before any I/O.

    Raises:
        ToolExecutionError: If the path is empty.
        WorkspaceViolationError: If the resolved path escapes the root.
    """
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise ToolExecutionError("path must be a non-empty string")
    root = Path(cwd).resolve()
    candidate = Path(raw_path).expanduser()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise WorkspaceViolationError(
            f"Access to path outside workspace is not allowed: {raw_path}"
        )
    return resolved


def _relative(path: Path, cwd: str) -> str:
    return str(path.relative_to(Path(cwd).resolve())) or "."


def run_command(command: str, args: list[str], cwd: str, timeout: int = MAX_TIMEOUT) -> dict:
    """Run an external binary and report its exit code and output verbatim.

    A command that cannot be started yields ``exit_code`` -1.
    """
    result = {"command": command, "args": list(args)}
    try:
        proc = subprocess.Popen(
            [command, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            cwd=cwd,
            text=True,
        )
    except OSError as e:
        return {
            "success": False,
            **result,
            "exit_code": -1,
            "stdout": "",
            "stderr": "",
            "message": f"failed to start {command}: {e}",
        }
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        stdout, stderr = proc.communicate()
        return {
            "success": False,
            **result,
            "exit_code": -1,
            "stdout": stdout,
            "stderr": stderr,
            "message": f"{command} timed out after {timeout}s",
        }
    return {
        "success": proc.returncode == 0,
        **result,
        "exit_code": proc.returncode,
        "stdout": stdout,
        "stderr": stderr,
    }


# -- Handlers ----------------------------------------------------------------


def read_file(args: dict, context: ExecutionContext) -> dict:
    """Read a UTF-8 text file inside the workspace."""
    resolved = resolve_workspace_path(args.get("path"), context.cwd)
    if not resolved.exists():
        raise ToolExecutionError(f"path does not exist: {args['path']}")
    if resolved.is_dir():
        raise ToolExecutionError(f"path is a directory: {args['path']}")
    if resolved.stat().st_size > MAX_READ_BYTES:
        raise ToolExecutionError(f"file is larger than {MAX_READ_BYTES} bytes: {args['path']}")
    try:
        content = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ToolExecutionError(f"failed to decode {args['path']} as UTF-8: {e}") from e
    context.log.debug(f"read_file {resolved}")
    return {
        "success": True,
        "path": _relative(resolved, context.cwd),
        "content": content,
        "encoding": "utf8",
    }


def write_file(args: dict, context: ExecutionContext) -> dict:
    """Create or overwrite a UTF-8 text file inside the workspace."""
    resolved = resolve_workspace_path(args.get("path"), context.cwd)
    content = args.get("content")
    if not isinstance(content, str):
        raise ToolExecutionError("content must be a string")
    if resolved.is_dir():
        raise ToolExecutionError(f"path is a directory: {args['path']}")
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    context.log.debug(f"write_file {resolved} ({len(data)} bytes)")
    return {
        "success": True,
        "path": _relative(resolved, context.cwd),
        "bytes_written": len(data),
    }


def d2_check(args: dict, context: ExecutionContext) -> dict:
    resolved = resolve_workspace_path(args.get("file_path"), context.cwd)
    return run_command("d2", [str(resolved)], context.cwd)


def d2_fmt(args: dict, context: ExecutionContext) -> dict:
    resolved = resolve_workspace_path(args.get("file_path"), context.cwd)
    return run_command("d2", ["fmt", str(resolved)], context.cwd)


def mermaid_check(args: dict, context: ExecutionContext) -> dict:
    """Render the diagram to a throwaway SVG; mmdc fails on syntax errors."""
    resolved = resolve_workspace_path(args.get("file_path"), context.cwd)
    with tempfile.TemporaryDirectory(prefix="gpt5cli-mermaid-") as tmp:
        output_path = str(Path(tmp) / "out.svg")
        return run_command(
            MERMAID_BIN, ["-i", str(resolved), "-o", output_path, "--quiet"], context.cwd
        )


def _skip_quoted(sql: str, i: int, quote: str, backslash: bool = False) -> int:
    """Index just past the quoted run starting at ``sql[i]``; doubled quotes escape."""
    i += 1
    while i < len(sql):
        ch = sql[i]
        if backslash and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if sql[i + 1 : i + 2] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return i


def has_multiple_statements(sql: str) -> bool:
    """True if a ``;`` outside strings, identifiers and comments is followed by more SQL.

    A single trailing ``;`` (optionally followed by comments) is allowed.
    Handles PostgreSQL ``E'...'`` escapes and ``$tag$`` quoting.
    """
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        pair = sql[i : i + 2]
        if pair == "--":
            end = sql.find("\n", i)
            i = n if end == -1 else end + 1
        elif pair == "/*":
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
        elif ch == "'":
            i = _skip_quoted(sql, i, "'", backslash=i > 0 and sql[i - 1] in "Ee")
        elif ch == '"':
            i = _skip_quoted(sql, i, '"')
        elif ch == "$" and _DOLLAR_TAG.match(sql, i):
            tag = _DOLLAR_TAG.match(sql, i).group()
            end = sql.find(tag, i + len(tag))
            i = n if end == -1 else end + len(tag)
        elif ch == ";":
            return _SQL_TRIVIA.match(sql, i + 1).end() < n
        else:
            i += 1
    return False


def sql_format(args: dict, context: ExecutionContext) -> dict:
    """Format one statement with ``sqruff fix`` on a temporary copy."""
    query = args.get("query")
    if not isinstance(query, str) or not query.strip():
        raise ToolExecutionError("query must be a non-empty string")
    query = query.strip()
    if has_multiple_statements(query):
        raise ToolExecutionError("sql_format accepts a single SELECT statement only")
    with tempfile.TemporaryDirectory(prefix="gpt5cli-sql-fmt-") as tmp:
        input_path = Path(tmp) / "input.sql"
        input_path.write_text(query, encoding="utf-8")
        result = run_command(SQRUFF_BIN, ["fix", str(input_path)], context.cwd)
        if not result["success"]:
            raise ToolExecutionError(
                result["stderr"].strip()
                or result["stdout"].strip()
                or result.get("message")
                or f"sqruff failed with exit code {result['exit_code']}"
            )
        formatted = input_path.read_text(encoding="utf-8")
    context.log.debug(f"sql_format: {len(query)} -> {len(formatted)} chars")
    return {"success": True, "formatted_sql": formatted}


# -- Registrations -----------------------------------------------------------


def _path_param(name: str, description: str) -> dict:
    return {
        "type": "object",
        "properties": {name: {"type": "string", "description": description}},
        "required": [name],
        "additionalProperties": False,
    }


READ_FILE_TOOL = ToolRegistration(
    definition={
        "type": "function",
        "strict": True,
        "name": "read_file",
        "description": "Read a UTF-8 text file from the workspace and return its content.",
        "parameters": _path_param("path", "Path relative to the workspace root."),
    },
    handler=read_file,
)

WRITE_FILE_TOOL = ToolRegistration(
    definition={
        "type": "function",
        "strict": True,
        "name": "write_file",
        "description": (
            "Create or overwrite a UTF-8 text file in the workspace. "
            "Parent directories are created as needed."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path relative to the workspace root.",
                },
                "content": {
                    "type": "string",
                    "description": "Full file content to write.",
                },
            },
            "required": ["path", "content"],
            "additionalProperties": False,
        },
    },
    handler=write_file,
)

D2_CHECK_TOOL = ToolRegistration(
    definition={
        "type": "function",
        "strict": True,
        "name": "d2_check",
        "description": "Run `d2` to validate a diagram file without modifying it.",
        "parameters": _path_param(
            "file_path", "Path to the D2 file relative to the workspace root."
        ),
    },
    handler=d2_check,
)

D2_FMT_TOOL = ToolRegistration(
    definition={
        "type": "function",
        "strict": True,
        "name": "d2_fmt",
        "description": "Run `d2 fmt` to format a diagram file in place.",
        "parameters": _path_param(
            "file_path", "Path to the D2 file relative to the workspace root."
        ),
    },
    handler=d2_fmt,
)

MERMAID_CHECK_TOOL = ToolRegistration(
    definition={
        "type": "function",
        "strict": True,
        "name": "mermaid_check",
        "description": (
            "Run mermaid-cli to validate a Mermaid diagram file. "
            "When using Markdown, wrap the diagram in a ```mermaid``` block."
        ),
        "parameters": _path_param(
            "file_path", "Path to the Mermaid file relative to the workspace root."
        ),
    },
    handler=mermaid_check,
)

SQL_FORMAT_TOOL = ToolRegistration(
    definition={
        "type": "function",
        "strict": True,
        "name": "sql_format",
        "description": "Format SQL using sqruff in fix mode and return the formatted text.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "SQL text to format."},
            },
            "required": ["query"],
            "additionalProperties": False,
        },
    },
    handler=sql_format,
)

WEB_SEARCH_TOOL = {
    "type": "web_search",
    "search_context_size": "medium",
}

D2_WEB_SEARCH_TOOL = {
    **WEB_SEARCH_TOOL,
    "filters": {"allowed_domains": [D2_DOCS_DOMAIN]},
}

FILE_TOOLS = [READ_FILE_TOOL, WRITE_FILE_TOOL]

MODE_TOOLS: dict[str, list[ToolRegistration]] = {
    "ask": FILE_TOOLS,
    "d2": [*FILE_TOOLS, D2_CHECK_TOOL, D2_FMT_TOOL],
    "mermaid": [*FILE_TOOLS, MERMAID_CHECK_TOOL],
    "sql": [*FILE_TOOLS, SQL_FORMAT_TOOL],
}

# Hosted tools appended after the function tools, per mode. A web_search
# entry replaces the generic web_search_preview placeholder.
MODE_EXTRA_TOOLS: dict[str, list[dict]] = {
    "ask": [WEB_SEARCH_TOOL],
    "d2": [D2_WEB_SEARCH_TOOL],
}
