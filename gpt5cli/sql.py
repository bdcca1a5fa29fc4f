"""SQL mode: DSN handling, history context and model instructions.

The DSN is stored in the history context so a continued conversation can
reconnect without ``--dsn``. The instructions sent to the model carry
only its hash and the non-secret connection fields.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigError

# DSN scheme -> engine
ENGINES = {
    "postgres": "postgresql",
    "postgresql": "postgresql",
    "pgsql": "postgresql",
    "mysql": "mysql",
    "mariadb": "mysql",
}

ENGINE_LABELS = {"postgresql": "PostgreSQL", "mysql": "MySQL"}


@dataclass
class DsnSnapshot:
    """A validated DSN with its hash, engine and connection metadata."""

    dsn: str
    hash: str
    engine: str
    connection: dict = field(default_factory=dict)


def hash_dsn(dsn: str) -> str:
    return "sha256:" + hashlib.sha256(dsn.encode("utf-8")).hexdigest()


def infer_engine(dsn: str) -> str:
    scheme = urlsplit(dsn).scheme.lower()
    engine = ENGINES.get(scheme)
    if engine is None:
        raise ConfigError(
            f"unsupported --dsn scheme {scheme or '(none)'!r} (postgresql or mysql only)"
        )
    return engine


def connection_metadata(dsn: str) -> dict:
    """host, port, database and user from the DSN. Blank parts are omitted."""
    try:
        parts = urlsplit(dsn)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"failed to parse --dsn: {e}") from e
    metadata = {
        "host": parts.hostname,
        "port": port,
        "database": parts.path.lstrip("/"),
        "user": parts.username,
    }
    return {k: v for k, v in metadata.items() if v not in (None, "")}


def snapshot_dsn(raw: str | None) -> DsnSnapshot:
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError("--dsn is required")
    dsn = raw.strip()
    return DsnSnapshot(
        dsn=dsn,
        hash=hash_dsn(dsn),
        engine=infer_engine(dsn),
        connection=connection_metadata(dsn),
    )


def resolve_dsn(provided: str | None, *entries) -> str:
    """Return the explicit ``--dsn``, else the first DSN stored on a history entry."""
    if isinstance(provided, str) and provided.strip():
        return provided.strip()
    for entry in entries:
        context = getattr(entry, "context", None)
        if not isinstance(context, dict):
            continue
        stored = context.get("dsn")
        if isinstance(stored, str) and stored.strip():
            return stored.strip()
    raise ConfigError("--dsn is required (no DSN is stored in the history entry)")


# -- History context ---------------------------------------------------------


class SqlConnection(BaseModel):
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None


class SqlHistoryContext(BaseModel):
    """Context stored by the sql mode."""

    model_config = ConfigDict(populate_by_name=True)

    cli: Literal["sql"]
    engine: Literal["postgresql", "mysql"]
    dsn_hash: str = Field(min_length=1)
    dsn: str | None = None
    connection: SqlConnection | None = None
    relative_path: str | None = None
    absolute_path: str | None = None
    copy_: bool | None = Field(None, alias="copy")


def sql_context_validator(value: Any) -> Any:
    """Check ``cli: "sql"`` contexts against SqlHistoryContext.

    Contexts written by other modes share the index and pass through.
    """
    if not isinstance(value, dict):
        raise TypeError(f"history context must be an object, got {type(value).__name__}")
    if value.get("cli") == "sql":
        SqlHistoryContext.model_validate(value)
    return value


def build_sql_history_context(
    snapshot: DsnSnapshot,
    *,
    previous_context: Any = None,
    context_path: str | None = None,
    history_artifact_path: str | None = None,
    copy_output: bool = False,
) -> dict:
    """Merge this run's DSN, artifact path and copy flag with the previous sql context."""
    previous = previous_context if isinstance(previous_context, dict) else {}
    if previous.get("cli") != "sql":
        previous = {}
    context = {"cli": "sql", "engine": snapshot.engine, "dsn_hash": snapshot.hash}
    dsn = snapshot.dsn or previous.get("dsn")
    if dsn:
        context["dsn"] = dsn
    if snapshot.connection:
        context["connection"] = dict(snapshot.connection)
    elif previous.get("connection"):
        context["connection"] = previous["connection"]
    relative = history_artifact_path or previous.get("relative_path")
    if relative:
        context["relative_path"] = relative
    absolute = context_path or previous.get("absolute_path")
    if absolute:
        context["absolute_path"] = absolute
    if copy_output or previous.get("copy") is True:
        context["copy"] = True
    return context


# -- Instructions ------------------------------------------------------------


def sql_instructions(
    snapshot: DsnSnapshot, relative_path: str, max_iterations: int, exists: bool
) -> str:
    connection = ", ".join(f"{k}={v}" for k, v in snapshot.connection.items())
    first_step = (
        "Read the existing file with read_file before deciding what to change."
        if exists
        else "The file does not exist yet; it is created when you save the query."
    )
    return "\n\n".join(
        [
            f"You write {ENGINE_LABELS[snapshot.engine]} SELECT queries.",
            "Only touch files inside the local workspace and only use the tools listed.",
            f"Target file: {relative_path} (relative to the workspace)",
            f"Connection: {connection or '(no connection details)'} "
            f"(dsn hash={snapshot.hash})",
            f"Tool iteration budget: {max_iterations}",
            "\n".join(
                [
                    "- read_file: read the current query file",
                    "- write_file: save the formatted query",
                    "- sql_format: format one statement with sqruff and return the result",
                ]
            ),
            "\n".join(
                [
                    "Workflow:",
                    f"1. {first_step}",
                    "2. Only produce SELECT or WITH ... SELECT statements, one per file.",
                    "3. Run sql_format on every draft and keep its output.",
                    "4. Save the formatted query with write_file.",
                    "5. In the final answer, show the query in a ```sql block and "
                    "summarize what changed and what to double-check.",
                ]
            ),
        ]
    )
