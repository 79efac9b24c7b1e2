from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from replaytrace.decoder import DecodeFailure, decode_snapshot
from replaytrace.storage import CentralStore

app = typer.Typer(help="ReplayTrace CLI")
console = Console()

_DEFAULT_DB = Path(".replaytrace") / "replaytrace.db"


def _store(db: Path) -> CentralStore:
    store = CentralStore(db)
    store.ensure_storage()
    return store


def _read_payload(path: Path) -> Any:
    raw = path.read_bytes()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw


@app.command()
def init(
    db: Annotated[Path, typer.Option("--db", help="SQLite database path")] = _DEFAULT_DB,
) -> None:
    """Initialize the collection database."""
    store = _store(db)
    console.print(f"Initialized ReplayTrace at {store.db_path}")


@app.command("decode")
def decode(
    payload: Annotated[Path, typer.Argument(help="File holding a raw snapshot payload")],
    as_json: Annotated[bool, typer.Option("--json", help="Print decoded events as JSON")] = False,
) -> None:
    """Decode a snapshot payload file and summarize the events it holds."""
    if not payload.exists():
        raise typer.BadParameter(f"no such file: {payload}")

    result = decode_snapshot(_read_payload(payload))
    if isinstance(result, DecodeFailure):
        table = Table(title="Decode Failure")
        table.add_column("field")
        table.add_column("value")
        table.add_row("reason", result.reason)
        table.add_row("byte_length", str(result.byte_length))
        table.add_row("head_hex", result.head_hex)
        table.add_row("preview", escape(result.preview))
        console.print(table)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(result))
        return

    counts: dict[str, int] = {}
    for event in result:
        key = str(event["type"])
        counts[key] = counts.get(key, 0) + 1
    table = Table(title=f"Decoded {len(result)} events")
    table.add_column("type")
    table.add_column("count")
    for key in sorted(counts, key=lambda k: float(k)):
        table.add_row(key, str(counts[key]))
    console.print(table)


@app.command("sessions")
def sessions(
    db: Annotated[Path, typer.Option("--db", help="SQLite database path")] = _DEFAULT_DB,
    limit: Annotated[int | None, typer.Option("--limit", "-n", help="Limit number of rows")] = None,
) -> None:
    """List ingested sessions."""
    store = _store(db)
    table = Table(title="Sessions")
    for column in ["session_id", "sdk_key", "start_time", "last_activity_time", "event_count"]:
        table.add_column(column)
    for row in store.list_sessions(limit=limit):
        table.add_row(
            row.session_id,
            row.sdk_key,
            f"{row.start_time:.3f}",
            f"{row.last_activity_time:.3f}",
            str(row.event_count),
        )
    console.print(table)


@app.command("replay")
def replay(
    session_id: Annotated[str, typer.Argument(help="Recorder session id (sess_...)")],
    sdk_key: Annotated[str, typer.Option("--sdk-key", "-k", help="SDK key the session was captured with")],
    out: Annotated[Path, typer.Option("--out", "-o", help="Output JSON file")],
    db: Annotated[Path, typer.Option("--db", help="SQLite database path")] = _DEFAULT_DB,
) -> None:
    """Write the decoded, ordered replay event stream of a session."""
    store = _store(db)
    session = store.get_session(sdk_key, session_id)
    if session is None:
        console.print(f"Session {session_id} not found")
        raise typer.Exit(code=1)

    events, failures = store.replay_events(session)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(events), encoding="utf-8")
    console.print(f"Wrote {len(events)} events to {out}")
    if failures:
        console.print(f"{len(failures)} stored batches could not be decoded")


@app.command("export")
def export(
    out: Annotated[Path, typer.Option("--out", "-o", help="Output file path")],
    fmt: Annotated[str, typer.Option("--format", "-f", help="csv|parquet|jsonl")] = "csv",
    db: Annotated[Path, typer.Option("--db", help="SQLite database path")] = _DEFAULT_DB,
) -> None:
    """Export ingested interaction events."""
    normalized = fmt.lower()
    if normalized not in {"csv", "parquet", "jsonl"}:
        raise typer.BadParameter("format must be csv, parquet, or jsonl")

    store = _store(db)
    count = store.export_events(output_path=out, fmt=normalized)
    console.print(f"Exported {count} rows to {out}")


if __name__ == "__main__":
    app()
