from __future__ import annotations

import os
from typing import Optional
from urllib.parse import quote

import typer
from rich.console import Console

from pokerlive.stream import poll_session, stream_session
from pokerlive_server.security import generate_session_code, is_valid_session_code

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()


def _normalize_code(code: str) -> str:
    c = (code or "").strip().upper()
    if not is_valid_session_code(c):
        console.print(f"[red]not a session code:[/red] {code!r} (8 characters, no 0/O/I)")
        raise typer.Exit(code=1)
    return c


def session_url(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/api/sessions/{code}"


def events_url(base_url: str, code: str, participant: Optional[str] = None) -> str:
    url = f"{session_url(base_url, code)}/events"
    if participant:
        url += f"?participant={quote(participant)}"
    return url


@app.command("gen-code")
def gen_code():
    """Print a fresh session code."""
    console.print(generate_session_code())


@app.command("watch")
def watch(
    code: str = typer.Argument(..., help="Session code to follow."),
    url: str = typer.Option("http://127.0.0.1:8080", "--url", help="Server base URL."),
    mode: str = typer.Option("stream", help="stream (SSE, default) or poll."),
    participant: Optional[str] = typer.Option(None, help="Connect as this participant (marks them online)."),
    interval: float = typer.Option(5.0, help="Polling interval seconds (poll mode)."),
    json_mode: bool = typer.Option(False, "--json", help="Print each update as raw JSON."),
    heartbeats: bool = typer.Option(False, "--heartbeats", help="Show heartbeat events (stream mode)."),
):
    """Follow a session's live state."""
    c = _normalize_code(code)

    if mode == "poll":
        target = session_url(url, c)
        console.print(f"Polling {target} every {interval}s (Ctrl+C to stop)")
        try:
            poll_session(session_url=target, interval_s=interval, json_mode=json_mode)
        except KeyboardInterrupt:
            console.print("\n[cyan]stopped[/cyan]")
        return

    if mode == "stream":
        try:
            stream_session(
                events_url=events_url(url, c, participant),
                json_mode=json_mode,
                show_heartbeats=heartbeats,
            )
        except KeyboardInterrupt:
            console.print("\n[cyan]stopped[/cyan]")
        return

    console.print("[red]mode must be 'stream' or 'poll'[/red]")
    raise typer.Exit(code=2)


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
    db_path: str = typer.Option("pokerlive.sqlite3", help="SQLite db file path"),
    broadcast_delay_ms: int = typer.Option(1000, help="Debounce window for live updates"),
    admin_token: Optional[str] = typer.Option(None, help="Enables /api/admin/{token} routes"),
):
    """Run the PokerLive server."""
    os.environ["POKERLIVE_DB_PATH"] = db_path
    os.environ["POKERLIVE_BROADCAST_DELAY_MS"] = str(broadcast_delay_ms)
    if admin_token:
        os.environ["POKERLIVE_ADMIN_TOKEN"] = admin_token

    connect_host = "127.0.0.1" if host in ("0.0.0.0", "::") else host
    base = f"http://{connect_host}:{port}"
    console.print(f"Starting server on http://{host}:{port}")
    console.print(f"Sessions: {base}/api/sessions")
    console.print(f"Events:   {base}/api/sessions/<code>/events")
    if admin_token:
        console.print(f"Admin:    {base}/api/admin/{admin_token}/sessions")

    import uvicorn
    uvicorn.run("pokerlive_server.main:app", host=host, port=port, reload=False, log_level="info")


if __name__ == "__main__":
    app()
