from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, Iterator, Optional

import httpx
from rich.console import Console
from rich.table import Table

console = Console()


def iter_sse_payloads(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Decode SSE ``data:`` events from a line iterator.

    Comments (``:keepalive``) are skipped, multi-line data is joined, and
    events whose data is not JSON are dropped.
    """
    buf: list[str] = []
    for line in lines:
        if line is None:
            continue
        if line == "":
            data_lines = [l for l in buf if l.startswith("data:")]
            buf = []
            if not data_lines:
                continue
            data = "\n".join([l[5:].lstrip() for l in data_lines])
            try:
                evt = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(evt, dict):
                yield evt
            continue
        if line.startswith(":"):
            continue
        buf.append(line)


def _render_session(s: dict) -> None:
    voting = s.get("votingState") or {}
    revealed = bool(voting.get("votesRevealed"))
    round_no = voting.get("currentRound", "")
    round_desc = voting.get("currentRoundDescription", "")
    console.print(
        f"[bold]{s.get('title', '')}[/bold]  ({s.get('sessionCode', '')})  "
        f"round {round_no}: {round_desc}"
    )
    table = Table(show_header=True, box=None, pad_edge=False)
    table.add_column("name")
    table.add_column("role")
    table.add_column("vote")
    table.add_column("online")
    for p in s.get("participants") or []:
        role = "host" if p.get("isHost") else ("observer" if p.get("isObserver") else "")
        if revealed:
            vote = str(p.get("vote") or "-")
        else:
            vote = "[green]voted[/green]" if p.get("voted") else "-"
        online = p.get("connected")
        online_txt = "" if online is None else ("[green]yes[/green]" if online else "[red]no[/red]")
        table.add_row(str(p.get("name", "")), role, vote, online_txt)
    console.print(table)
    if revealed:
        avg = voting.get("voteAverage") or "-"
        final = voting.get("finalEstimate") or "-"
        console.print(f"average: {avg}   final estimate: {final}")
    console.print(f"[dim]updated {s.get('lastUpdated', '')}[/dim]")
    console.print("-" * 60)


def poll_session(
    *,
    session_url: str,
    interval_s: float = 5.0,
    json_mode: bool = False,
    timeout_s: float = 10.0,
) -> None:
    last_seen: Optional[str] = None
    with httpx.Client(timeout=timeout_s, follow_redirects=True) as client:
        while True:
            try:
                r = client.get(session_url)
                r.raise_for_status()
                payload = r.json()
                stamp = payload.get("lastUpdated")
                if stamp != last_seen:
                    last_seen = stamp
                    if json_mode:
                        console.print_json(data=payload)
                    else:
                        _render_session(payload)
            except KeyboardInterrupt:
                raise
            except httpx.HTTPError as ex:
                console.print(f"[red]poll error[/red]: {ex}")
            time.sleep(max(0.2, interval_s))


def stream_session(*, events_url: str, json_mode: bool = False, show_heartbeats: bool = False) -> None:
    console.print(f"Streaming {events_url} (Ctrl+C to stop)")
    with httpx.Client(timeout=None, follow_redirects=True) as client:
        with client.stream("GET", events_url, headers={"Accept": "text/event-stream"}) as r:
            r.raise_for_status()
            for evt in iter_sse_payloads(r.iter_lines()):
                if evt.get("type") == "heartbeat":
                    if show_heartbeats:
                        console.print("[dim]heartbeat[/dim]")
                    continue
                if json_mode:
                    console.print_json(data=evt)
                else:
                    _render_session(evt)
