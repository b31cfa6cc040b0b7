"""Tests for the pokerlive command line client."""
from __future__ import annotations

from typer.testing import CliRunner

from pokerlive.main import app, events_url, session_url
from pokerlive.stream import iter_sse_payloads
from pokerlive_server.security import is_valid_session_code

runner = CliRunner()


def test_iter_sse_payloads():
    """Comments are skipped and each data event is decoded."""
    lines = [
        ":ok",
        "",
        'data: {"type": "session-update", "sessionCode": "ABCD2345"}',
        "",
        "data: not json",
        "",
        'data: {"type":',
        'data: "heartbeat"}',
        "",
    ]
    events = list(iter_sse_payloads(lines))
    assert events == [
        {"type": "session-update", "sessionCode": "ABCD2345"},
        {"type": "heartbeat"},
    ]


def test_urls():
    assert session_url("http://h:8080/", "ABCD2345") == "http://h:8080/api/sessions/ABCD2345"
    assert (
        events_url("http://h:8080", "ABCD2345", "Ann Lee")
        == "http://h:8080/api/sessions/ABCD2345/events?participant=Ann%20Lee"
    )


def test_gen_code():
    result = runner.invoke(app, ["gen-code"])
    assert result.exit_code == 0
    assert is_valid_session_code(result.stdout.strip())


def test_watch_rejects_bad_code():
    result = runner.invoke(app, ["watch", "bad-code"])
    assert result.exit_code == 1
