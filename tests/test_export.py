"""Tests for round history export."""
from __future__ import annotations

import csv
import io
import json

from pokerlive_server.export import CSV_FIELDS, export_to_csv, export_to_json, export_to_ndjson

CODE = "ABCD2345"

ROUNDS = [
    {
        "roundNumber": 1,
        "description": "Login page",
        "votes": {"Bob": "3", "Ann": "5"},
        "voteAverage": "4",
        "finalEstimate": "5",
        "timestamp": 1700000000000,
    },
    {
        "roundNumber": 2,
        "description": "Checkout, part 1",
        "votes": {},
        "voteAverage": "",
        "finalEstimate": "",
        "timestamp": 1700000060000,
    },
]


def test_export_to_json():
    """The document carries the session code, a count and nested votes."""
    parsed = json.loads(export_to_json(CODE, ROUNDS))
    assert parsed["sessionCode"] == CODE
    assert parsed["roundCount"] == 2
    assert parsed["rounds"][0]["votes"] == {"Bob": "3", "Ann": "5"}
    assert parsed["rounds"][1]["description"] == "Checkout, part 1"


def test_export_to_csv_one_row_per_vote():
    """Votes are flattened into rows, participants sorted by name."""
    reader = csv.DictReader(io.StringIO(export_to_csv(ROUNDS)))
    rows = list(reader)

    assert reader.fieldnames == CSV_FIELDS
    assert [(r["roundNumber"], r["participant"], r["vote"]) for r in rows] == [
        ("1", "Ann", "5"),
        ("1", "Bob", "3"),
        ("2", "", ""),
    ]
    assert rows[0]["voteAverage"] == "4"
    assert rows[0]["finalEstimate"] == "5"
    assert rows[2]["description"] == "Checkout, part 1"


def test_export_to_csv_empty():
    """An empty history is just the header."""
    assert export_to_csv([]).strip() == ",".join(CSV_FIELDS)


def test_export_to_ndjson():
    """One line per round, each tagged with the session."""
    lines = export_to_ndjson(CODE, ROUNDS).split("\n")
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["sessionCode"] == CODE
    assert first["roundNumber"] == 1
    assert json.loads(lines[1])["votes"] == {}
