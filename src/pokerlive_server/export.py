"""Export of a session's round history.

JSON and NDJSON keep one record per round with its votes nested. CSV is
flat, one row per vote, so a spreadsheet can pivot on participant.
"""
from __future__ import annotations

import csv
import io
import json
from typing import Any, Iterator

CSV_FIELDS = [
    'roundNumber', 'description', 'participant', 'vote',
    'voteAverage', 'finalEstimate', 'timestamp',
]

_ROUND_FIELDS = ('roundNumber', 'description', 'voteAverage', 'finalEstimate', 'timestamp')


def iter_vote_rows(rounds: list[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    """Flatten rounds into one row per vote, participants in name order.

    A round nobody voted in still yields a single row with blank
    participant and vote, so it shows up in the sheet.
    """
    for rnd in rounds:
        base = {k: rnd.get(k, '') for k in _ROUND_FIELDS}
        votes = rnd.get('votes') or {}
        if not votes:
            yield {**base, 'participant': '', 'vote': ''}
            continue
        for name in sorted(votes):
            yield {**base, 'participant': name, 'vote': votes[name]}


def export_to_json(session_code: str, rounds: list[dict[str, Any]]) -> str:
    """Export rounds as one JSON document.

    Args:
        session_code: Session the rounds belong to
        rounds: List of round dictionaries (camelCase keys)

    Returns:
        JSON string with ``sessionCode``, ``roundCount`` and ``rounds``
    """
    document = {
        'sessionCode': session_code,
        'roundCount': len(rounds),
        'rounds': rounds,
    }
    return json.dumps(document, indent=2, ensure_ascii=False)


def export_to_csv(rounds: list[dict[str, Any]]) -> str:
    """Export rounds to CSV, one row per vote. The header is always written."""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=CSV_FIELDS)
    writer.writeheader()
    writer.writerows(iter_vote_rows(rounds))
    return output.getvalue()


def export_to_ndjson(session_code: str, rounds: list[dict[str, Any]]) -> str:
    """Export rounds to NDJSON, one round per line tagged with its session."""
    lines = [json.dumps({'sessionCode': session_code, **rnd}, ensure_ascii=False) for rnd in rounds]
    return '\n'.join(lines)
