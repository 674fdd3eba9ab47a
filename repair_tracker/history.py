"""Status history stored inside the RO notes cell.

Cell format::

    HISTORY:[{"status": "TO SEND", "date": "3/4/25", "user": "..."}]|NOTES:free text

Rows without any history keep plain notes with no marker.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .models import StatusHistoryEntry

LOGGER = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 20
HISTORY_PREFIX = "HISTORY:"
NOTES_SEPARATOR = "|NOTES:"
_DECODER = json.JSONDecoder()


@dataclass
class DecodedNotes:
    notes: str
    history: List[StatusHistoryEntry] = field(default_factory=list)


def format_short_date(value: datetime) -> str:
    return f"{value.month}/{value.day}/{value.year % 100:02d}"


def parse_history_date(value: Any) -> datetime:
    """Read ``M/D/YY`` (current format) or ISO-8601 (older rows)."""

    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"invalid history date {value!r}")
    text = value.strip()
    try:
        return datetime.strptime(text, "%m/%d/%y").replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _entry_from_json(raw: Dict[str, Any]) -> StatusHistoryEntry:
    delivery = raw.get("deliveryDate")
    return StatusHistoryEntry(
        status=raw.get("status") or "",
        date=parse_history_date(raw["date"]),
        user=raw.get("user") or "Unknown",
        cost=raw.get("cost"),
        notes=raw.get("notes") or None,
        delivery_date=parse_history_date(delivery) if delivery else None,
    )


def _entry_to_json(entry: StatusHistoryEntry) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "status": entry.status,
        "date": format_short_date(entry.date),
        "user": entry.user,
    }
    if entry.cost is not None:
        payload["cost"] = entry.cost
    if entry.notes:
        payload["notes"] = entry.notes
    if entry.delivery_date is not None:
        payload["deliveryDate"] = format_short_date(entry.delivery_date)
    return payload


def decode(cell_text: Any) -> DecodedNotes:
    """Split a notes cell into free notes and history. Never raises.

    The JSON array is read with a streaming decoder so that ``]|NOTES:``
    inside an entry's text does not end the history early.
    """

    if not isinstance(cell_text, str) or not cell_text:
        return DecodedNotes(notes="")

    if not cell_text.startswith(HISTORY_PREFIX + "["):
        return DecodedNotes(notes=cell_text)

    try:
        raw_entries, end = _DECODER.raw_decode(cell_text, len(HISTORY_PREFIX))
        if not cell_text.startswith(NOTES_SEPARATOR, end):
            raise ValueError(f"expected {NOTES_SEPARATOR!r} at offset {end}")
        if not isinstance(raw_entries, list):
            raise ValueError("history payload is not a list")
        history = [
            _entry_from_json(raw)
            for raw in raw_entries
            if isinstance(raw, dict) and all(key in raw for key in ("status", "date", "user"))
        ]
    except (ValueError, TypeError) as exc:
        LOGGER.warning("Failed to parse status history from notes; keeping raw text: %s", exc)
        return DecodedNotes(notes=cell_text)

    return DecodedNotes(notes=cell_text[end + len(NOTES_SEPARATOR):], history=history)


def encode(notes: Optional[str], history: Sequence[StatusHistoryEntry]) -> str:
    notes = notes or ""
    if not history:
        return notes
    recent = list(history)[-MAX_HISTORY_ENTRIES:]
    payload = json.dumps([_entry_to_json(entry) for entry in recent])
    return f"{HISTORY_PREFIX}{payload}{NOTES_SEPARATOR}{notes}"
