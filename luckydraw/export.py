import csv
import io
import re
from datetime import datetime
from typing import Iterable, Optional, Tuple

COLUMNS = ["No", "Name", "ID-tag", "Contact", "Prize", "Date", "Time"]

_TRAILING_TAG = re.compile(r"\s*\((\d+)\)\s*$")


def split_id_tag(name: str, id_tag: Optional[str] = None) -> Tuple[str, str]:
    """Return (display name, id tag), pulling a trailing "(1234)" out of the name."""
    match = _TRAILING_TAG.search(name or "")
    clean = _TRAILING_TAG.sub("", name or "").strip() if match else (name or "").strip()
    if id_tag:
        return clean, id_tag
    return clean, match.group(1) if match else "-"


def contact_of(record) -> str:
    return getattr(record, "email", None) or getattr(record, "phone", None) or "-"


def _date_time(value: Optional[datetime]) -> Tuple[str, str]:
    if value is None:
        return "", ""
    return value.strftime("%Y-%m-%d"), value.strftime("%H:%M:%S")


def export_csv(winners: Iterable, participants: Iterable = ()) -> str:
    """Winners first, then a blank row, then whoever is still in the pool."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow(COLUMNS)
    for number, winner in enumerate(winners, start=1):
        name, tag = split_id_tag(winner.name, getattr(winner, "id_tag", None))
        date, time = _date_time(winner.won_at)
        writer.writerow([number, name, tag, contact_of(winner), winner.prize_name or "No Prize", date, time])

    remaining = list(participants)
    if remaining:
        writer.writerow([])
        writer.writerow(COLUMNS)
        for number, participant in enumerate(remaining, start=1):
            name, tag = split_id_tag(participant.name, getattr(participant, "id_tag", None))
            date, time = _date_time(participant.added_at)
            writer.writerow([number, name, tag, contact_of(participant), "", date, time])

    return buffer.getvalue()
