from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select

from database import DATA_DIR, Modality, Station
from events import SessionMode, StationStatus


TIMERS_FILE = DATA_DIR / "modality_timers.json"
SESSION_TYPES = ("MT", "OP")

# Minutes for a maintenance (MT) and an optimization (OP) session.
MODALITY_TIMERS: Dict[str, Dict[str, int]] = {
    "CIRCULATION (BACK)": {"MT": 15, "OP": 25},
    "CIRCULATION (FRONT)": {"MT": 15, "OP": 25},
    "BRAIN": {"MT": 15, "OP": 25},
    "ENERGY": {"MT": 15, "OP": 25},
    "CELL": {"MT": 15, "OP": 15},
    "PHYSICAL": {"MT": 15, "OP": 25},
    "GUT (EMS)": {"MT": 20, "OP": 35},
    "GUT (LASER)": {"MT": 20, "OP": 35},
    "STRESS": {"MT": 15, "OP": 25},
    "INFRARED SAUNA": {"MT": 25, "OP": 35},
    "HBOT": {"MT": 30, "OP": 60},
    "CRYO": {"MT": 3, "OP": 3},
}

# Category -> number of stations on the board.
STATION_LAYOUT: List[Tuple[str, int]] = [
    ("CIRCULATION (BACK)", 4),
    ("CIRCULATION (FRONT)", 3),
    ("BRAIN", 4),
    ("ENERGY", 3),
    ("CELL", 2),
    ("PHYSICAL", 3),
    ("GUT (EMS)", 2),
    ("GUT (LASER)", 2),
    ("STRESS", 2),
]


def normalize_session_type(value: Any) -> Optional[str]:
    """Return "MT"/"OP" for a session type label, or None when unrecognised."""
    token = str(value or "").strip().upper()
    return token if token in SESSION_TYPES else None


def normalize_mode(value: Any) -> str:
    token = str(value or "").strip().upper()
    if token in {mode.value for mode in SessionMode}:
        return token
    return SessionMode.UNSPEC.value


def baseline_timers() -> Dict[str, Dict[str, int]]:
    return {name: dict(entry) for name, entry in MODALITY_TIMERS.items()}


def load_timers() -> Dict[str, Dict[str, int]]:
    if TIMERS_FILE.exists():
        try:
            data = json.loads(TIMERS_FILE.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError
        except Exception:  # noqa: BLE001
            data = baseline_timers()
    else:
        data = baseline_timers()

    baseline = baseline_timers()
    for name, default in baseline.items():
        entry = data.get(name)
        if not isinstance(entry, dict):
            data[name] = default
            continue
        for session_type in SESSION_TYPES:
            try:
                entry[session_type] = max(0, int(entry.get(session_type, default[session_type])))
            except (TypeError, ValueError):
                entry[session_type] = default[session_type]
    return data


def save_timers(data: Dict[str, Dict[str, int]]) -> None:
    TIMERS_FILE.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


def reset_timers_to_defaults() -> None:
    save_timers(baseline_timers())


def default_duration_seconds(modality: Modality, session_type: Any) -> Optional[int]:
    """Configured duration for the modality and session type, in seconds."""
    normalized = normalize_session_type(session_type)
    if normalized == "MT":
        seconds = modality.mt_seconds
    elif normalized == "OP":
        seconds = modality.op_seconds
    else:
        return None
    if not seconds or seconds <= 0:
        return None
    return int(seconds)


def provision_board(
    session,
    *,
    layout: Iterable[Tuple[str, int]] = STATION_LAYOUT,
    timers: Optional[Dict[str, Dict[str, int]]] = None,
) -> Dict[str, int]:
    """Create any missing Modality and Station rows. Existing rows are left untouched."""
    timers = timers if timers is not None else load_timers()
    modalities = {item.name: item for item in session.scalars(select(Modality))}
    created = {"modalities": 0, "stations": 0}
    for name, entry in timers.items():
        if name in modalities:
            continue
        modality = Modality(
            name=name,
            mt_seconds=int(entry.get("MT", 0)) * 60,
            op_seconds=int(entry.get("OP", 0)) * 60,
        )
        session.add(modality)
        modalities[name] = modality
        created["modalities"] += 1
    session.flush()

    existing = {(item.category, item.index) for item in session.scalars(select(Station))}
    for category, count in layout:
        modality = modalities.get(category)
        if modality is None:
            modality = Modality(name=category, mt_seconds=0, op_seconds=0)
            session.add(modality)
            session.flush()
            modalities[category] = modality
            created["modalities"] += 1
        for index in range(count):
            if (category, index) in existing:
                continue
            session.add(
                Station(
                    category=category,
                    index=index,
                    label=f"Table {index + 1}",
                    modality_id=modality.id,
                    status=StationStatus.AVAILABLE.value,
                )
            )
            created["stations"] += 1
    session.commit()
    return created
