"""
Naming Service - deterministic identifiers for press runs and batches.

Press runs are named ``{ISO-date}-{NN}`` (e.g. ``2024-03-15-02``), sequenced
per calendar date. Batches are named from a variety-fraction fingerprint and
the vessel code (e.g. ``2025-09-19_TK03_GRAV``); collisions take ``_2``,
``_3``, ... suffixes.

Both generators must run inside the same transaction as the write that
consumes the name. They first take a lock on the name space they draw from
(see lock_name_space), then read the names already taken.
"""

import hashlib
import re
from datetime import date
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from press_tracker.models import Batch, PressRun
from press_tracker.services.exceptions import BatchNameExhaustedError
from press_tracker.utils.constants import (
    BLEND_CODE,
    MAX_BATCH_NAME_SUFFIX,
    PRESS_RUN_SEQUENCE_WIDTH,
    PRIMARY_VARIETY_THRESHOLD,
    UNKNOWN_VARIETY_CODE,
    VARIETY_CODE_LENGTH,
)

_SEQUENCE_SUFFIX = re.compile(r"-(\d+)$")


# =============================================================================
# Name Space Locks
# =============================================================================


def name_lock_key(scope: str) -> int:
    """
    Map a name space to a signed 64-bit advisory lock key.

    Transaction boundary: Pure computation (no database access).

    Examples:
        >>> name_lock_key("press_run:2024-03-15") == name_lock_key("press_run:2024-03-15")
        True
    """
    digest = hashlib.sha256(scope.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def lock_name_space(session: Session, scope: str) -> None:
    """
    Serialize name generation for one scope until the transaction ends.

    On PostgreSQL this takes pg_advisory_xact_lock on the scope's key. The
    lock exists whether or not any row matches yet, so two completions on an
    empty date cannot both pick sequence 01. SQLite needs nothing here: file
    engines begin with BEGIN IMMEDIATE and already hold the write lock.

    Args:
        session: Session of the consuming transaction
        scope: Name space, e.g. "press_run:2024-03-15"
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": name_lock_key(scope)})


# =============================================================================
# Press Run Names
# =============================================================================


def next_press_run_sequence(existing_names: Iterable[str], run_date: date) -> int:
    """
    Pick the next sequence number for a date from names already taken.

    Transaction boundary: Pure computation (no database access).

    Names that do not parse as ``{date}-{digits}`` are ignored.

    Examples:
        >>> next_press_run_sequence([], date(2024, 3, 15))
        1
        >>> next_press_run_sequence(["2024-03-15-01", "2024-03-15-07"], date(2024, 3, 15))
        8
    """
    prefix = f"{run_date.isoformat()}-"
    highest = 0
    for name in existing_names:
        if not name or not name.startswith(prefix):
            continue
        match = _SEQUENCE_SUFFIX.search(name)
        if match and name[: match.start()] == run_date.isoformat():
            highest = max(highest, int(match.group(1)))
    return highest + 1


def format_press_run_name(run_date: date, sequence: int) -> str:
    """Format ``{date}-{NN}``; sequences above 99 simply widen."""
    return f"{run_date.isoformat()}-{sequence:0{PRESS_RUN_SEQUENCE_WIDTH}d}"


def generate_press_run_name(session: Session, run_date: date) -> str:
    """
    Generate the next press run name for a date.

    Locks the date's name space first so concurrent completions on the same
    date serialize on the read.

    Args:
        session: Session of the consuming transaction
        run_date: Completion date

    Returns:
        Name such as ``2024-03-15-02``
    """
    lock_name_space(session, f"press_run:{run_date.isoformat()}")
    rows = (
        session.query(PressRun.name)
        .filter(PressRun.name.like(f"{run_date.isoformat()}-%"))
        .with_for_update()
        .all()
    )
    sequence = next_press_run_sequence((row[0] for row in rows), run_date)
    return format_press_run_name(run_date, sequence)


# =============================================================================
# Batch Names
# =============================================================================


def generate_variety_code(variety_name: Optional[str]) -> str:
    """
    Derive a short uppercase code from a variety name.

    Transaction boundary: Pure computation (no database access).

    Rules:
        - one word: first four letters ("Gravenstein" -> GRAV)
        - two words: two letters of each ("Northern Spy" -> NOSP)
        - three or more: first letter of the first two words plus two
          letters of the last ("Rhode Island Greening" -> RIGR)
        - non-letters are dropped; nothing usable -> UNKN

    Examples:
        >>> generate_variety_code("Golden Delicious")
        'GODE'
        >>> generate_variety_code("Cox")
        'COX'
    """
    if not isinstance(variety_name, str):
        return UNKNOWN_VARIETY_CODE

    words = []
    for raw in variety_name.upper().split():
        cleaned = "".join(ch for ch in raw if "A" <= ch <= "Z")
        if cleaned:
            words.append(cleaned)

    if not words:
        return UNKNOWN_VARIETY_CODE

    if len(words) == 1:
        code = words[0][:VARIETY_CODE_LENGTH]
    elif len(words) == 2:
        code = words[0][:2] + words[1][:2]
    else:
        code = words[0][:1] + words[1][:1] + words[-1][:2]

    return code[:VARIETY_CODE_LENGTH]


def aggregate_variety_fractions(
    compositions: Iterable[Tuple[str, float]],
) -> Dict[str, float]:
    """Sum fractions per variety name (several lots may share a variety)."""
    totals: Dict[str, float] = {}
    for variety_name, fraction in compositions:
        totals[variety_name] = totals.get(variety_name, 0.0) + fraction
    return totals


def select_primary_variety(compositions: Iterable[Tuple[str, float]]) -> Optional[str]:
    """
    Pick the dominant variety of a composition.

    Transaction boundary: Pure computation (no database access).

    Args:
        compositions: (variety_name, fraction_of_batch) pairs

    Returns:
        The variety holding the largest share if it is at least 60%,
        otherwise None (the batch is a blend)
    """
    totals = aggregate_variety_fractions(compositions)
    if not totals:
        return None
    # Ties resolve alphabetically so the name is deterministic
    variety, share = max(sorted(totals.items()), key=lambda item: item[1])
    if share + 1e-9 >= PRIMARY_VARIETY_THRESHOLD:
        return variety
    return None


def build_batch_base_name(
    run_date: date,
    vessel_code: str,
    compositions: Iterable[Tuple[str, float]],
) -> str:
    """
    Build the fingerprint name ``{date}_{VESSEL}_{VARIETY|BLEND}``.

    Examples:
        >>> build_batch_base_name(date(2025, 9, 19), "TK03", [("Gravenstein", 0.7), ("Gala", 0.3)])
        '2025-09-19_TK03_GRAV'
    """
    primary = select_primary_variety(compositions)
    variety_code = generate_variety_code(primary) if primary else BLEND_CODE
    return f"{run_date.isoformat()}_{vessel_code.upper()}_{variety_code}"


def resolve_name_collision(base_name: str, taken: Iterable[str]) -> str:
    """
    Return base_name, or base_name_N for the smallest free N >= 2.

    Transaction boundary: Pure computation (no database access).

    Raises:
        BatchNameExhaustedError: If suffixes up to MAX_BATCH_NAME_SUFFIX are taken
    """
    taken_names = set(taken)
    if base_name not in taken_names:
        return base_name
    for suffix in range(2, MAX_BATCH_NAME_SUFFIX + 1):
        candidate = f"{base_name}_{suffix}"
        if candidate not in taken_names:
            return candidate
    raise BatchNameExhaustedError(base_name, MAX_BATCH_NAME_SUFFIX)


def generate_batch_name(
    session: Session,
    run_date: date,
    vessel_code: str,
    compositions: Iterable[Tuple[str, float]],
    *,
    reserved: Iterable[str] = (),
) -> str:
    """
    Generate a unique batch name.

    Args:
        session: Session of the consuming transaction
        run_date: Batch start date
        vessel_code: Vessel label (e.g. "TK03")
        compositions: (variety_name, fraction) pairs
        reserved: Names already handed out in this transaction but not yet flushed

    Returns:
        Unique batch name

    Raises:
        BatchNameExhaustedError: If the suffix space is exhausted
    """
    base_name = build_batch_base_name(run_date, vessel_code, compositions)
    lock_name_space(session, f"batch:{base_name}")
    rows = (
        session.query(Batch.name)
        .filter((Batch.name == base_name) | (Batch.name.like(f"{base_name}\\_%", escape="\\")))
        .with_for_update()
        .all()
    )
    taken = {row[0] for row in rows}
    taken.update(reserved)
    return resolve_name_collision(base_name, taken)
