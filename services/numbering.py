"""Per-tenant document numbers built from tag patterns.

A pattern mixes literal text with bracketed tags: ``[YYYY]``, ``[YY]``,
``[MM]`` and ``[DD]`` render the date, and a run of C's such as
``[CCCCC]`` renders a zero-padded counter of that width.  Counters are
kept per tenant, entity type and date scope, so ``Q-[YYYY]-[CCCCC]``
restarts at ``Q-2027-00001`` in a new year.

Each tenant may override the pattern per entity type through
``NumberingConfig``; otherwise the built-in default applies.
"""

from __future__ import annotations

import datetime
import logging
import re
from typing import Callable, Optional

from errors import PersistenceError
from extensions import db
from models import NumberingConfig, NumberSequence
from utils import utc_now

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"\[([A-Z]+)\]")

_DATE_TAGS: dict[str, Callable[[datetime.datetime], str]] = {
    "YYYY": lambda d: f"{d.year:04d}",
    "YY": lambda d: f"{d.year % 100:02d}",
    "MM": lambda d: f"{d.month:02d}",
    "DD": lambda d: f"{d.day:02d}",
}

DEFAULT_PATTERNS = {
    "quote": "Q-[YYYY]-[CCCCC]",
    "order": "ORD-[YYYY]-[CCCCC]",
    "order_invoice": "INV-[YYYY]-[CCCC]",
}

MAX_ATTEMPTS = 10


def _next_sequence(tenant_id: int, entity_type: str, scope_key: str) -> int:
    """Increment and return the counter for one scope."""
    seq = NumberSequence.query.filter_by(
        tenant_id=tenant_id, entity_type=entity_type, scope_key=scope_key
    ).with_for_update().first()
    if seq is None:
        db.session.add(
            NumberSequence(
                tenant_id=tenant_id, entity_type=entity_type, scope_key=scope_key, last_value=1
            )
        )
        db.session.flush()
        return 1
    # Increment in SQL so concurrent writers serialise on the row
    seq.last_value = NumberSequence.last_value + 1
    db.session.flush()
    db.session.refresh(seq)
    return seq.last_value


def _pattern_for(tenant_id: int, entity_type: str) -> str:
    config = NumberingConfig.query.filter_by(
        tenant_id=tenant_id, entity_type=entity_type
    ).first()
    if config and config.pattern:
        return config.pattern
    return DEFAULT_PATTERNS.get(entity_type, entity_type.upper() + "-[CCCCC]")


def generate_number(
    tenant_id: int,
    entity_type: str,
    *,
    now: Optional[datetime.datetime] = None,
) -> str:
    """Generate the next formatted number for *entity_type* in *tenant_id*."""
    now = now or utc_now()
    pattern = _pattern_for(tenant_id, entity_type)

    parts: list[str] = []
    scope: list[str] = []
    counter_index: Optional[int] = None
    width = 0
    pos = 0
    for match in _TAG_RE.finditer(pattern):
        parts.append(pattern[pos:match.start()])
        tag = match.group(1)
        if tag in _DATE_TAGS:
            value = _DATE_TAGS[tag](now)
            parts.append(value)
            scope.append(value)
        elif set(tag) == {"C"}:
            counter_index, width = len(parts), len(tag)
            parts.append("")
        else:
            # Unknown tags stay literal
            parts.append(match.group(0))
        pos = match.end()
    parts.append(pattern[pos:])

    if counter_index is not None:
        seq = _next_sequence(tenant_id, entity_type, "-".join(scope))
        parts[counter_index] = str(seq).zfill(width)
    return "".join(parts)


def generate_unique_number(
    tenant_id: int,
    entity_type: str,
    exists: Callable[[str], bool],
    *,
    now: Optional[datetime.datetime] = None,
) -> str:
    """Generate a number that *exists* reports as unused.

    Collisions happen when numbers were entered by hand or the pattern was
    changed; the sequence simply moves on until a free number is found.
    """
    for attempt in range(1, MAX_ATTEMPTS + 1):
        candidate = generate_number(tenant_id, entity_type, now=now)
        if not exists(candidate):
            return candidate
        logger.warning(
            "Number collision for %s %s in tenant %s (attempt %s)",
            entity_type, candidate, tenant_id, attempt,
        )
    raise PersistenceError(
        f"Could not allocate a unique {entity_type} number after {MAX_ATTEMPTS} attempts"
    )
