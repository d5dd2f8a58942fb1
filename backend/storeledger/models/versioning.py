# Overview: Version counter used by optimistic locking on mutable records.

from __future__ import annotations


def next_version(current: int | None) -> int:
    """
    version_id_generator for SQLAlchemy's version_id_col.

    INSERT passes None and starts the counter at 0; every UPDATE adds exactly 1.
    """
    if current is None:
        return 0
    return current + 1
