"""Replay protection for POST routes that apply ledger effects.

A client that retries a request with the same ``Idempotency-Key`` header gets
the stored response of the first successful attempt instead of a second sale,
purchase or expense. The key is written in the same database transaction as
the effects, so a rolled-back attempt leaves no key behind.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from pos_ledger.models import IdempotencyKey


def replay(db: Session, key: Optional[str], scope: str) -> Optional[Any]:
    if not key:
        return None
    stored = db.scalar(
        select(IdempotencyKey).where(IdempotencyKey.key == key, IdempotencyKey.scope == scope)
    )
    if stored is None:
        return None
    return stored.response["data"]


def remember(db: Session, key: Optional[str], scope: str, data: Any) -> None:
    if not key:
        return
    db.add(
        IdempotencyKey(
            key=key,
            scope=scope,
            response={"data": data},
            created_at=datetime.now(timezone.utc),
        )
    )
    db.flush()
