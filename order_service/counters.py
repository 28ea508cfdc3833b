"""Store-scoped pickup numbers.

The first order of a store gets #1, then numbers cycle (previous + 1) % 1000,
so #999 is followed by #0. Allocation is a single conditional write and runs
inside the caller's transaction: rolling the order back rolls the number back.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import StoreCounter, utcnow

logger = logging.getLogger(__name__)

PICKUP_NUMBER_MODULUS = 1000
FIRST_PICKUP_NUMBER = 1

# Dialects with INSERT ... ON CONFLICT DO UPDATE ... RETURNING.
_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def next_pickup_number(db: Session, store_id: str) -> int:
    """Allocate the next pickup number for ``store_id``."""
    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert is not None:
        return _upsert_counter(db, insert, store_id)
    return _locked_increment(db, store_id)


def _upsert_counter(db: Session, insert, store_id: str) -> int:
    counters = StoreCounter.__table__
    stmt = insert(counters).values(
        store_id=store_id,
        pickup_number=FIRST_PICKUP_NUMBER,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[counters.c.store_id],
        set_={
            "pickup_number": (counters.c.pickup_number + 1) % PICKUP_NUMBER_MODULUS,
            "updated_at": utcnow(),
        },
    ).returning(counters.c.pickup_number)
    return db.execute(stmt).scalar_one()


def _locked_increment(db: Session, store_id: str) -> int:
    """Row-lock fallback for databases without a native upsert."""
    counters = StoreCounter.__table__
    locked = select(counters.c.pickup_number).where(counters.c.store_id == store_id).with_for_update()

    current = db.execute(locked).scalar_one_or_none()
    if current is None:
        try:
            with db.begin_nested():
                db.execute(counters.insert().values(
                    store_id=store_id,
                    pickup_number=FIRST_PICKUP_NUMBER,
                    updated_at=utcnow(),
                ))
            return FIRST_PICKUP_NUMBER
        except IntegrityError:
            # Another transaction created the row first; wait on its lock.
            logger.info("Counter row for store %s created concurrently, retrying under lock", store_id)
            current = db.execute(locked).scalar_one()

    value = (current + 1) % PICKUP_NUMBER_MODULUS
    db.execute(
        update(counters)
        .where(counters.c.store_id == store_id)
        .values(pickup_number=value, updated_at=utcnow())
    )
    return value
