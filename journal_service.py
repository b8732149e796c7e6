import logging
from sqlalchemy.orm import Session
from models import JournalEntry

logger = logging.getLogger(__name__)


class JournalEntryNotFound(LookupError):
    pass


def list_entries(db: Session, user_id: int) -> list[JournalEntry]:
    return (
        db.query(JournalEntry)
        .filter(JournalEntry.user_id == user_id)
        .order_by(JournalEntry.trade_date.desc(), JournalEntry.id.desc())
        .all()
    )


def get_entry(db: Session, user_id: int, entry_id: int) -> JournalEntry:
    # Other users' entries look exactly like missing ones
    entry = (
        db.query(JournalEntry)
        .filter(JournalEntry.id == entry_id, JournalEntry.user_id == user_id)
        .first()
    )
    if not entry:
        raise JournalEntryNotFound(f"Journal entry {entry_id} not found")
    return entry


def create_entry(db: Session, user_id: int, fields: dict) -> JournalEntry:
    fields = {k: v for k, v in fields.items() if v is not None}
    fields["symbol"] = fields["symbol"].strip().upper()
    entry = JournalEntry(user_id=user_id, **fields)
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def update_entry(db: Session, user_id: int, entry_id: int, changes: dict) -> JournalEntry:
    """Apply only the fields present in changes."""
    entry = get_entry(db, user_id, entry_id)
    if changes.get("symbol"):
        changes["symbol"] = changes["symbol"].strip().upper()
    for field, value in changes.items():
        # notes is the only column that may be cleared
        if value is None and field != "notes":
            continue
        setattr(entry, field, value)
    db.commit()
    db.refresh(entry)
    return entry


def delete_entry(db: Session, user_id: int, entry_id: int) -> None:
    entry = get_entry(db, user_id, entry_id)
    db.delete(entry)
    db.commit()
    logger.info(f"User {user_id} deleted journal entry {entry_id}")
