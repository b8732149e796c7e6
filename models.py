from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database import Base
from auth_models import User


def _utcnow():
    return datetime.now(timezone.utc)


class ChallengeAccount(Base):
    __tablename__ = "challenge_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, unique=True, nullable=False)
    account_name = Column(String, default="My Challenge Account")
    account_type = Column(String, nullable=False)  # preset key, e.g. "100k"
    starting_balance = Column(Float, nullable=False)
    current_balance = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="challenge_account")


class Position(Base):
    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("user_id", "symbol", name="uq_position_user_symbol"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    symbol = Column(String, index=True, nullable=False)
    quantity = Column(Float, nullable=False)
    average_price = Column(Float, nullable=False)

    user = relationship("User", back_populates="positions")


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    symbol = Column(String, index=True)
    trade_type = Column(String)  # "Buy" or "Sell"
    quantity = Column(Float)
    price = Column(Float)
    balance_after = Column(Float)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class JournalEntry(Base):
    __tablename__ = "journal_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    symbol = Column(String, nullable=False)
    trade_type = Column(String, nullable=False)
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    notes = Column(Text, nullable=True)
    trade_date = Column(DateTime(timezone=True), default=_utcnow)

    user = relationship("User", back_populates="journal_entries")
