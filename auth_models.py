from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    challenge_account = relationship("ChallengeAccount", back_populates="user", uselist=False)
    positions = relationship("Position", back_populates="user")
    journal_entries = relationship("JournalEntry", back_populates="user")
