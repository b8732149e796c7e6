from database import engine, Base
from models import ChallengeAccount, Position, Trade, JournalEntry
from auth_models import User

# Create all tables
Base.metadata.create_all(bind=engine)
print("All tables created successfully!")
