import logging
from typing import List
from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from config import CORS_ORIGINS, LOG_LEVEL, QUOTE_PROVIDER
from database import Base, engine, get_db
from schemas import (
    AccountOption,
    AccountResponse,
    CreateAccountRequest,
    CreateAccountResponse,
    JournalEntryCreate,
    JournalEntryResponse,
    JournalEntryUpdate,
    LeaderboardEntry,
    OrderRequest,
    OrderResponse,
    PositionResponse,
    QuoteResponse,
    ResetResponse,
    TradeResponse,
)
from auth_schemas import LoginRequest, RegisterRequest, LoginResponse, RegisterResponse
from auth_models import User
from auth_utils import hash_password, verify_password, create_access_token, get_current_user_id
import challenge_service
import journal_service
from challenge_service import ChallengeError
from journal_service import JournalEntryNotFound
from quote_client import get_daily_quote

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Challenge Trading Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create tables
Base.metadata.create_all(bind=engine)


@app.get("/health")
def health_check():
    return {"status": "ok"}


# Authentication endpoints
def _email_taken(db: Session, email: str) -> bool:
    return db.query(User).filter(User.email == email).first() is not None


@app.post("/api/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    email = request.email.strip().lower()
    if _email_taken(db, email):
        raise HTTPException(status_code=400, detail="User already exists")

    user = User(email=email, password_hash=hash_password(request.password))
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent registration for the same email
        db.rollback()
        raise HTTPException(status_code=400, detail="User already exists")
    logger.info(f"Registered user {email}")
    return RegisterResponse(message="User created successfully")


@app.post("/api/auth/login", response_model=LoginResponse)
def login(request: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == request.email.strip().lower()).first()

    if not user or not verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = create_access_token({"user_id": user.id})
    return LoginResponse(
        access_token=token,
        user_id=user.id,
        message="Login successful"
    )


# Challenge account endpoints
@app.get("/api/challenge/account-options", response_model=List[AccountOption])
def get_account_options():
    return challenge_service.account_options()


@app.post("/api/challenge/account", response_model=CreateAccountResponse, status_code=201)
def create_challenge_account(body: CreateAccountRequest, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    try:
        account = challenge_service.create_account(db, user_id, body.account_type, body.account_name)
    except ChallengeError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return CreateAccountResponse(
        message="Challenge account created successfully.",
        account=AccountResponse.model_validate(account),
    )


@app.get("/api/challenge/account", response_model=AccountResponse)
def get_challenge_account(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    try:
        return challenge_service.get_account(db, user_id)
    except ChallengeError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@app.get("/api/challenge/positions", response_model=List[PositionResponse])
def get_challenge_positions(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    try:
        return challenge_service.get_positions(db, user_id)
    except ChallengeError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@app.post("/api/challenge/order", response_model=OrderResponse, status_code=201)
def place_order(body: OrderRequest, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    Buy or sell a number of shares at the current market price.
    """
    try:
        account, trade = challenge_service.execute_order(
            db,
            user_id=user_id,
            symbol=body.symbol,
            trade_type=body.trade_type,
            quantity=body.quantity,
        )
    except ChallengeError as e:
        logger.info(f"Order rejected for user {user_id}: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception:
        logger.exception(f"Unexpected error placing order for user {user_id}")
        raise HTTPException(status_code=500, detail="Failed to process order.")

    return OrderResponse(
        message=challenge_service.order_message(trade),
        balance=trade.balance_after,
        trade=TradeResponse.model_validate(trade),
    )


@app.get("/api/challenge/history", response_model=List[TradeResponse])
def get_challenge_history(
    limit: int = Query(50, ge=1, le=500),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return challenge_service.get_trade_history(db, user_id, limit)
    except ChallengeError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@app.get("/api/challenge/leaderboard", response_model=List[LeaderboardEntry])
def get_challenge_leaderboard(
    limit: int = Query(50, ge=1, le=500),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return challenge_service.get_leaderboard(db, limit)


@app.delete("/api/challenge/reset", response_model=ResetResponse)
def reset_challenge_account(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    try:
        challenge_service.reset_account(db, user_id)
    except ChallengeError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return ResetResponse(message="Challenge account reset.")


# Journal endpoints
@app.get("/api/journal", response_model=List[JournalEntryResponse])
def list_journal_entries(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return journal_service.list_entries(db, user_id)


@app.get("/api/journal/{entry_id}", response_model=JournalEntryResponse)
def get_journal_entry(entry_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    try:
        return journal_service.get_entry(db, user_id, entry_id)
    except JournalEntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/api/journal", response_model=JournalEntryResponse, status_code=201)
def create_journal_entry(body: JournalEntryCreate, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return journal_service.create_entry(db, user_id, body.model_dump())


@app.put("/api/journal/{entry_id}", response_model=JournalEntryResponse)
def update_journal_entry(entry_id: int, body: JournalEntryUpdate, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    try:
        return journal_service.update_entry(db, user_id, entry_id, body.model_dump(exclude_unset=True))
    except JournalEntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.delete("/api/journal/{entry_id}", status_code=204)
def delete_journal_entry(entry_id: int, user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    try:
        journal_service.delete_entry(db, user_id, entry_id)
    except JournalEntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/api/stock/{symbol}", response_model=QuoteResponse)
def get_stock_quote(symbol: str):
    """Current price and day change for a symbol from the configured quote provider"""
    quote = get_daily_quote(symbol)
    if quote is None:
        raise HTTPException(status_code=502, detail="Failed to fetch stock data")
    return QuoteResponse(symbol=symbol.upper(), provider=QUOTE_PROVIDER, **quote)


@app.get("/")
def root():
    return {"message": "Challenge Trading API", "status": "running", "features": ["challenge-trading", "journal", "quotes", "authentication"]}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
