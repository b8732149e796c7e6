import logging
import math
import threading
import weakref
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from models import ChallengeAccount, Position, Trade
from auth_models import User
from quote_client import get_quote

logger = logging.getLogger(__name__)

BUY = "Buy"
SELL = "Sell"

# Preset challenge sizes: key -> (label, starting balance)
ACCOUNT_TYPES = {
    "10k": ("$10K Challenge", 10_000.0),
    "25k": ("$25K Challenge", 25_000.0),
    "50k": ("$50K Challenge", 50_000.0),
    "100k": ("$100K Challenge", 100_000.0),
}
DEFAULT_ACCOUNT_NAME = "My Challenge Account"

# Quantities closer than this are the same size
QTY_EPSILON = 1e-9


class ChallengeError(ValueError):
    """Business-rule failure; status_code is the HTTP status routes answer with."""
    status_code = 400


class InsufficientFunds(ChallengeError):
    pass


class InsufficientShares(ChallengeError):
    pass


class InvalidTradeType(ChallengeError):
    pass


class InvalidAccountType(ChallengeError):
    pass


class AccountAlreadyExists(ChallengeError):
    pass


class AccountNotFound(ChallengeError):
    status_code = 404


class PriceUnavailable(ChallengeError):
    status_code = 502


_locks_guard = threading.Lock()
# Held only while some order or reset is using it
_user_locks = weakref.WeakValueDictionary()


def _user_lock(user_id: int) -> threading.Lock:
    with _locks_guard:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = threading.Lock()
            _user_locks[user_id] = lock
        return lock


def format_quantity(quantity: float) -> str:
    """Whole share counts print as ints, fractions at full precision."""
    quantity = float(quantity)
    if quantity.is_integer():
        return str(int(quantity))
    return repr(quantity)


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}" if domain else f"{local[:1]}***"


def account_options() -> list[dict]:
    return [
        {"type": key, "label": label, "balance": balance}
        for key, (label, balance) in ACCOUNT_TYPES.items()
    ]


def create_account(db: Session, user_id: int, account_type: str, account_name: str | None = None) -> ChallengeAccount:
    preset = ACCOUNT_TYPES.get(account_type)
    if preset is None:
        raise InvalidAccountType(
            f"Invalid account type '{account_type}', must be one of: {', '.join(ACCOUNT_TYPES)}"
        )

    if db.query(ChallengeAccount).filter(ChallengeAccount.user_id == user_id).first():
        raise AccountAlreadyExists("Challenge account already exists.")

    _, balance = preset
    account = ChallengeAccount(
        user_id=user_id,
        account_name=account_name or DEFAULT_ACCOUNT_NAME,
        account_type=account_type,
        starting_balance=balance,
        current_balance=balance,
    )
    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent create for the same user
        db.rollback()
        raise AccountAlreadyExists("Challenge account already exists.")
    db.refresh(account)
    logger.info(f"Created {account_type} challenge account for user {user_id}")
    return account


def get_account(db: Session, user_id: int) -> ChallengeAccount:
    account = db.query(ChallengeAccount).filter(ChallengeAccount.user_id == user_id).first()
    if not account:
        raise AccountNotFound("Account not found. Please create a challenge account.")
    return account


def get_positions(db: Session, user_id: int) -> list[Position]:
    get_account(db, user_id)
    return (
        db.query(Position)
        .filter(Position.user_id == user_id)
        .order_by(Position.symbol)
        .all()
    )


def get_trade_history(db: Session, user_id: int, limit: int = 50) -> list[Trade]:
    get_account(db, user_id)
    return (
        db.query(Trade)
        .filter(Trade.user_id == user_id)
        .order_by(Trade.created_at.desc(), Trade.id.desc())
        .limit(limit)
        .all()
    )


def normalize_trade_type(trade_type: str) -> str:
    normalized = (trade_type or "").strip().capitalize()
    if normalized not in (BUY, SELL):
        raise InvalidTradeType("Invalid trade type.")
    return normalized


def execute_order(db: Session, user_id: int, symbol: str, trade_type: str, quantity: float):
    """
    1. Get price from the quote provider
    2. Lock the user's account row
    3. Buy: debit cash, merge into position at weighted average price
       Sell: credit cash, shrink or close the position
    4. Save Trade
    5. Commit everything in one transaction

    Returns (account, trade). Nothing is written when a rule check fails.
    """
    side = normalize_trade_type(trade_type)
    symbol = symbol.strip().upper()
    if not quantity or quantity <= 0:
        raise ChallengeError("Quantity must be positive.")

    price = get_quote(symbol)
    if price is None:
        raise PriceUnavailable("Could not fetch a valid price.")

    # Orders for one user run one at a time; the quote fetch stays outside
    with _user_lock(user_id):
        try:
            account = (
                db.query(ChallengeAccount)
                .filter(ChallengeAccount.user_id == user_id)
                .with_for_update()
                .first()
            )
            if not account:
                raise AccountNotFound("Account not found. Please create a challenge account.")

            position = (
                db.query(Position)
                .filter(Position.user_id == user_id, Position.symbol == symbol)
                .with_for_update()
                .first()
            )

            if side == BUY:
                cost = price * quantity
                if cost > account.current_balance:
                    raise InsufficientFunds("Insufficient funds.")

                account.current_balance -= cost
                if position:
                    # New avg price = (old_qty*old_price + new_qty*price) / (old_qty + new_qty)
                    total_qty = position.quantity + quantity
                    position.average_price = (
                        position.average_price * position.quantity + price * quantity
                    ) / total_qty
                    position.quantity = total_qty
                else:
                    db.add(Position(
                        user_id=user_id,
                        symbol=symbol,
                        quantity=quantity,
                        average_price=price,
                    ))
            else:
                if not position or position.quantity < quantity - QTY_EPSILON:
                    raise InsufficientShares("Insufficient shares to sell.")

                account.current_balance += price * quantity
                if math.isclose(position.quantity, quantity, rel_tol=0.0, abs_tol=QTY_EPSILON):
                    db.delete(position)
                else:
                    position.quantity -= quantity

            trade = Trade(
                user_id=user_id,
                symbol=symbol,
                trade_type=side,
                quantity=quantity,
                price=price,
                balance_after=account.current_balance,
            )
            db.add(trade)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(account)
        db.refresh(trade)

    logger.info(
        f"User {user_id} {side.lower()} {format_quantity(quantity)} {symbol} @ {price:.4f}, "
        f"balance {account.current_balance:.2f}"
    )
    return account, trade


def order_message(trade: Trade) -> str:
    verb = "bought" if trade.trade_type == BUY else "sold"
    return f"Successfully {verb} {format_quantity(trade.quantity)} of {trade.symbol}."


def reset_account(db: Session, user_id: int) -> None:
    """Delete the user's challenge account with its positions and trade history."""
    with _user_lock(user_id):
        account = get_account(db, user_id)
        try:
            db.query(Position).filter(Position.user_id == user_id).delete(synchronize_session=False)
            db.query(Trade).filter(Trade.user_id == user_id).delete(synchronize_session=False)
            db.delete(account)
            db.commit()
        except Exception:
            db.rollback()
            raise
    logger.info(f"Reset challenge account for user {user_id}")


def get_leaderboard(db: Session, limit: int = 50) -> list[dict]:
    """
    Rank every challenge account by return on its starting balance.

    Open positions count at cost basis; marking them to market needs live
    quotes and is left to the client.
    """
    cost_basis = dict(
        db.query(Position.user_id, func.sum(Position.quantity * Position.average_price))
        .group_by(Position.user_id)
        .all()
    )
    rows = db.query(ChallengeAccount, User.email).join(User, ChallengeAccount.user_id == User.id).all()

    board = []
    for account, email in rows:
        equity = account.current_balance + (cost_basis.get(account.user_id) or 0.0)
        total_return = equity - account.starting_balance
        board.append({
            "trader": mask_email(email),
            "account_name": account.account_name,
            "account_type": account.account_type,
            "starting_balance": account.starting_balance,
            "current_balance": account.current_balance,
            "equity": equity,
            "total_return": total_return,
            "return_percent": total_return / account.starting_balance * 100,
        })

    board.sort(key=lambda row: row["return_percent"], reverse=True)
    for rank, row in enumerate(board[:limit], start=1):
        row["rank"] = rank
    return board[:limit]
