import gc

import pytest

import challenge_service
from challenge_service import (
    AccountAlreadyExists,
    AccountNotFound,
    InsufficientFunds,
    InsufficientShares,
    InvalidAccountType,
    InvalidTradeType,
    PriceUnavailable,
    create_account,
    execute_order,
    get_leaderboard,
    get_positions,
    get_trade_history,
    reset_account,
)
from models import ChallengeAccount, Position, Trade


@pytest.fixture
def account_user(db, make_user):
    user_id = make_user()
    create_account(db, user_id, "100k")
    return user_id


def _position(db, user_id, symbol):
    return db.query(Position).filter_by(user_id=user_id, symbol=symbol).first()


def test_buy_merge_and_full_sell(db, prices, account_user):
    prices["AAPL"] = 150.0
    account, _ = execute_order(db, account_user, "AAPL", "Buy", 10)
    assert account.current_balance == pytest.approx(98_500)
    pos = _position(db, account_user, "AAPL")
    assert pos.quantity == 10
    assert pos.average_price == pytest.approx(150)

    prices["AAPL"] = 170.0
    account, _ = execute_order(db, account_user, "AAPL", "Buy", 10)
    assert account.current_balance == pytest.approx(96_800)
    pos = _position(db, account_user, "AAPL")
    assert pos.quantity == 20
    assert pos.average_price == pytest.approx(160)

    prices["AAPL"] = 180.0
    account, _ = execute_order(db, account_user, "AAPL", "Sell", 20)
    assert account.current_balance == pytest.approx(100_400)
    assert _position(db, account_user, "AAPL") is None


def test_partial_sell_keeps_average_price(db, prices, account_user):
    prices["MSFT"] = 300.0
    execute_order(db, account_user, "MSFT", "Buy", 8)

    prices["MSFT"] = 320.0
    account, trade = execute_order(db, account_user, "MSFT", "Sell", 3)

    pos = _position(db, account_user, "MSFT")
    assert pos.quantity == 5
    assert pos.average_price == pytest.approx(300)
    assert account.current_balance == pytest.approx(100_000 - 2_400 + 960)
    assert trade.balance_after == pytest.approx(account.current_balance)


def test_weighted_average_with_uneven_lots(db, prices, account_user):
    prices["NVDA"] = 100.0
    execute_order(db, account_user, "NVDA", "Buy", 3)
    prices["NVDA"] = 110.0
    execute_order(db, account_user, "NVDA", "Buy", 7)

    pos = _position(db, account_user, "NVDA")
    assert pos.quantity == 10
    assert pos.average_price == pytest.approx((100 * 3 + 110 * 7) / 10)


def test_insufficient_funds_changes_nothing(db, prices, account_user):
    prices["BRK.A"] = 600_000.0
    with pytest.raises(InsufficientFunds):
        execute_order(db, account_user, "BRK.A", "Buy", 1)

    db.expire_all()
    account = db.query(ChallengeAccount).filter_by(user_id=account_user).one()
    assert account.current_balance == 100_000
    assert _position(db, account_user, "BRK.A") is None
    assert db.query(Trade).count() == 0


def test_buy_exactly_the_whole_balance(db, prices, account_user):
    prices["SPY"] = 500.0
    account, _ = execute_order(db, account_user, "SPY", "Buy", 200)
    assert account.current_balance == pytest.approx(0)


def test_sell_without_position(db, prices, account_user):
    prices["TSLA"] = 200.0
    with pytest.raises(InsufficientShares):
        execute_order(db, account_user, "TSLA", "Sell", 1)
    assert db.query(Trade).count() == 0


def test_sell_more_than_held_changes_nothing(db, prices, account_user):
    prices["TSLA"] = 200.0
    execute_order(db, account_user, "TSLA", "Buy", 5)

    with pytest.raises(InsufficientShares):
        execute_order(db, account_user, "TSLA", "Sell", 6)

    db.expire_all()
    account = db.query(ChallengeAccount).filter_by(user_id=account_user).one()
    assert account.current_balance == pytest.approx(99_000)
    assert _position(db, account_user, "TSLA").quantity == 5
    assert db.query(Trade).count() == 1


def test_invalid_trade_type_skips_quote_fetch(db, monkeypatch, account_user):
    def boom(symbol):
        raise AssertionError("quote should not be fetched")

    monkeypatch.setattr(challenge_service, "get_quote", boom)
    with pytest.raises(InvalidTradeType):
        execute_order(db, account_user, "AAPL", "Short", 1)


def test_trade_type_is_case_insensitive_and_symbol_upper_cased(db, prices, account_user):
    prices["AMD"] = 120.0
    _, trade = execute_order(db, account_user, " amd ", "buy", 2)
    assert trade.trade_type == "Buy"
    assert trade.symbol == "AMD"
    assert _position(db, account_user, "AMD").quantity == 2


def test_price_unavailable(db, prices, account_user):
    with pytest.raises(PriceUnavailable):
        execute_order(db, account_user, "ZZZZ", "Buy", 1)

    db.expire_all()
    assert db.query(ChallengeAccount).filter_by(user_id=account_user).one().current_balance == 100_000


def test_order_without_account(db, prices, make_user):
    user_id = make_user()
    prices["AAPL"] = 150.0
    with pytest.raises(AccountNotFound):
        execute_order(db, user_id, "AAPL", "Buy", 1)


def test_fractional_dust_closes_position(db, prices, account_user):
    prices["BTC"] = 10.0
    execute_order(db, account_user, "BTC", "Buy", 0.1)
    execute_order(db, account_user, "BTC", "Buy", 0.2)

    execute_order(db, account_user, "BTC", "Sell", 0.3)
    assert _position(db, account_user, "BTC") is None


def test_trade_history_newest_first(db, prices, account_user):
    prices["AAPL"] = 150.0
    execute_order(db, account_user, "AAPL", "Buy", 1)
    execute_order(db, account_user, "AAPL", "Buy", 2)
    execute_order(db, account_user, "AAPL", "Sell", 3)

    history = get_trade_history(db, account_user)
    assert [t.trade_type for t in history] == ["Sell", "Buy", "Buy"]
    assert [t.quantity for t in history] == [3, 2, 1]
    assert len(get_trade_history(db, account_user, limit=2)) == 2


def test_create_account_rules(db, make_user):
    user_id = make_user()
    with pytest.raises(InvalidAccountType):
        create_account(db, user_id, "1m")

    account = create_account(db, user_id, "25k", "Swing")
    assert account.starting_balance == 25_000
    assert account.current_balance == 25_000
    assert account.account_name == "Swing"

    with pytest.raises(AccountAlreadyExists):
        create_account(db, user_id, "10k")


def test_positions_need_an_account(db, make_user):
    with pytest.raises(AccountNotFound):
        get_positions(db, make_user())


def test_reset_removes_account_positions_and_history(db, prices, account_user):
    prices["AAPL"] = 150.0
    execute_order(db, account_user, "AAPL", "Buy", 1)

    reset_account(db, account_user)

    assert db.query(ChallengeAccount).filter_by(user_id=account_user).first() is None
    assert _position(db, account_user, "AAPL") is None
    assert db.query(Trade).filter_by(user_id=account_user).count() == 0

    with pytest.raises(AccountNotFound):
        reset_account(db, account_user)

    # A fresh account can be opened after a reset
    assert create_account(db, account_user, "10k").current_balance == 10_000


def test_leaderboard_ranks_by_return(db, prices, make_user):
    winner = make_user("winner@example.com")
    loser = make_user("loser@example.com")
    idle = make_user("idle@example.com")
    create_account(db, winner, "10k")
    create_account(db, loser, "25k")
    create_account(db, idle, "50k")

    prices["AAPL"] = 100.0
    execute_order(db, winner, "AAPL", "Buy", 10)
    execute_order(db, loser, "AAPL", "Buy", 10)
    prices["AAPL"] = 120.0
    execute_order(db, winner, "AAPL", "Sell", 10)
    prices["AAPL"] = 90.0
    execute_order(db, loser, "AAPL", "Sell", 10)

    board = get_leaderboard(db)
    assert [row["trader"] for row in board] == [
        "w***@example.com", "i***@example.com", "l***@example.com",
    ]
    assert [row["rank"] for row in board] == [1, 2, 3]
    assert board[0]["return_percent"] == pytest.approx(2.0)
    assert board[2]["total_return"] == pytest.approx(-100)


def test_leaderboard_counts_open_positions_at_cost(db, prices, make_user):
    user_id = make_user()
    create_account(db, user_id, "10k")
    prices["AAPL"] = 100.0
    execute_order(db, user_id, "AAPL", "Buy", 10)

    (row,) = get_leaderboard(db)
    assert row["current_balance"] == pytest.approx(9_000)
    assert row["equity"] == pytest.approx(10_000)
    assert row["return_percent"] == pytest.approx(0)


def test_user_lock_is_shared_per_user():
    assert challenge_service._user_lock(1) is challenge_service._user_lock(1)
    assert challenge_service._user_lock(1) is not challenge_service._user_lock(2)


def test_idle_user_locks_are_released():
    lock = challenge_service._user_lock(4242)
    assert 4242 in challenge_service._user_locks
    del lock
    gc.collect()
    assert 4242 not in challenge_service._user_locks


@pytest.mark.parametrize("quantity,expected", [
    (10.0, "10"),
    (1234567.0, "1234567"),
    (0.123456789, "0.123456789"),
    (2.5, "2.5"),
])
def test_format_quantity(quantity, expected):
    assert challenge_service.format_quantity(quantity) == expected


def test_order_message_keeps_full_quantity(db, prices, account_user):
    prices["PENNY"] = 0.05
    _, trade = execute_order(db, account_user, "PENNY", "Buy", 1234567)
    assert challenge_service.order_message(trade) == "Successfully bought 1234567 of PENNY."

    _, trade = execute_order(db, account_user, "PENNY", "Sell", 0.123456789)
    assert challenge_service.order_message(trade) == "Successfully sold 0.123456789 of PENNY."


def test_mask_email():
    assert challenge_service.mask_email("rival@example.com") == "r***@example.com"
    assert challenge_service.mask_email("nodomain") == "n***"


def test_leaderboard_hides_emails(db, prices, make_user):
    create_account(db, make_user("rival@example.com"), "10k", "Rival Fund")

    (row,) = get_leaderboard(db)
    assert "email" not in row
    assert "rival@example.com" not in row.values()
    assert row["trader"] == "r***@example.com"
    assert row["account_name"] == "Rival Fund"
