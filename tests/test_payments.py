import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chartsignal.config import Settings
from chartsignal.errors import InsufficientResource, NotFoundError, UpstreamError
from chartsignal.payments import (
    PaymentRecord,
    PaymentService,
    amount_within_tolerance,
    find_matching_transfer,
    sol_to_lamports,
)

SENDER = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
RECEIVER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
NOW = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)
ONE_SOL = 1_000_000_000


def _tx(amount, *, age_seconds=10, sender=SENDER, receiver=RECEIVER, signature="sig1", accounts=None):
    return {
        "signature": signature,
        "timestamp": int(NOW.timestamp()) - age_seconds,
        "nativeTransfers": [
            {"fromUserAccount": sender, "toUserAccount": receiver, "amount": amount},
        ],
        "accountData": [{"account": a} for a in (accounts or [sender, receiver])],
    }


def test_tolerance_boundary_is_one_percent_inclusive():
    assert amount_within_tolerance(990_000_000, ONE_SOL)  # exactly 1% below
    assert not amount_within_tolerance(989_900_000, ONE_SOL)  # 1.01% below
    assert amount_within_tolerance(1_010_000_000, ONE_SOL)
    assert not amount_within_tolerance(1_010_100_000, ONE_SOL)


def test_match_accepts_exactly_one_percent_below():
    match = find_matching_transfer([_tx(990_000_000)], SENDER, RECEIVER, ONE_SOL, NOW)
    assert match["signature"] == "sig1"


def test_match_rejects_1_01_percent_below():
    assert find_matching_transfer([_tx(989_900_000)], SENDER, RECEIVER, ONE_SOL, NOW) is None


def test_match_rejects_transactions_outside_window():
    assert find_matching_transfer([_tx(ONE_SOL, age_seconds=121)], SENDER, RECEIVER, ONE_SOL, NOW) is None
    assert find_matching_transfer([_tx(ONE_SOL, age_seconds=120)], SENDER, RECEIVER, ONE_SOL, NOW) is not None


def test_match_requires_sender_to_receiver_direction():
    reversed_tx = _tx(ONE_SOL, sender=RECEIVER, receiver=SENDER)
    assert find_matching_transfer([reversed_tx], SENDER, RECEIVER, ONE_SOL, NOW) is None


def test_match_requires_both_participants():
    tx = _tx(ONE_SOL, accounts=[RECEIVER, "SomeOtherAccount1111111111111111111111111"])
    assert find_matching_transfer([tx], SENDER, RECEIVER, ONE_SOL, NOW) is None


def test_first_match_wins():
    txs = [
        _tx(500_000_000, signature="too-small"),
        _tx(ONE_SOL, signature="first"),
        _tx(ONE_SOL, signature="second"),
    ]
    assert find_matching_transfer(txs, SENDER, RECEIVER, ONE_SOL, NOW)["signature"] == "first"


def test_sol_to_lamports_rounds():
    assert sol_to_lamports(0.03) == 30_000_000
    assert sol_to_lamports(0.1 + 0.2) == 300_000_000


class FakeStore:
    def __init__(self):
        self.payments = {}
        self.credits = {}

    async def insert_payment(self, row):
        self.payments[row["id"]] = dict(row)
        return dict(row)

    async def get_payment(self, payment_id):
        row = self.payments.get(payment_id)
        return dict(row) if row else None

    async def update_payment_status(self, payment_id, status, signature=None, expected_status="pending"):
        row = self.payments[payment_id]
        if row["status"] != expected_status:
            return False
        row["status"] = status
        if signature:
            row["signature"] = signature
        return True

    async def add_credits(self, user_id, amount):
        self.credits[user_id] = self.credits.get(user_id, 0) + amount
        return self.credits[user_id]


class FakeIndexer:
    def __init__(self, balance=5 * ONE_SOL, transactions=None):
        self.balance = balance
        self.transactions = transactions or []
        self.history_calls = 0

    async def get_balance(self, address):
        return self.balance

    async def get_transactions(self, address, limit=20):
        self.history_calls += 1
        return self.transactions


def _service(store, indexer, now=NOW):
    settings = Settings(receiver_wallet_address=RECEIVER, cost_per_analysis_sol=0.01)
    return PaymentService(settings, store, indexer, clock=lambda: now)


def _pending(store, *, created=NOW - timedelta(seconds=30), credits=5, user_id="user-1"):
    record = PaymentRecord(
        id="pay-1",
        user_id=user_id,
        sender_address=SENDER,
        receiver_address=RECEIVER,
        expected_amount=0.05,
        credits=credits,
        status="pending",
        created_at=created,
        expires_at=created + timedelta(seconds=120),
    )
    store.payments[record.id] = record.to_row()
    return record


def test_init_creates_pending_payment_with_two_minute_expiry():
    store = FakeStore()
    record = asyncio.run(_service(store, FakeIndexer()).init_payment("user-1", SENDER, 5))

    assert record.status == "pending"
    assert record.expected_amount == pytest.approx(0.05)
    assert record.receiver_address == RECEIVER
    assert record.expires_at - record.created_at == timedelta(minutes=2)
    assert store.payments[record.id]["user_id"] == "user-1"


def test_init_rejects_insufficient_wallet_balance():
    store = FakeStore()
    indexer = FakeIndexer(balance=sol_to_lamports(0.049))

    with pytest.raises(InsufficientResource) as excinfo:
        asyncio.run(_service(store, indexer).init_payment("user-1", SENDER, 5))

    assert excinfo.value.status_code == 400
    assert "top up" in excinfo.value.message
    assert store.payments == {}


def test_verify_after_expiry_cancels_without_polling():
    store = FakeStore()
    indexer = FakeIndexer(transactions=[_tx(sol_to_lamports(0.05))])
    _pending(store, created=NOW - timedelta(seconds=121))

    outcome = asyncio.run(_service(store, indexer).verify_payment("user-1", "pay-1"))

    assert outcome.payment.status == "cancelled"
    assert store.payments["pay-1"]["status"] == "cancelled"
    assert indexer.history_calls == 0
    assert store.credits == {}


def test_verify_match_marks_verified_and_adds_credits():
    store = FakeStore()
    store.credits["user-1"] = 2
    indexer = FakeIndexer(transactions=[_tx(sol_to_lamports(0.05), signature="abc")])
    _pending(store)

    outcome = asyncio.run(_service(store, indexer).verify_payment("user-1", "pay-1"))

    assert outcome.payment.status == "verified"
    assert outcome.payment.signature == "abc"
    assert outcome.balance == 7
    assert store.payments["pay-1"]["status"] == "verified"


def test_verify_without_match_stays_pending():
    store = FakeStore()
    indexer = FakeIndexer(transactions=[_tx(sol_to_lamports(0.01))])
    _pending(store)

    outcome = asyncio.run(_service(store, indexer).verify_payment("user-1", "pay-1"))

    assert outcome.payment.status == "pending"
    assert outcome.balance is None
    assert indexer.history_calls == 1


def test_verify_is_idempotent_once_settled():
    store = FakeStore()
    indexer = FakeIndexer(transactions=[_tx(sol_to_lamports(0.05))])
    _pending(store)
    service = _service(store, indexer)

    asyncio.run(service.verify_payment("user-1", "pay-1"))
    again = asyncio.run(service.verify_payment("user-1", "pay-1"))

    assert again.payment.status == "verified"
    assert store.credits["user-1"] == 5
    assert indexer.history_calls == 1


def test_verify_other_users_payment_is_not_found():
    store = FakeStore()
    _pending(store, user_id="someone-else")

    with pytest.raises(NotFoundError):
        asyncio.run(_service(store, FakeIndexer()).verify_payment("user-1", "pay-1"))


def test_failed_credit_grant_leaves_payment_retryable():
    class FlakyCreditStore(FakeStore):
        def __init__(self):
            super().__init__()
            self.credit_failures = 1

        async def add_credits(self, user_id, amount):
            if self.credit_failures:
                self.credit_failures -= 1
                raise UpstreamError("Failed to update credits", status_code=503)
            return await super().add_credits(user_id, amount)

    store = FlakyCreditStore()
    indexer = FakeIndexer(transactions=[_tx(sol_to_lamports(0.05), signature="abc")])
    _pending(store)
    service = _service(store, indexer)

    with pytest.raises(UpstreamError):
        asyncio.run(service.verify_payment("user-1", "pay-1"))
    assert store.payments["pay-1"]["status"] == "pending"
    assert store.credits == {}

    outcome = asyncio.run(service.verify_payment("user-1", "pay-1"))

    assert outcome.payment.status == "verified"
    assert outcome.balance == 5
    assert store.credits == {"user-1": 5}
