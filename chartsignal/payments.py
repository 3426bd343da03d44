"""
SOL payment flow for buying analysis credits.

init:   check the sender can afford it, store a pending payment that expires
        after the payment window.
verify: once per call, look through the receiver's recent transactions for a
        native transfer sender -> receiver within 1% of the expected amount
        and inside the window. First match wins.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from .config import Settings
from .errors import ConfigurationError, InsufficientResource, NotFoundError, ValidationError
from .helius_client import LAMPORTS_PER_SOL, HeliusClient
from .supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

PENDING = "pending"
VERIFIED = "verified"
CANCELLED = "cancelled"

# Accepted deviation from the expected amount, as 1/N of it (1%)
AMOUNT_TOLERANCE_DIVISOR = 100


def sol_to_lamports(amount_sol: float) -> int:
    return int(round(amount_sol * LAMPORTS_PER_SOL))


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class PaymentRecord:
    id: str
    user_id: str
    sender_address: str
    receiver_address: str
    expected_amount: float
    credits: int
    status: str
    created_at: datetime
    expires_at: datetime
    signature: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            sender_address=row["sender_address"],
            receiver_address=row["receiver_address"],
            expected_amount=float(row["expected_amount"]),
            credits=int(row.get("credits") or 0),
            status=row.get("status") or PENDING,
            created_at=_parse_ts(row["created_at"]),
            expires_at=_parse_ts(row["expires_at"]),
            signature=row.get("signature"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "sender_address": self.sender_address,
            "receiver_address": self.receiver_address,
            "expected_amount": self.expected_amount,
            "credits": self.credits,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "signature": self.signature,
        }

    @property
    def expected_lamports(self) -> int:
        return sol_to_lamports(self.expected_amount)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class PaymentOutcome:
    payment: PaymentRecord
    balance: Optional[int] = None


def amount_within_tolerance(amount: int, expected: int) -> bool:
    """|amount - expected| <= 1% of expected, in exact integer arithmetic."""
    return abs(int(amount) - expected) * AMOUNT_TOLERANCE_DIVISOR <= expected


def _participants(tx: Dict[str, Any]) -> set:
    accounts = {a.get("account") for a in tx.get("accountData") or [] if isinstance(a, dict)}
    accounts.discard(None)
    if accounts:
        return accounts
    for transfer in tx.get("nativeTransfers") or []:
        accounts.add(transfer.get("fromUserAccount"))
        accounts.add(transfer.get("toUserAccount"))
    accounts.discard(None)
    return accounts


def find_matching_transfer(
    transactions: Iterable[Dict[str, Any]],
    sender: str,
    receiver: str,
    expected_lamports: int,
    now: datetime,
    window_seconds: int = 120,
) -> Optional[Dict[str, Any]]:
    """Return the first transaction that pays `expected_lamports` (±1%) from sender to receiver."""
    oldest = now.timestamp() - window_seconds
    for tx in transactions:
        timestamp = tx.get("timestamp")
        if timestamp is None or float(timestamp) < oldest:
            continue

        participants = _participants(tx)
        if sender not in participants or receiver not in participants:
            continue

        for transfer in tx.get("nativeTransfers") or []:
            if transfer.get("fromUserAccount") != sender or transfer.get("toUserAccount") != receiver:
                continue
            if amount_within_tolerance(transfer.get("amount") or 0, expected_lamports):
                return tx
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    def __init__(
        self,
        settings: Settings,
        store: SupabaseClient,
        indexer: HeliusClient,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.store = store
        self.indexer = indexer
        self.clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.settings.payment_window_seconds)

    def quote(self, credits: int) -> float:
        return round(credits * self.settings.cost_per_analysis_sol, 9)

    async def init_payment(self, user_id: str, sender_address: str, credits: int) -> PaymentRecord:
        receiver = self.settings.receiver_wallet_address
        if not receiver:
            raise ConfigurationError("Payment service not configured", "Set RECEIVER_WALLET_ADDRESS")
        if sender_address == receiver:
            raise ValidationError("Invalid wallet address", "Sender and receiver wallets must differ")

        amount = self.quote(credits)
        balance = await self.indexer.get_balance(sender_address)
        if balance < sol_to_lamports(amount):
            logger.info(
                "payment.insufficient_balance user_id=%s sender=%s balance=%d needed=%d",
                user_id,
                sender_address,
                balance,
                sol_to_lamports(amount),
            )
            raise InsufficientResource(
                "Insufficient SOL balance",
                f"Wallet holds {balance / LAMPORTS_PER_SOL:.4f} SOL; top up to at least {amount} SOL plus fees and try again",
                status_code=400,
            )

        now = self.clock()
        record = PaymentRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            sender_address=sender_address,
            receiver_address=receiver,
            expected_amount=amount,
            credits=credits,
            status=PENDING,
            created_at=now,
            expires_at=now + self.window,
        )
        row = await self.store.insert_payment(record.to_row())
        logger.info(
            "payment.init payment_id=%s user_id=%s amount=%s credits=%d",
            record.id,
            user_id,
            amount,
            credits,
        )
        return PaymentRecord.from_row(row)

    async def _load(self, user_id: str, payment_id: str) -> PaymentRecord:
        row = await self.store.get_payment(payment_id)
        if not row or str(row.get("user_id")) != str(user_id):
            raise NotFoundError("Payment not found")
        return PaymentRecord.from_row(row)

    async def verify_payment(self, user_id: str, payment_id: str) -> PaymentOutcome:
        """`balance` is set only when this call credited the user."""
        record = await self._load(user_id, payment_id)
        if record.status != PENDING:
            return PaymentOutcome(record, None)

        now = self.clock()
        if record.is_expired(now):
            await self.store.update_payment_status(record.id, CANCELLED)
            logger.info("payment.expired payment_id=%s expires_at=%s", record.id, record.expires_at.isoformat())
            return PaymentOutcome(replace(record, status=CANCELLED), None)

        transactions = await self.indexer.get_transactions(record.receiver_address)
        match = find_matching_transfer(
            transactions,
            record.sender_address,
            record.receiver_address,
            record.expected_lamports,
            now,
            window_seconds=self.settings.payment_window_seconds,
        )
        if match is None:
            logger.info("payment.pending payment_id=%s scanned=%d", record.id, len(transactions))
            return PaymentOutcome(record, None)

        signature = match.get("signature")
        if not await self.store.update_payment_status(record.id, VERIFIED, signature):
            # Another verify call settled it first
            return PaymentOutcome(await self._load(user_id, payment_id), None)

        try:
            balance = await self.store.add_credits(user_id, record.credits)
        except Exception:
            # Credits were not granted, so hand the payment back to the next verify call
            logger.error("payment.credit_failed payment_id=%s signature=%s", record.id, signature, exc_info=True)
            await self.store.update_payment_status(record.id, PENDING, expected_status=VERIFIED)
            raise
        logger.info(
            "payment.verified payment_id=%s signature=%s credits=%d balance=%d",
            record.id,
            signature,
            record.credits,
            balance,
        )
        return PaymentOutcome(replace(record, status=VERIFIED, signature=signature or record.signature), balance)

