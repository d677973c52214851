"""
Ledger gateway: the fund-custody collaborator behind every escrow movement.

The engine only knows the abstract ``LedgerGateway``. Production deployments
talk to the payment ledger over HTTP; the in-memory gateway backs local
development and tests.
"""
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import LedgerError, LedgerTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HoldReceipt:
    """Proof that ``amount`` is held in escrow for a deal."""
    reference: str
    deal_id: int
    amount: Decimal


@dataclass(frozen=True)
class LedgerReceipt:
    """Proof of a release or refund out of a hold."""
    reference: str
    hold_reference: str
    amount: Decimal
    to_user_id: int


class LedgerGateway(ABC):
    """hold / release / refund capability set."""

    @abstractmethod
    def hold(self, deal_id: int, amount: Decimal, idempotency_key: str) -> HoldReceipt:
        ...

    @abstractmethod
    def release(self, hold: HoldReceipt, amount: Decimal, to_user_id: int,
                idempotency_key: str) -> LedgerReceipt:
        ...

    @abstractmethod
    def refund(self, hold: HoldReceipt, amount: Decimal, to_user_id: int,
               idempotency_key: str) -> LedgerReceipt:
        ...


@dataclass
class InMemoryLedgerGateway(LedgerGateway):
    """Ledger kept in process memory.

    Calls with an idempotency key already seen return the first receipt,
    the same contract the payment ledger honours. ``fail_next`` queues
    exceptions to raise on upcoming calls (fault injection).
    """
    calls: List[tuple] = field(default_factory=list)
    fail_next: List[Exception] = field(default_factory=list)
    _receipts: Dict[str, object] = field(default_factory=dict)
    _balances: Dict[str, Decimal] = field(default_factory=dict)

    def _maybe_fail(self):
        if self.fail_next:
            raise self.fail_next.pop(0)

    def hold(self, deal_id, amount, idempotency_key):
        self.calls.append(("hold", deal_id, amount))
        self._maybe_fail()
        if idempotency_key in self._receipts:
            return self._receipts[idempotency_key]
        receipt = HoldReceipt(reference=f"hold_{uuid.uuid4().hex[:16]}", deal_id=deal_id, amount=amount)
        self._balances[receipt.reference] = amount
        self._receipts[idempotency_key] = receipt
        return receipt

    def release(self, hold, amount, to_user_id, idempotency_key):
        self.calls.append(("release", hold.reference, amount, to_user_id))
        return self._pay_out("rel", hold, amount, to_user_id, idempotency_key)

    def refund(self, hold, amount, to_user_id, idempotency_key):
        self.calls.append(("refund", hold.reference, amount, to_user_id))
        return self._pay_out("ref", hold, amount, to_user_id, idempotency_key)

    def _pay_out(self, prefix, hold, amount, to_user_id, idempotency_key):
        self._maybe_fail()
        if idempotency_key in self._receipts:
            return self._receipts[idempotency_key]
        balance = self._balances.get(hold.reference)
        if balance is None:
            raise LedgerError(f"Unknown hold {hold.reference}", transient=False)
        if amount > balance:
            raise LedgerError(f"Hold {hold.reference} has {balance}, cannot move {amount}", transient=False)
        self._balances[hold.reference] = balance - amount
        receipt = LedgerReceipt(
            reference=f"{prefix}_{uuid.uuid4().hex[:16]}",
            hold_reference=hold.reference,
            amount=amount,
            to_user_id=to_user_id,
        )
        self._receipts[idempotency_key] = receipt
        return receipt

    def calls_of(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    def balance(self, hold_reference: str) -> Decimal:
        return self._balances.get(hold_reference, Decimal("0"))


class HttpLedgerGateway(LedgerGateway):
    """Ledger gateway backed by the payment ledger's REST API."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _post(self, path: str, payload: dict, idempotency_key: str) -> dict:
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout) as client:
                response = client.post(path, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            raise LedgerTimeout(f"Ledger request {path} timed out") from e
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            raise LedgerError(
                f"Ledger returned {code} for {path}: {e.response.text}",
                transient=code >= 500 or code in (408, 429),
            ) from e
        except httpx.HTTPError as e:
            raise LedgerError(f"Ledger request {path} failed: {e}") from e

    def hold(self, deal_id, amount, idempotency_key):
        data = self._post("/holds", {"deal_id": deal_id, "amount": str(amount)}, idempotency_key)
        return HoldReceipt(reference=data["reference"], deal_id=deal_id, amount=Decimal(str(data["amount"])))

    def release(self, hold, amount, to_user_id, idempotency_key):
        return self._move("release", hold, amount, to_user_id, idempotency_key)

    def refund(self, hold, amount, to_user_id, idempotency_key):
        return self._move("refund", hold, amount, to_user_id, idempotency_key)

    def _move(self, operation, hold, amount, to_user_id, idempotency_key):
        data = self._post(
            f"/holds/{hold.reference}/{operation}",
            {"amount": str(amount), "to_user_id": to_user_id},
            idempotency_key,
        )
        return LedgerReceipt(
            reference=data["reference"],
            hold_reference=hold.reference,
            amount=Decimal(str(data["amount"])),
            to_user_id=to_user_id,
        )


def call_ledger(operation: Callable, *args, max_retries: Optional[int] = None,
                backoff: Optional[float] = None, **kwargs):
    """
    Invoke a gateway operation, retrying ``LedgerError`` with exponential backoff.

    Errors the ledger marks as permanent fail on the first attempt. Every other
    exception propagates untouched. When retries run out, or the failure is
    permanent, it is re-raised as an escalated ``LedgerError``.
    """
    if max_retries is None:
        max_retries = settings.LEDGER_MAX_RETRIES
    if backoff is None:
        backoff = settings.LEDGER_RETRY_BACKOFF_SECONDS

    name = getattr(operation, "__name__", "ledger call")
    attempt = 0
    while True:
        try:
            return operation(*args, **kwargs)
        except LedgerError as e:
            if not e.transient or attempt >= max_retries:
                logger.error(f"Ledger {name} failed after {attempt + 1} attempts, escalating: {e}")
                raise type(e)(f"Ledger {name} failed: {e.message}", escalate=True, transient=e.transient) from e
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning(f"Ledger {name} failed ({e}); retry {attempt}/{max_retries} in {delay:.2f}s")
            if delay > 0:
                time.sleep(delay)


_memory_gateway = InMemoryLedgerGateway()


def get_ledger_gateway() -> LedgerGateway:
    """Dependency returning the configured ledger gateway."""
    if settings.LEDGER_BACKEND == "http":
        return HttpLedgerGateway(
            settings.LEDGER_API_URL,
            api_key=settings.LEDGER_API_KEY,
            timeout=settings.LEDGER_TIMEOUT_SECONDS,
        )
    return _memory_gateway
