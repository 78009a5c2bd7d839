import logging
import os
import random
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from threading import Lock
from time import time_ns
from typing import Callable, Dict, Optional, Protocol, TypeVar
from uuid import uuid4

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _float_from_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


MOCK_SUCCESS_RATE = _float_from_env("PAYMENT_MOCK_SUCCESS_RATE", 0.9)
GATEWAY_TIMEOUT_SECONDS = _float_from_env("PAYMENT_TIMEOUT_SECONDS", 10.0)
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
PUBLISHABLE_KEY = os.getenv("PAYMENT_PUBLISHABLE_KEY", "pk_test_mock_key_for_demo")


class PaymentGatewayError(RuntimeError):
    """The gateway could not be reached or returned an unusable answer."""


class PaymentGatewayTimeout(PaymentGatewayError):
    pass


@dataclass(frozen=True)
class GatewayIntent:
    id: str
    client_secret: str
    amount: int
    currency: str


@dataclass(frozen=True)
class GatewayConfirmation:
    succeeded: bool
    reference: str
    failure_code: Optional[str] = None


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    reference: str
    amount: int


class PaymentGateway(Protocol):
    def create_intent(self, *, amount: int, currency: str, idempotency_key: str) -> GatewayIntent:
        ...

    def confirm(self, *, intent_id: str, payment_method_id: Optional[str], idempotency_key: str) -> GatewayConfirmation:
        ...

    def refund(self, *, reference: str, amount: int, reason: str, idempotency_key: str) -> GatewayRefund:
        ...

    def close(self) -> None:
        ...


class MockPaymentGateway:
    """In-process stand-in for a card processor.

    Confirmation succeeds with probability ``success_rate``. Replaying a call with the same
    idempotency key returns the first answer instead of rolling again.
    """

    def __init__(self, success_rate: float = MOCK_SUCCESS_RATE, rng: Optional[random.Random] = None):
        self._lock = Lock()
        self._success_rate = success_rate
        self._rng = rng or random.Random()
        self._intents: Dict[str, GatewayIntent] = {}
        self._confirmations: Dict[str, GatewayConfirmation] = {}
        self._refunds: Dict[str, GatewayRefund] = {}

    def create_intent(self, *, amount: int, currency: str, idempotency_key: str) -> GatewayIntent:
        with self._lock:
            existing = self._intents.get(idempotency_key)
            if existing:
                return existing
            stamp = time_ns() // 1_000_000
            intent = GatewayIntent(
                id=f"pi_mock_{stamp}_{uuid4().hex[:6]}",
                client_secret=f"pi_mock_{stamp}_secret_{uuid4().hex[:9]}",
                amount=amount,
                currency=currency,
            )
            self._intents[idempotency_key] = intent
            return intent

    def confirm(self, *, intent_id: str, payment_method_id: Optional[str], idempotency_key: str) -> GatewayConfirmation:
        with self._lock:
            existing = self._confirmations.get(idempotency_key)
            if existing:
                return existing
            succeeded = self._rng.random() < self._success_rate
            confirmation = GatewayConfirmation(
                succeeded=succeeded,
                reference=intent_id,
                failure_code=None if succeeded else "mock_payment_failure",
            )
            self._confirmations[idempotency_key] = confirmation
            return confirmation

    def refund(self, *, reference: str, amount: int, reason: str, idempotency_key: str) -> GatewayRefund:
        with self._lock:
            existing = self._refunds.get(idempotency_key)
            if existing:
                return existing
            refund = GatewayRefund(id=f"re_mock_{uuid4().hex[:10]}", reference=reference, amount=amount)
            self._refunds[idempotency_key] = refund
            return refund

    def close(self) -> None:
        return None


class BoundedPaymentGateway:
    """Runs every call of ``inner`` on a worker thread and gives up after ``timeout_seconds``."""

    def __init__(self, inner: PaymentGateway, timeout_seconds: float = GATEWAY_TIMEOUT_SECONDS, max_workers: int = 4):
        self._inner = inner
        self._timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="payment-gateway")

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning("Payment gateway %s timed out after %.1fs", operation, self._timeout_seconds)
            raise PaymentGatewayTimeout(f"Payment gateway {operation} timed out") from exc

    def create_intent(self, *, amount: int, currency: str, idempotency_key: str) -> GatewayIntent:
        return self._call(
            "create_intent",
            lambda: self._inner.create_intent(amount=amount, currency=currency, idempotency_key=idempotency_key),
        )

    def confirm(self, *, intent_id: str, payment_method_id: Optional[str], idempotency_key: str) -> GatewayConfirmation:
        return self._call(
            "confirm",
            lambda: self._inner.confirm(
                intent_id=intent_id,
                payment_method_id=payment_method_id,
                idempotency_key=idempotency_key,
            ),
        )

    def refund(self, *, reference: str, amount: int, reason: str, idempotency_key: str) -> GatewayRefund:
        return self._call(
            "refund",
            lambda: self._inner.refund(
                reference=reference,
                amount=amount,
                reason=reason,
                idempotency_key=idempotency_key,
            ),
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._inner.close()
