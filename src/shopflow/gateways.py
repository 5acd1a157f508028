"""Payment gateway adapters and their registry.

Each provider implements the PaymentGateway protocol. The two built-in
providers are simulations: charges succeed with a configurable probability
and everything else always succeeds.

Calls made through GatewayRegistry are bounded by a timeout; a provider that
doesn't answer in time surfaces as GatewayTimeoutError.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Protocol, TypeVar

from .errors import GatewayDeclinedError, GatewayTimeoutError, UnsupportedGatewayError
from .models import Order, _utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ChargeResult:
    transaction_id: str
    message: str


@dataclass
class RefundResult:
    refund_id: str
    amount: Decimal
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"refund_id": self.refund_id, "amount": str(self.amount), "message": self.message}


@dataclass
class TransactionStatus:
    transaction_id: str
    status: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "status": self.status,
            "updated_at": self.updated_at,
        }


@dataclass
class RefundStatus:
    refund_id: str
    status: str
    processed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "refund_id": self.refund_id,
            "status": self.status,
            "processed_at": self.processed_at,
        }


class PaymentGateway(Protocol):
    """Capabilities every payment provider offers."""

    name: str

    def charge(self, order: Order) -> ChargeResult:
        """Charge the order total.

        Raises:
            GatewayDeclinedError: If the provider refuses the charge.
        """
        ...

    def query_status(self, transaction_id: str) -> TransactionStatus:
        ...

    def cancel(self, transaction_id: str) -> None:
        """Void a transaction.

        Raises:
            GatewayError: If the provider can't cancel it.
        """
        ...

    def refund(self, transaction_id: str, amount: Decimal) -> RefundResult:
        """Refund part or all of a transaction.

        Raises:
            GatewayError: If the provider can't refund it.
        """
        ...

    def query_refund_status(self, refund_id: str) -> RefundStatus:
        ...


class SimulatedGateway:
    """Stand-in for a remote provider."""

    name = "simulated"
    label = "Simulated"
    transaction_prefix = "SIM"
    refund_prefix = "SIMR"
    settled_status = "COMPLETED"

    def __init__(
        self,
        success_rate: float = 0.9,
        rng: random.Random | None = None,
        latency: float = 0.0,
    ):
        """
        Initialize the simulated provider.

        Args:
            success_rate: Probability that a charge is accepted (0.0 to 1.0).
            rng: Random source; pass a seeded one for reproducible runs.
            latency: Seconds each call sleeps before answering.
        """
        self.success_rate = success_rate
        self._rng = rng or random.Random()
        self.latency = latency

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"

    def _wait(self) -> None:
        if self.latency:
            time.sleep(self.latency)

    def charge(self, order: Order) -> ChargeResult:
        logger.info("[%s] Charging order #%s amount %s", self.label, order.id, order.total)
        self._wait()

        if self._rng.random() >= self.success_rate:
            logger.warning("[%s] Charge for order #%s declined", self.label, order.id)
            raise GatewayDeclinedError(
                self.name, f"Payment with {self.label} was declined. Please try again."
            )
        return ChargeResult(
            transaction_id=self._new_id(self.transaction_prefix),
            message=f"Payment processed successfully through {self.label}",
        )

    def query_status(self, transaction_id: str) -> TransactionStatus:
        logger.info("[%s] Querying status of %s", self.label, transaction_id)
        self._wait()
        return TransactionStatus(
            transaction_id=transaction_id,
            status=self.settled_status,
            updated_at=_utc_now(),
        )

    def cancel(self, transaction_id: str) -> None:
        logger.info("[%s] Cancelling %s", self.label, transaction_id)
        self._wait()

    def refund(self, transaction_id: str, amount: Decimal) -> RefundResult:
        logger.info("[%s] Refunding %s on %s", self.label, amount, transaction_id)
        self._wait()
        return RefundResult(
            refund_id=self._new_id(self.refund_prefix),
            amount=amount,
            message=f"Refund processed successfully through {self.label}",
        )

    def query_refund_status(self, refund_id: str) -> RefundStatus:
        logger.info("[%s] Querying status of refund %s", self.label, refund_id)
        self._wait()
        return RefundStatus(
            refund_id=refund_id,
            status=self.settled_status,
            processed_at=_utc_now(),
        )


class PayPalGateway(SimulatedGateway):
    name = "paypal"
    label = "PayPal"
    transaction_prefix = "PP"
    refund_prefix = "PPR"
    settled_status = "COMPLETED"


class StripeGateway(SimulatedGateway):
    name = "stripe"
    label = "Stripe"
    transaction_prefix = "ST"
    refund_prefix = "STR"
    settled_status = "SUCCEEDED"


# Known providers, by name
_gateway_factories: dict[str, Callable[..., PaymentGateway]] = {}


def register_gateway(name: str, factory: Callable[..., PaymentGateway]) -> None:
    """Register a provider factory. Factories accept success_rate and rng keywords."""
    _gateway_factories[name.lower()] = factory


def known_gateways() -> list[str]:
    return sorted(_gateway_factories.keys())


register_gateway(PayPalGateway.name, PayPalGateway)
register_gateway(StripeGateway.name, StripeGateway)


class BoundedGateway:
    """Wraps a provider so each call gives up after timeout seconds."""

    def __init__(self, gateway: PaymentGateway, timeout: float, executor: ThreadPoolExecutor):
        self.gateway = gateway
        self.name = gateway.name
        self.timeout = timeout
        self._executor = executor

    def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            # Drop it if it is still queued behind other calls.
            future.cancel()
            logger.warning("[%s] %s timed out after %ss", self.name, operation, self.timeout)
            raise GatewayTimeoutError(self.name, self.timeout) from None

    def charge(self, order: Order) -> ChargeResult:
        return self._call("charge", self.gateway.charge, order)

    def query_status(self, transaction_id: str) -> TransactionStatus:
        return self._call("query_status", self.gateway.query_status, transaction_id)

    def cancel(self, transaction_id: str) -> None:
        return self._call("cancel", self.gateway.cancel, transaction_id)

    def refund(self, transaction_id: str, amount: Decimal) -> RefundResult:
        return self._call("refund", self.gateway.refund, transaction_id, amount)

    def query_refund_status(self, refund_id: str) -> RefundStatus:
        return self._call("query_refund_status", self.gateway.query_refund_status, refund_id)


class GatewayRegistry:
    """The providers configured for this process."""

    def __init__(
        self,
        gateways: dict[str, PaymentGateway],
        timeout: float = 5.0,
        max_workers: int = 8,
    ):
        """
        Initialize GatewayRegistry.

        Args:
            gateways: Provider instances keyed by configured name.
            timeout: Seconds allowed per provider call.
            max_workers: Threads available for in-flight provider calls.
        """
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gateway")
        self._gateways = {
            name.lower(): BoundedGateway(gw, timeout, self._executor)
            for name, gw in gateways.items()
        }

    @classmethod
    def from_names(
        cls,
        names: list[str],
        timeout: float = 5.0,
        success_rate: float = 0.9,
        rng: random.Random | None = None,
    ) -> "GatewayRegistry":
        """
        Build a registry from configured provider names.

        Raises:
            UnsupportedGatewayError: If a name has no registered provider.
        """
        gateways: dict[str, PaymentGateway] = {}
        for name in names:
            factory = _gateway_factories.get(name.lower())
            if factory is None:
                raise UnsupportedGatewayError(name, known_gateways())
            gateways[name.lower()] = factory(success_rate=success_rate, rng=rng)
        return cls(gateways, timeout=timeout)

    @property
    def names(self) -> list[str]:
        return sorted(self._gateways.keys())

    def supports(self, name: str) -> bool:
        return name.lower() in self._gateways

    def get(self, name: str) -> BoundedGateway:
        """
        Get a configured provider.

        Raises:
            UnsupportedGatewayError: If name isn't configured.
        """
        gateway = self._gateways.get(name.lower())
        if gateway is None:
            raise UnsupportedGatewayError(name, self.names)
        return gateway

    def close(self) -> None:
        # Don't wait on calls that already timed out.
        self._executor.shutdown(wait=False)
