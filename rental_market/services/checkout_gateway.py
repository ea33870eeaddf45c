from __future__ import annotations

import logging
import random
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

import requests

from rental_market.config import Config
from rental_market.errors import ExternalServiceError
from rental_market.observability import increment_counter, timed

T = TypeVar("T")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str
    amount_minor: int
    currency: str
    metadata: Dict[str, Any]


class CheckoutGateway(ABC):
    """Hosted-checkout provider contract."""

    @abstractmethod
    def create_session(
        self,
        *,
        amount: float,
        currency: str,
        description: str,
        customer_email: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        """Open a hosted checkout session for the given amount."""


class SimulatedCheckoutGateway(CheckoutGateway):
    """
    Stand-in for the hosted checkout provider.

    Upstream instability is simulated with PAYMENT_GATEWAY_FAILURE_PROBABILITY
    so the retry path of the payment-link flow stays exercised.
    """

    def __init__(self, config: type[Config] = Config) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.sessions: "OrderedDict[str, CheckoutSession]" = OrderedDict()

    def create_session(
        self,
        *,
        amount: float,
        currency: str,
        description: str,
        customer_email: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        if random.random() < self.config.PAYMENT_GATEWAY_FAILURE_PROBABILITY:
            raise RuntimeError("Payment processor timeout")

        session_id = f"cs_{uuid.uuid4().hex[:24]}"
        session = CheckoutSession(
            session_id=session_id,
            url=f"{self.config.PAYMENT_GATEWAY_BASE_URL.rstrip('/')}/{session_id}",
            # Providers take the smallest currency unit
            amount_minor=int(round(amount * 100)),
            currency=currency.lower(),
            metadata=dict(metadata),
        )
        self.sessions[session_id] = session
        while len(self.sessions) > self.config.SIMULATED_SESSION_LIMIT:
            self.sessions.popitem(last=False)
        self.logger.info(
            "Checkout session created",
            extra={"session_id": session_id, "description": description, "customer_email": customer_email},
        )
        return session


class HttpCheckoutGateway(CheckoutGateway):
    """Hosted checkout over the provider's REST API."""

    def __init__(self, config: type[Config] = Config, http: Optional[requests.Session] = None) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.http = http or requests.Session()

    def create_session(
        self,
        *,
        amount: float,
        currency: str,
        description: str,
        customer_email: str,
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        amount_minor = int(round(amount * 100))
        headers = {
            "Authorization": f"Bearer {self.config.PAYMENT_GATEWAY_API_KEY}",
            "Content-Type": "application/json",
        }
        body = {
            "mode": "payment",
            "amount": amount_minor,
            "currency": currency.lower(),
            "description": description,
            "customer_email": customer_email,
            "success_url": self.config.PAYMENT_SUCCESS_URL,
            "cancel_url": self.config.PAYMENT_CANCEL_URL,
            "metadata": metadata,
        }
        try:
            response = self.http.post(
                self.config.PAYMENT_GATEWAY_API_URL,
                json=body,
                headers=headers,
                timeout=self.config.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
            )
        except requests.Timeout:
            raise ExternalServiceError("Checkout provider timed out; please retry") from None
        except requests.RequestException as exc:
            raise ExternalServiceError("Checkout provider is unreachable; please retry") from exc

        if response.status_code >= 400:
            self.logger.error(
                "Checkout provider rejected session request",
                extra={"status_code": response.status_code},
            )
            raise ExternalServiceError(f"Checkout provider returned HTTP {response.status_code}")

        data = response.json()
        if not data.get("url") or not data.get("id"):
            raise ExternalServiceError("Checkout provider returned no payment URL")
        return CheckoutSession(
            session_id=str(data["id"]),
            url=str(data["url"]),
            amount_minor=amount_minor,
            currency=currency.lower(),
            metadata=dict(metadata),
        )


def build_gateway(config: type[Config] = Config) -> CheckoutGateway:
    if config.PAYMENT_GATEWAY_MODE == "http":
        return HttpCheckoutGateway(config)
    return SimulatedCheckoutGateway(config)


def call_with_timeout(func: Callable[[], T], timeout_seconds: float, operation: str) -> T:
    """Run a blocking provider call, converting timeouts and failures to ExternalServiceError."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=operation)
    future = executor.submit(func)
    try:
        with timed(f"{operation}_latency_ms"):
            return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        increment_counter("external_calls_failed_total", labels={"operation": operation, "reason": "timeout"})
        raise ExternalServiceError(f"{operation} timed out after {timeout_seconds:g}s; please retry") from None
    except ExternalServiceError:
        raise
    except Exception as exc:
        increment_counter("external_calls_failed_total", labels={"operation": operation, "reason": "error"})
        logging.getLogger(__name__).warning("%s failed: %s", operation, exc)
        raise ExternalServiceError(f"{operation} failed; please retry") from exc
    finally:
        # Do not block on a hung call
        executor.shutdown(wait=False)


def open_checkout_session(
    gateway: CheckoutGateway,
    *,
    amount: float,
    currency: str,
    description: str,
    customer_email: str,
    metadata: Dict[str, Any],
    timeout_seconds: Optional[float] = None,
) -> CheckoutSession:
    timeout = Config.PAYMENT_GATEWAY_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    return call_with_timeout(
        lambda: gateway.create_session(
            amount=amount,
            currency=currency,
            description=description,
            customer_email=customer_email,
            metadata=metadata,
        ),
        timeout,
        "checkout_session",
    )
