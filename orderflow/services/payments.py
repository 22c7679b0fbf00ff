from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol

import stripe

from ..errors import GatewayUnavailable, PaymentDeclined
from ..schemas.orders import ChargeResult
from ..settings import settings

logger = logging.getLogger(__name__)

# PaymentIntent.status -> ChargeResult.status
_STATUS_MAP = {
    "succeeded": "completed",
    "requires_payment_method": "failed",
    "canceled": "failed",
}


def mask_token(token: Optional[str]) -> str:
    """Never log a payment token in full."""
    if not token:
        return "<empty>"
    if len(token) <= 10:
        return token[:2] + "..."
    return token[:10] + "..."


class PaymentGateway(Protocol):
    provider: str

    async def charge(self, source_token: str, amount_minor: int, currency: str,
                     idempotency_key: str) -> ChargeResult: ...


class StripeGateway:
    """
    Settles one charge as a confirmed Stripe PaymentIntent.

    The StripeClient is owned by this instance (no module-level api_key), so
    tests can pass their own `client_factory` and a rotated secret can be
    applied with `refresh()`.
    """

    provider = "stripe"

    def __init__(
        self,
        api_key: Optional[str],
        *,
        timeout: float = 30.0,
        max_network_retries: int = 2,
        client_factory: Callable[..., Any] = stripe.StripeClient,
    ):
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set in environment")
        self.timeout = timeout
        self._max_network_retries = max_network_retries
        self._client_factory = client_factory
        self._client = self._build_client(api_key)

    def _build_client(self, api_key: str):
        return self._client_factory(api_key, max_network_retries=self._max_network_retries)

    def refresh(self, api_key: str) -> None:
        """Swap in a new secret key; in-flight charges keep the old client."""
        self._client = self._build_client(api_key)
        logger.info("stripe client rebuilt with rotated credentials")

    def _create_intent(self, source_token: str, amount_minor: int, currency: str,
                       idempotency_key: str):
        # Stripe replays the first response for a repeated idempotency key,
        # so a retried submission cannot charge twice.
        return self._client.v1.payment_intents.create(
            params={
                "amount": amount_minor,
                "currency": currency.lower(),
                "payment_method": source_token,
                "confirm": True,
                "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
                "expand": ["latest_charge"],
                "metadata": {"idempotency_key": idempotency_key},
            },
            options={"idempotency_key": idempotency_key},
        )

    async def charge(self, source_token: str, amount_minor: int, currency: str,
                     idempotency_key: str) -> ChargeResult:
        log_ctx = {
            "source": mask_token(source_token),
            "amount_minor": amount_minor,
            "currency": currency,
            "idempotency_key": idempotency_key,
        }
        logger.info("charging card", extra=log_ctx)

        try:
            intent = await asyncio.wait_for(
                asyncio.to_thread(
                    self._create_intent, source_token, amount_minor, currency, idempotency_key
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("stripe call timed out after %.1fs", self.timeout, extra=log_ctx)
            raise GatewayUnavailable("payment gateway timed out") from exc
        except stripe.CardError as exc:
            logger.info("card declined: %s", exc.code, extra=log_ctx)
            raise PaymentDeclined(exc.user_message or "card was declined",
                                  gateway_status=exc.code) from exc
        except stripe.InvalidRequestError as exc:
            if exc.param == "payment_method":
                logger.info("payment method rejected: %s", exc.code, extra=log_ctx)
                raise PaymentDeclined("payment details were rejected",
                                      gateway_status=exc.code) from exc
            logger.error("stripe rejected the request: %s", exc, extra=log_ctx)
            raise GatewayUnavailable("payment gateway rejected the request") from exc
        except stripe.StripeError as exc:
            logger.error("stripe unavailable: %s", exc, extra=log_ctx)
            raise GatewayUnavailable("payment gateway unavailable") from exc

        result = _to_charge_result(intent)
        if result.status != "completed":
            logger.info("charge did not complete: %s", result.raw_status,
                        extra={**log_ctx, "payment_id": result.payment_id})
            raise PaymentDeclined(
                f"payment not completed ({result.raw_status})",
                payment_id=result.payment_id,
                gateway_status=result.raw_status,
            )
        if result.amount_minor != amount_minor:
            logger.warning("settled amount %s differs from requested %s",
                           result.amount_minor, amount_minor,
                           extra={**log_ctx, "payment_id": result.payment_id})
        logger.info("charge completed", extra={**log_ctx, "payment_id": result.payment_id})
        return result


def _to_charge_result(intent) -> ChargeResult:
    raw_status = intent["status"]
    charge = intent.get("latest_charge")
    receipt = None
    if charge is not None and not isinstance(charge, str):
        receipt = charge.get("receipt_url")
    return ChargeResult(
        payment_id=intent["id"],
        status=_STATUS_MAP.get(raw_status, "other"),
        receipt_reference=receipt,
        amount_minor=int(intent.get("amount_received") or 0),
        currency=str(intent.get("currency") or "").upper(),
        raw_status=raw_status,
    )


def public_config() -> Dict[str, Any]:
    """What the browser needs to tokenize a card."""
    return {
        "provider": StripeGateway.provider,
        "publishableKey": settings.stripe_publishable_key,
        "environment": settings.payment_environment,
        "currency": settings.default_currency,
    }
