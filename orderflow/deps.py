"""Composition root: builds the collaborators once per process."""
from __future__ import annotations

from functools import lru_cache

from .db.orders_store import OrderRepository
from .services.catalog import PostgresCatalog
from .services.mailer import Mailer
from .services.notifications import AdminAlerter, NotificationDispatcher
from .services.payments import StripeGateway
from .services.settlement import SettlementOrchestrator
from .settings import settings


@lru_cache
def get_repository() -> OrderRepository:
    return OrderRepository()


@lru_cache
def get_notifier() -> NotificationDispatcher:
    mailer = Mailer(
        api_key=settings.mail_api_key,
        sender=settings.mail_from,
        api_base=settings.mail_api_base,
        timeout=settings.notify_timeout_seconds,
    )
    alerter = AdminAlerter(
        webhook_url=settings.admin_alert_webhook_url,
        timeout=settings.notify_timeout_seconds,
    )
    return NotificationDispatcher(mailer, alerter, admin_orders_url=settings.admin_orders_url)


@lru_cache
def get_gateway() -> StripeGateway:
    return StripeGateway(settings.stripe_secret_key, timeout=settings.gateway_timeout_seconds)


@lru_cache
def get_orchestrator() -> SettlementOrchestrator:
    return SettlementOrchestrator(
        gateway=get_gateway(),
        repository=get_repository(),
        notifier=get_notifier(),
        catalog=PostgresCatalog(),
        tax_rate=settings.tax_rate,
        max_amount=settings.max_charge_amount,
        amount_tolerance=settings.amount_tolerance,
        persist_timeout=settings.persist_timeout_seconds,
        persist_retry_backoff=settings.persist_retry_backoff_seconds,
        order_number_prefix=settings.order_number_prefix,
        order_number_length=settings.order_number_length,
    )
