from __future__ import annotations

import logging
from dataclasses import dataclass

import stripe

from app.aideplus.errors import ServiceUnavailable

logger = logging.getLogger(__name__)


class PaymentProvider:
    def cancel(self, subscription_ref: str, *, at_period_end: bool) -> None:
        raise NotImplementedError

    def resume(self, subscription_ref: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class StripePaymentProvider(PaymentProvider):
    secret_key: str

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=self.secret_key, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", what, e)
            raise ServiceUnavailable("Payment provider unavailable.") from e

    def cancel(self, subscription_ref: str, *, at_period_end: bool) -> None:
        if at_period_end:
            self._call("cancel_at_period_end", stripe.Subscription.modify, subscription_ref, cancel_at_period_end=True)
        else:
            self._call("cancel", stripe.Subscription.cancel, subscription_ref)
        logger.info("Stripe subscription cancel ref=%s at_period_end=%s", subscription_ref, at_period_end)

    def resume(self, subscription_ref: str) -> None:
        self._call("resume", stripe.Subscription.modify, subscription_ref, cancel_at_period_end=False)
        logger.info("Stripe subscription resumed ref=%s", subscription_ref)


def payment_provider_from_config(config: dict) -> PaymentProvider | None:
    """None when Stripe is not configured: cancellations then only change local state."""
    key = (config.get("STRIPE_SECRET_KEY") or "").strip()
    if not key:
        return None
    stripe.max_network_retries = 2
    return StripePaymentProvider(secret_key=key)
