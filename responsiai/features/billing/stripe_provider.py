"""
Stripe-backed BillingProvider.

Every call passes the API key explicitly instead of setting the global
`stripe.api_key`, so tests and multiple providers can coexist in one
process. Webhook signatures are checked in verifier.py, not here.
"""
import logging
from typing import Callable, Dict, Optional, TypeVar

import stripe

from responsiai.features.billing.provider import BillingProviderError

logger = logging.getLogger("responsiai.billing.stripe")

T = TypeVar("T")


class StripeProvider:
    def __init__(self, secret_key: str):
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        self._api_key = secret_key

    def _call(self, operation: str, fn: Callable[..., T], *args, **kwargs) -> T:
        try:
            return fn(*args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            logger.warning(
                f"[billing] stripe {operation} failed: {e.user_message or e}",
                extra={"error_code": getattr(e, "code", None)},
            )
            raise BillingProviderError(f"Stripe {operation} failed: {e}") from e

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        found = self._call(
            "customer search",
            stripe.Customer.search,
            query=f"metadata['user_id']:'{user_id}'",
            limit=1,
        )
        if found.data:
            return found.data[0].id

        fields: Dict[str, object] = {"metadata": {"user_id": user_id}}
        if email:
            fields["email"] = email
        if name:
            fields["name"] = name
        customer = self._call(
            "customer create",
            stripe.Customer.create,
            idempotency_key=f"customer-{user_id}",
            **fields,
        )
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        meta = dict(metadata or {})
        session = self._call(
            "checkout session",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=client_reference_id,
            metadata=meta,
            # Later subscription.* events carry the same metadata
            subscription_data={"metadata": meta},
        )
        return session.url

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        self._call(
            "subscription update",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel,
        )
