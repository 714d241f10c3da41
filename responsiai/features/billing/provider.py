"""
What the billing core needs from a payment processor.

Sessions and cancel-at-period-end toggling happen on the processor's side;
none of these calls touch local state. The webhook that follows does.
"""
from typing import Dict, Optional, Protocol


class BillingProviderError(Exception):
    """Processor call failed (network, auth, or rejected request)."""


class BillingProvider(Protocol):
    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Processor customer id for user_id, created on first use."""
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Hosted checkout URL for a one-seat subscription to price_id."""
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> None:
        ...
