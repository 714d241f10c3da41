"""
Billing service orchestrator.

Coordinates the user-facing billing operations:
- Checkout (new subscription or explicit upgrade)
- Customer portal
- Cancel / resume at period end
- Billing status

None of these change local subscription state. Stripe confirms every
change through a webhook, which the state machine applies.
"""
from typing import Any, Dict, Optional

from responsiai.core.config import CoreConfig
from responsiai.core.errors import (
    BillingDisabledError,
    ConflictError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from responsiai.features.billing.provider import BillingProvider, BillingProviderError
from responsiai.features.subscriptions.repository import SubscriptionRepository
from responsiai.models.plan import PLAN_DISPLAY_NAMES, PlanTier, monthly_limit, parse_tier
from responsiai.models.user import User


class BillingService:
    def __init__(self, config: CoreConfig, repository: SubscriptionRepository, provider: Optional[BillingProvider] = None):
        self.config = config
        self.repository = repository
        self.provider = provider

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.")
        return self.provider

    def _require_user(self, user_id: str) -> User:
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _customer_for(self, user: User) -> str:
        if user.external_customer_id:
            return user.external_customer_id
        return self._require_provider().ensure_customer(user.user_id, user.email, user.display_name)

    def start_checkout(
        self,
        user_id: str,
        plan: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> str:
        """
        Start a hosted checkout for `plan`.

        A user with an open subscription on a different plan gets an explicit
        upgrade checkout; the old subscription is canceled when the new
        one activates.

        Raises:
            BillingDisabledError: Stripe not configured
            ValidationError: unknown or unpriced plan
            ConflictError: already subscribed to this plan
        """
        provider = self._require_provider()
        tier = parse_tier(plan)
        if tier is None or tier == PlanTier.FREE:
            raise ValidationError(f"Invalid plan: {plan}")
        price_id = self.config.price_for_tier(tier.value)
        if not price_id:
            raise ValidationError(f"No Stripe price configured for plan: {tier.value}")

        user = self._require_user(user_id)
        current = self.repository.get_open_for_user(user_id)
        if current is not None and current.plan_tier == tier:
            raise ConflictError(f"Already subscribed to the {PLAN_DISPLAY_NAMES[tier]} plan")

        metadata = {"user_id": user_id, "plan": tier.value}
        if current is not None:
            metadata["upgrade"] = "true"

        app_url = self.config.app_url.rstrip("/")
        try:
            return provider.create_checkout_session(
                customer_id=self._customer_for(user),
                price_id=price_id,
                success_url=success_url or f"{app_url}/settings?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url or f"{app_url}/settings",
                client_reference_id=user_id,
                metadata=metadata,
            )
        except BillingProviderError as e:
            raise UpstreamError(str(e)) from e

    def start_portal(self, user_id: str, return_url: Optional[str] = None) -> str:
        provider = self._require_provider()
        user = self._require_user(user_id)
        if not user.external_customer_id:
            raise NotFoundError("Customer not found. Complete checkout first.")
        try:
            return provider.create_portal_session(
                user.external_customer_id,
                return_url or f"{self.config.app_url.rstrip('/')}/settings",
            )
        except BillingProviderError as e:
            raise UpstreamError(str(e)) from e

    def set_cancel_at_period_end(self, user_id: str, cancel: bool) -> None:
        """Ask Stripe to (un)schedule cancellation; the webhook updates local state."""
        provider = self._require_provider()
        self._require_user(user_id)
        current = self.repository.get_open_for_user(user_id)
        if current is None:
            raise NotFoundError("No active subscription")
        try:
            provider.set_cancel_at_period_end(current.external_subscription_id, cancel)
        except BillingProviderError as e:
            raise UpstreamError(str(e)) from e

    def get_status(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        current = self.repository.get_open_for_user(user_id)
        return {
            "enabled": self.config.billing_enabled,
            "plan_tier": user.plan_tier.value,
            "plan_name": PLAN_DISPLAY_NAMES[user.plan_tier],
            "monthly_limit": monthly_limit(user.plan_tier),
            "status": current.status.value if current else None,
            "period_end": current.current_period_end.isoformat() if current and current.current_period_end else None,
            "cancel_at_period_end": bool(current and current.cancel_at_period_end),
        }
