# 全モデルをインポート (Alembic autogenerate用)
from quicktools.models.user import User
from quicktools.models.stripe_customer import StripeCustomer
from quicktools.models.stripe_subscription import StripeSubscription
from quicktools.models.stripe_webhook_event import StripeWebhookEvent
from quicktools.models.pending_checkout import PendingCheckout

__all__ = [
    "User",
    "StripeCustomer",
    "StripeSubscription",
    "StripeWebhookEvent",
    "PendingCheckout",
]
