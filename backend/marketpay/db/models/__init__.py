"""Re-export all models so Base.metadata sees them."""

from marketpay.db.models.billing_profile import BillingProfile
from marketpay.db.models.payment_method import PaymentMethod
from marketpay.db.models.plan import Plan
from marketpay.db.models.processed_event import ProcessedEvent
from marketpay.db.models.subscription import Subscription
from marketpay.db.models.transaction import Transaction
from marketpay.db.models.unresolved_event import UnresolvedEvent

__all__ = [
    "BillingProfile",
    "PaymentMethod",
    "Plan",
    "ProcessedEvent",
    "Subscription",
    "Transaction",
    "UnresolvedEvent",
]
