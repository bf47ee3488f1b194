"""Payment ledger models, settings and collaborator protocols.

Services live in their own modules (``ledger``, ``gateway``,
``notifications``) and are imported from there.
"""

from .cache import DeliveryCache, InMemoryDeliveryCache
from .config import (
    BillingConfig,
    EmailSettings,
    MailTransport,
    RenewalMode,
    load_billing_config,
    load_email_settings,
)
from .models import (
    BillingContact,
    BillingNotification,
    ConfirmationResult,
    GatewayInvoice,
    NotificationTemplate,
    Payment,
    PaymentClaim,
    PaymentStatus,
)
from .protocols import BillingNotifier, BillingRepository, PaymentGateway

__all__ = [
    "BillingConfig",
    "BillingContact",
    "BillingNotification",
    "BillingNotifier",
    "BillingRepository",
    "ConfirmationResult",
    "DeliveryCache",
    "EmailSettings",
    "GatewayInvoice",
    "InMemoryDeliveryCache",
    "MailTransport",
    "NotificationTemplate",
    "Payment",
    "PaymentClaim",
    "PaymentGateway",
    "PaymentStatus",
    "RenewalMode",
    "load_billing_config",
    "load_email_settings",
]
