from .results import OperationResult
from .notification_service import NotificationService
from .notification_dispatcher import NotificationDispatcher, OutboundEmail
from .payment_service import PaymentService
from .purchase_email_service import PurchaseEmailService
from .purchase_service import PurchaseService
from .webhook_service import WebhookService
from .commit_service import CommitService
from .commit_workflow import CommitWorkflow
from .delivery_service import DeliveryService
from .mail_queue_service import MailQueueProcessor
from .payout_service import PayoutService
from .commitment_service import CommitmentService

__all__ = [
    "OperationResult",
    "NotificationService",
    "NotificationDispatcher",
    "OutboundEmail",
    "PaymentService",
    "PurchaseEmailService",
    "PurchaseService",
    "WebhookService",
    "CommitService",
    "CommitWorkflow",
    "DeliveryService",
    "MailQueueProcessor",
    # Deprecated adapter over the order state machine
    "CommitmentService",
    "PayoutService",
]
