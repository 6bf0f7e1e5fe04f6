from .orders import Order
from .payments import Payment, PaymentLineItem, PaymentTransaction, PaymentReminder, PaymentWebhookEvent
from .sequences import PaymentSequence
from .security import SecurityEvent

__all__ = [
    'Order',
    'Payment', 'PaymentLineItem', 'PaymentTransaction', 'PaymentReminder', 'PaymentWebhookEvent',
    'PaymentSequence',
    'SecurityEvent',
]
