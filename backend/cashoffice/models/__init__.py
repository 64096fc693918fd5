from .auth import User, SessionToken
from .registers import Register, Shift
from .ledger import Payment, Refund, CashMovement
from .closings import CashClosing, ClosingAdjustment
from .audit import AuditEvent

__all__ = [
    'User', 'SessionToken',
    'Register', 'Shift',
    'Payment', 'Refund', 'CashMovement',
    'CashClosing', 'ClosingAdjustment',
    'AuditEvent',
]
