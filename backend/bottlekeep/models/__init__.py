from .stores import Store, StoreSettings
from .deposits import Deposit, Withdrawal
from .transfers import Transfer, CentralDeposit
from .audit import AuditEntry

__all__ = [
    'Store', 'StoreSettings',
    'Deposit', 'Withdrawal',
    'Transfer', 'CentralDeposit',
    'AuditEntry',
]
