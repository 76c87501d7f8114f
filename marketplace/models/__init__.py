from marketplace.models.user import User, UserStats, Wallet
from marketplace.models.order import Cancellation, Delivery, ExtensionRequest, Order
from marketplace.models.intent import FinancialIntent
from marketplace.models.payment import Payment
from marketplace.models.deposit import Deposit
from marketplace.models.withdrawal import Withdrawal
from marketplace.models.wallet_ledger import WalletLedgerEntry
from marketplace.models.audit_log import AuditLog
from marketplace.models.catalog import Conversation, Gig, Job, PriceTier, Proposal

__all__ = [
    "User",
    "UserStats",
    "Wallet",
    "Order",
    "Delivery",
    "ExtensionRequest",
    "Cancellation",
    "FinancialIntent",
    "Payment",
    "Deposit",
    "Withdrawal",
    "WalletLedgerEntry",
    "AuditLog",
    "Gig",
    "PriceTier",
    "Job",
    "Proposal",
    "Conversation",
]
