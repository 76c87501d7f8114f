"""Wires the services around one store, notifier, email sender and clock."""

from dataclasses import dataclass

from marketplace.core.clock import Clock, utcnow
from marketplace.core.config import get_settings
from marketplace.services.deposits import DepositService
from marketplace.services.dispatch import Dispatcher
from marketplace.services.mailer import EmailSender, get_email_sender
from marketplace.services.notifications import LogNotifier, Notifier
from marketplace.services.orders import OrderService
from marketplace.services.otp import OtpGate
from marketplace.services.payments import PaymentService
from marketplace.services.wallet import WalletService
from marketplace.services.withdrawals import WithdrawalService
from marketplace.storage.base import MarketStore, get_store

_DEFAULT = object()


@dataclass
class Services:
    store: MarketStore
    dispatcher: Dispatcher
    wallet: WalletService
    gate: OtpGate
    orders: OrderService
    payments: PaymentService
    deposits: DepositService
    withdrawals: WithdrawalService
    clock: Clock
    redis: object | None = None

    async def close(self) -> None:
        await self.dispatcher.drain()
        if self.redis is not None:
            await self.redis.aclose()
        await self.store.close()


def _redis_from_settings():
    url = get_settings().redis_url
    if not url:
        return None
    from redis.asyncio import Redis
    return Redis.from_url(url)


def build_services(
    store: MarketStore | None = None,
    notifier: Notifier | None = None,
    email_sender: EmailSender | None = None,
    clock: Clock = utcnow,
    redis=_DEFAULT,
) -> Services:
    store = store or get_store()
    if redis is _DEFAULT:
        redis = _redis_from_settings()
    dispatcher = Dispatcher(store, notifier or LogNotifier(), email_sender or get_email_sender())
    wallet = WalletService(store, clock)
    gate = OtpGate(store, dispatcher, clock, redis=redis)
    orders = OrderService(store, wallet, dispatcher, clock)
    return Services(
        store=store,
        dispatcher=dispatcher,
        wallet=wallet,
        gate=gate,
        orders=orders,
        payments=PaymentService(store, wallet, gate, orders, dispatcher),
        deposits=DepositService(store, wallet, gate, dispatcher),
        withdrawals=WithdrawalService(store, wallet, gate, dispatcher),
        clock=clock,
        redis=redis,
    )
