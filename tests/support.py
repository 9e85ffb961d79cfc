"""In-memory fakes and builders shared by the test modules."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from application.dtos.payments import (
    CanonicalTransaction,
    PaymentCreation,
    PaymentParams,
    RefundBatchResult,
    RefundParams,
    RefundTask,
    StuckTransactionRef,
    WebhookRequest,
)
from application.ports.fanout import OrderUpdateMessage
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.critical_event import CriticalEvent
from domain.order.entity import (
    Actor,
    ActorRole,
    DeliveryMethod,
    FinancialEvent,
    FinancialMethod,
    Financials,
    OnlineProvider,
    OnlineTransaction,
    OnlineTransactionStatus,
    Order,
    OrderStatus,
    TransactionType,
    new_event_id,
)
from domain.order.exceptions import ConcurrentOrderModificationException
from domain.order.ledger import recompute
from domain.order.repository import (
    CriticalEventRepository,
    CustomerRepository,
    OrderRepository,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ADMIN = Actor(name="alice", role=ActorRole.ADMIN)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


# ---- in-memory persistence ----

class InMemoryStore:
    def __init__(self):
        self.orders: dict[str, Order] = {}
        self.customers: dict[str, Decimal] = {}
        self.critical_events: list[CriticalEvent] = []
        self.fail_save_for: set[str] = set()
        self.commits = 0

    def put(self, order: Order) -> Order:
        self.orders[order.id] = order
        return order


class InMemoryOrderRepository(OrderRepository):
    def __init__(self, staged: dict[str, Order], store: InMemoryStore):
        self._staged = staged
        self._store = store

    async def add(self, order: Order) -> Order:
        self._staged[order.id] = order
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        return self._staged.get(order_id)

    async def get_for_update(self, order_id: str) -> Optional[Order]:
        return self._staged.get(order_id)

    async def save(self, order: Order) -> Order:
        if order.id in self._store.fail_save_for:
            raise RuntimeError(f"save failed for {order.id}")
        current = self._staged.get(order.id)
        if current is None or current.version != order.version:
            raise ConcurrentOrderModificationException(order.id, order.version)
        saved = replace(order, version=order.version + 1)
        self._staged[order.id] = saved
        return saved

    async def list_stuck_online_transactions(self, started_before: datetime) -> list[Order]:
        stuck = [
            o for o in self._staged.values()
            if o.online_transaction is not None
            and o.online_transaction.status == OnlineTransactionStatus.INIT
            and o.online_transaction.started_at <= started_before
        ]
        return sorted(stuck, key=lambda o: o.online_transaction.started_at)


class InMemoryCustomerRepository(CustomerRepository):
    def __init__(self, staged: dict[str, Decimal]):
        self._staged = staged

    async def add_total_spent(self, customer_id: str, delta: Decimal) -> bool:
        if customer_id not in self._staged:
            return False
        self._staged[customer_id] += delta
        return True


class InMemoryCriticalEventRepository(CriticalEventRepository):
    def __init__(self, staged: list[CriticalEvent]):
        self._staged = staged

    async def add(self, event: CriticalEvent) -> CriticalEvent:
        event.id = len(self._staged) + 1
        self._staged.append(event)
        return event

    async def list_unresolved(self, limit: int = 100) -> list[CriticalEvent]:
        return [e for e in self._staged if not e.resolved][:limit]


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """Stages a copy of the store; commit publishes it, rollback drops it."""

    def __init__(self, store: InMemoryStore):
        super().__init__()
        self._store = store

    async def __aenter__(self):
        self._orders = dict(self._store.orders)
        self._customers = dict(self._store.customers)
        self._critical = list(self._store.critical_events)
        self.orders = InMemoryOrderRepository(self._orders, self._store)
        self.customers = InMemoryCustomerRepository(self._customers)
        self.critical_events = InMemoryCriticalEventRepository(self._critical)
        return self

    async def commit(self) -> None:
        self._store.orders = self._orders
        self._store.customers = self._customers
        self._store.critical_events = self._critical
        self._store.commits += 1
        self._committed = True

    async def rollback(self) -> None:
        self._committed = False


# ---- collaborators ----

class RecordingFanout:
    def __init__(self):
        self.messages: list[OrderUpdateMessage] = []
        self.fail = False

    async def publish(self, message: OrderUpdateMessage) -> None:
        if self.fail:
            raise ConnectionError("fanout down")
        self.messages.append(message)

    async def aclose(self) -> None:
        return None

    def for_order(self, order_id: str) -> list[dict[str, Any]]:
        return [
            m.to_wire() for m in self.messages
            if m.order_update.order_id == order_id
        ]


class FakeProviderAdapter:
    """Scripted gateway: webhook payloads and listings are CanonicalTransaction fields."""

    provider = OnlineProvider.YOOKASSA

    def __init__(self):
        self.authentic = True
        self.creation = PaymentCreation(payment_id="pay-1", confirmation_url="https://pay.example/confirm")
        self.create_error: Optional[Exception] = None
        self.refund_results: Optional[RefundBatchResult] = None
        self.external: list[dict[str, Any]] = []
        self.fetch_error: Optional[Exception] = None
        self.created: list[PaymentParams] = []
        self.refund_calls: list[tuple[list[RefundTask], RefundParams]] = []
        self.fetch_calls: list[list[StuckTransactionRef]] = []
        self.closed = False
        self.on_create = None

    async def create_payment(self, params: PaymentParams) -> PaymentCreation:
        self.created.append(params)
        if self.on_create is not None:
            await self.on_create(params)
        if self.create_error is not None:
            raise self.create_error
        return self.creation

    async def create_refund(self, tasks: list[RefundTask], params: RefundParams) -> RefundBatchResult:
        self.refund_calls.append((tasks, params))
        if self.refund_results is not None:
            return self.refund_results
        return RefundBatchResult(refund_ids=[f"refund-{t.payment_id}" for t in tasks])

    def verify_webhook_authenticity(self, request: WebhookRequest) -> bool:
        return self.authentic

    def normalize_webhook(self, payload: dict[str, Any]) -> Optional[CanonicalTransaction]:
        tx = payload.get("transaction")
        if not isinstance(tx, dict):
            return None
        return CanonicalTransaction(provider=self.provider, **tx)

    async def fetch_external(self, stuck: list[StuckTransactionRef]) -> list[dict[str, Any]]:
        self.fetch_calls.append(stuck)
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.external)

    def normalize_external(self, raw: dict[str, Any]) -> CanonicalTransaction:
        return CanonicalTransaction(provider=self.provider, **raw)

    async def aclose(self) -> None:
        self.closed = True


# ---- builders ----

def build_order(
    order_id: str = "order-1",
    *,
    total: str = "10000",
    status: OrderStatus = OrderStatus.CONFIRMED,
    delivery: DeliveryMethod = DeliveryMethod.COURIER,
    events: tuple[FinancialEvent, ...] = (),
    online_tx: Optional[OnlineTransaction] = None,
    customer_id: Optional[str] = "customer-1",
) -> Order:
    order = Order(
        id=order_id,
        order_number=1001,
        delivery_method=delivery,
        total_amount=Decimal(total),
        customer_id=customer_id,
        current_status=status,
        financials=Financials(event_history=events, current_online_transaction=online_tx),
        created_at=NOW,
        updated_at=NOW,
    )
    return recompute(order)


def build_event(
    amount: str,
    *,
    tx_type: TransactionType = TransactionType.PAYMENT,
    method: FinancialMethod = FinancialMethod.CASH,
    transaction_id: Optional[str] = None,
    provider: Optional[str] = None,
    original_payment_id: Optional[str] = None,
    voided: bool = False,
) -> FinancialEvent:
    return FinancialEvent(
        id=new_event_id(),
        type=tx_type,
        method=method,
        amount=Decimal(amount),
        actor=ADMIN,
        created_at=NOW,
        provider=provider,
        transaction_id=transaction_id,
        original_payment_id=original_payment_id,
        voided=voided,
    )


def card_payment(amount: str, transaction_id: str) -> FinancialEvent:
    return build_event(
        amount,
        method=FinancialMethod.CARD_ONLINE,
        transaction_id=transaction_id,
        provider=OnlineProvider.YOOKASSA.value,
    )


def pending_tx(
    *ids: str,
    started_at: datetime = NOW,
    tx_type: TransactionType = TransactionType.PAYMENT,
    status: OnlineTransactionStatus = OnlineTransactionStatus.INIT,
) -> OnlineTransaction:
    return OnlineTransaction(
        type=tx_type,
        status=status,
        providers=(OnlineProvider.YOOKASSA,),
        started_at=started_at,
        transaction_ids=tuple(ids),
    )


