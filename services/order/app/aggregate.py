"""
Order Service — 注文集約 (Order Aggregate)

注文ステータスの状態遷移をここに集約する。
コマンド層は遷移の可否をこのクラスに問い合わせ、更新後の Order を受け取って
ストアに compare-and-swap で書き込む。

apply_xxx メソッド: 各遷移を適用した新しい Order を返す (元の Order は変更しない)
"""

from datetime import datetime

from .errors import InvalidTransition
from .models import Order, OrderStatus

# 商品を「予約中」にしている状態。商品ごとに高々 1 件しか存在できない。
ACTIVE_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.SHIPPED,
})

# 終端状態。ここから先の遷移はない。到達後は再購入が可能になる。
TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
})

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class OrderAggregate:
    """
    注文集約 — 状態遷移のルールを持つ。

    状態遷移:
        PENDING   → CONFIRMED → SHIPPED → DELIVERED
        PENDING   → CANCELLED
        CONFIRMED → CANCELLED
        SHIPPED   → CANCELLED
    """

    def __init__(self, order: Order) -> None:
        self.order = order

    @property
    def status(self) -> OrderStatus:
        return self.order.status

    @property
    def is_active(self) -> bool:
        return self.order.status in ACTIVE_STATUSES

    def can_transition(self, target: OrderStatus) -> bool:
        return target in TRANSITIONS[self.order.status]

    # ── 遷移適用メソッド ──────────────────────────

    def apply_confirmed(
        self, now: datetime, actor_id: str, notes: str | None, _tracking: str | None
    ) -> Order:
        return self.order.model_copy(update={
            "status": OrderStatus.CONFIRMED,
            "confirmed_at": now,
            "confirmed_by": actor_id,
            "notes": notes if notes is not None else self.order.notes,
            "updated_at": now,
        })

    def apply_shipped(
        self, now: datetime, _actor_id: str, notes: str | None, tracking: str | None
    ) -> Order:
        return self.order.model_copy(update={
            "status": OrderStatus.SHIPPED,
            "tracking_number": tracking or self.order.tracking_number,
            "notes": notes if notes is not None else self.order.notes,
            "updated_at": now,
        })

    def apply_delivered(
        self, now: datetime, _actor_id: str, notes: str | None, _tracking: str | None
    ) -> Order:
        return self.order.model_copy(update={
            "status": OrderStatus.DELIVERED,
            "notes": notes if notes is not None else self.order.notes,
            "updated_at": now,
        })

    def apply_cancelled(
        self, now: datetime, _actor_id: str, notes: str | None, _tracking: str | None
    ) -> Order:
        return self.order.model_copy(update={
            "status": OrderStatus.CANCELLED,
            "notes": notes if notes is not None else self.order.notes,
            "updated_at": now,
        })

    # ── 遷移の入口 ───────────────────────────────

    def transition(
        self,
        target: OrderStatus,
        now: datetime,
        actor_id: str,
        notes: str | None = None,
        tracking_number: str | None = None,
    ) -> Order:
        """遷移先に応じた apply メソッドを呼び出す。許可されない遷移は例外。"""
        if not self.can_transition(target):
            raise InvalidTransition(
                f"Cannot change order status from {self.status.value} to {target.value}"
            )
        handler = {
            OrderStatus.CONFIRMED: self.apply_confirmed,
            OrderStatus.SHIPPED: self.apply_shipped,
            OrderStatus.DELIVERED: self.apply_delivered,
            OrderStatus.CANCELLED: self.apply_cancelled,
        }[target]
        return handler(now, actor_id, notes, tracking_number)
