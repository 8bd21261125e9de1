"""
Order Service — コマンドハンドラ (CQRS の Write 側)

購入ボタン 1 回 = create_order 1 回。価格・在庫・売り手の情報は必ずストアから読み直し、
クライアントが送ってきた値は一切信用しない。

create_order の流れ:
  1. Bearer トークンからユーザーを確定
  2. リクエスト本文を検証 (数量は常に 1)
  3. 商品を読み出す (価格・在庫フラグ・売り手)
  4. 在庫なし / 自分の商品 / アクティブな注文あり なら早期に拒否
  5. 合計金額をストアの価格から計算
  6. 条件付き UPDATE で商品を予約 (同時購入の勝者はここで 1 件に決まる)
  7. 注文を INSERT
  8. INSERT が失敗したら予約を戻す (補償トランザクション)
  9. OrderCreated を発行
"""

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from . import errors
from .aggregate import ACTIVE_STATUSES, OrderAggregate
from .errors import ActiveOrderExists, StorageError
from .events import OrderCreated, OrderStatusChanged
from .identity import IdentityVerifier
from .models import (
    CreateOrderRequest,
    CreateOrderResponse,
    Identity,
    Order,
    OrderStatus,
    UpdateStatusRequest,
)
from .publisher import EventPublisher
from .store import OrderRepository, ProductRepository, RoleRepository

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
SINGLE_UNIT_MESSAGE = "Each product is single unit only. Quantity must be 1."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_receipt_number(now: datetime) -> str:
    """人間が読める受付番号: RCP-20261018-1A2B3C4D"""
    return f"RCP-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def parse_create_order(body: Any) -> CreateOrderRequest:
    """
    購入リクエスト本文を検証する。

    エラーはフィールドごとに固定の文言に変換する (数量 → 支払い方法 → 商品 ID の順)。
    """
    if not isinstance(body, dict):
        raise errors.InvalidArgument()
    try:
        request = CreateOrderRequest.model_validate(body)
    except ValidationError as e:
        fields = {err["loc"][0] for err in e.errors() if err["loc"]}
        if "quantity" in fields:
            raise errors.InvalidArgument(SINGLE_UNIT_MESSAGE) from e
        if "payment_method" in fields:
            raise errors.InvalidArgument("Invalid payment method") from e
        if "product_id" in fields:
            raise errors.InvalidArgument("product_id is required") from e
        raise errors.InvalidArgument() from e

    if request.quantity != 1:
        raise errors.InvalidArgument(SINGLE_UNIT_MESSAGE)
    return request


class OrderCommandHandler:
    """注文の作成とステータス変更"""

    def __init__(
        self,
        identity: IdentityVerifier,
        products: ProductRepository,
        orders: OrderRepository,
        roles: RoleRepository,
        publisher: EventPublisher,
        clock: Callable[[], datetime] = utcnow,
        receipt_numbers: Callable[[datetime], str] = new_receipt_number,
    ) -> None:
        self.identity = identity
        self.products = products
        self.orders = orders
        self.roles = roles
        self.publisher = publisher
        self.clock = clock
        self.receipt_numbers = receipt_numbers

    # ── 注文作成 ─────────────────────────────────

    async def create_order(self, credential: str | None, body: Any) -> CreateOrderResponse:
        user = await self.identity.verify(credential)
        request = parse_create_order(body)

        logger.info(
            "Validating order - User: %s, Product: %s, Quantity: %s, Payment: %s",
            user.user_id, request.product_id, request.quantity, request.payment_method.value,
        )

        # 価格はここで読んだ値だけを使う
        try:
            product = await self.products.get(request.product_id)
        except StorageError:
            logger.exception("Failed to load product %s", request.product_id)
            raise errors.InternalError("Failed to validate order")

        if product is None:
            logger.warning("Product not found: %s", request.product_id)
            raise errors.NotFound("Product not found")

        if not product.is_available:
            logger.warning("Product not available: %s", product.id)
            raise errors.Unavailable()

        if product.seller_id == user.user_id:
            logger.warning("User %s tried to buy own product %s", user.user_id, product.id)
            raise errors.SelfPurchaseForbidden()

        # 早期拒否のためのチェック。実際の保証は reserve と部分ユニークインデックス。
        try:
            has_active = await self.orders.has_active_order(product.id)
        except StorageError:
            logger.exception("Error checking existing orders for %s", product.id)
            raise errors.InternalError("Failed to validate order")
        if has_active:
            logger.warning("Product %s already has an active order", product.id)
            raise errors.AlreadyReserved()

        total_amount = product.price * request.quantity
        logger.info(
            "Calculated total: %s (price: %s x quantity: %s)",
            total_amount, product.price, request.quantity,
        )

        try:
            reserved = await self.products.reserve(product.id)
        except StorageError:
            logger.exception("Failed to reserve product %s", product.id)
            raise errors.InternalError("Failed to create order")
        if not reserved:
            # 読み出し後に別のリクエストが先に予約した
            logger.warning("Lost reservation race for product %s", product.id)
            raise errors.Unavailable()

        now = self.clock()
        order = Order(
            id=str(uuid4()),
            receipt_number=self.receipt_numbers(now),
            buyer_id=user.user_id,
            seller_id=product.seller_id,
            product_id=product.id,
            total_amount=total_amount,
            status=OrderStatus.PENDING,
            shipping_address=request.shipping_address,
            buyer_phone=request.buyer_phone,
            payment_method=request.payment_method,
            created_at=now,
            updated_at=now,
        )

        try:
            order = await self.orders.insert(order)
        except ActiveOrderExists:
            # この呼び出しで行った予約は戻し、呼び出し前の状態にする
            logger.warning("Active order appeared for product %s during insert", product.id)
            await self._compensate(product.id)
            raise errors.AlreadyReserved()
        except StorageError:
            logger.exception("Order creation failed for product %s", product.id)
            await self._compensate(product.id)
            raise errors.InternalError("Failed to create order")

        logger.info("Order created successfully: %s, Receipt: %s", order.id, order.receipt_number)

        await self.publisher.publish(OrderCreated(
            order_id=order.id,
            receipt_number=order.receipt_number,
            buyer_id=order.buyer_id,
            seller_id=order.seller_id,
            product_id=order.product_id,
            total_amount=order.total_amount,
            timestamp=now,
        ))

        return CreateOrderResponse(
            order=order,
            product_name=product.name,
            validated_price=product.price,
            validated_total=total_amount,
            receipt_number=order.receipt_number,
        )

    async def _compensate(self, product_id: str) -> None:
        """
        補償トランザクション: 予約した商品を販売可能に戻す。

        ここで失敗すると「注文がないのに販売不可」の商品が残る。
        手動での照合が必要なので CRITICAL で記録する。
        """
        try:
            released = await self.products.release(product_id)
        except StorageError:
            logger.critical(
                "STRANDED PRODUCT: failed to restore availability of %s after order insert failure",
                product_id,
                exc_info=True,
            )
            return
        if released:
            logger.info("Reverted availability of product %s", product_id)
        else:
            logger.warning("Product %s was not reserved when compensating", product_id)

    # ── ステータス変更 (管理者) ──────────────────

    async def change_status(
        self,
        credential: str | None,
        order_id: str,
        request: UpdateStatusRequest,
    ) -> Order:
        """
        注文ステータスを進める。

        キャンセルに到達したら商品を販売可能に戻す。配達完了は売却済みなので戻さない。
        """
        admin = await self._require_admin(credential)
        order = await self._load_order(order_id)

        now = self.clock()
        updated = OrderAggregate(order).transition(
            request.status,
            now=now,
            actor_id=admin.user_id,
            notes=request.notes,
            tracking_number=request.tracking_number,
        )

        try:
            saved = await self.orders.update_status(updated, expected_status=order.status)
        except StorageError:
            logger.exception("Failed to update status of order %s", order_id)
            raise errors.InternalError("Failed to update order")
        if saved is None:
            logger.warning("Order %s changed concurrently; expected %s", order_id, order.status.value)
            raise errors.InvalidTransition("Order status was changed by another request")

        logger.info(
            "Order %s: %s -> %s by %s",
            order_id, order.status.value, saved.status.value, admin.user_id,
        )

        released = False
        if saved.status is OrderStatus.CANCELLED:
            released = await self._release_cancelled(saved)

        await self.publisher.publish(OrderStatusChanged(
            order_id=saved.id,
            product_id=saved.product_id,
            from_status=order.status.value,
            to_status=saved.status.value,
            actor_id=admin.user_id,
            product_released=released,
            timestamp=now,
        ))
        return saved

    async def _release_cancelled(self, order: Order) -> bool:
        try:
            released = await self.products.release(order.product_id)
        except StorageError:
            logger.critical(
                "STRANDED PRODUCT: failed to restore availability of %s after cancelling order %s",
                order.product_id, order.id,
                exc_info=True,
            )
            return False
        if released:
            logger.info("Product %s is available again", order.product_id)
        return released

    async def set_tracking_number(
        self,
        credential: str | None,
        order_id: str,
        tracking_number: str,
    ) -> Order:
        await self._require_admin(credential)
        order = await self._load_order(order_id)
        if order.status not in ACTIVE_STATUSES:
            raise errors.InvalidTransition(
                f"Cannot set tracking number on a {order.status.value} order"
            )

        try:
            saved = await self.orders.set_tracking_number(order_id, tracking_number)
        except StorageError:
            logger.exception("Failed to set tracking number of order %s", order_id)
            raise errors.InternalError("Failed to update order")
        if saved is None:
            raise errors.InvalidTransition("Order status was changed by another request")
        return saved

    # ── helpers ─────────────────────────────────

    async def _require_admin(self, credential: str | None) -> Identity:
        user = await self.identity.verify(credential)
        try:
            is_admin = await self.roles.has_role(user.user_id, ADMIN_ROLE)
        except StorageError:
            logger.exception("Failed to load roles of %s", user.user_id)
            raise errors.InternalError()
        if not is_admin:
            logger.warning("User %s is not an admin", user.user_id)
            raise errors.Forbidden()
        return user

    async def _load_order(self, order_id: str) -> Order:
        try:
            order = await self.orders.get(order_id)
        except StorageError:
            logger.exception("Failed to load order %s", order_id)
            raise errors.InternalError()
        if order is None:
            raise errors.NotFound("Order not found")
        return order
