"""
Order Service — クエリハンドラ (CQRS の Read 側)

注文履歴画面と管理画面のための読み取り。
どのクエリも呼び出し元を確定してから、見てよい注文だけを返す。
"""

import logging

from . import errors
from .commands import ADMIN_ROLE
from .errors import StorageError
from .identity import IdentityVerifier
from .models import Order, OrderStatus
from .store import OrderRepository, RoleRepository

logger = logging.getLogger(__name__)


class OrderQueries:
    def __init__(
        self,
        identity: IdentityVerifier,
        orders: OrderRepository,
        roles: RoleRepository,
    ) -> None:
        self.identity = identity
        self.orders = orders
        self.roles = roles

    async def list_my_orders(self, credential: str | None) -> list[Order]:
        """自分が購入した注文を新しい順に返す。"""
        user = await self.identity.verify(credential)
        try:
            return await self.orders.list_for_buyer(user.user_id)
        except StorageError:
            logger.exception("Failed to list orders of %s", user.user_id)
            raise errors.InternalError()

    async def get_order(self, credential: str | None, order_id: str) -> Order:
        """
        注文を 1 件返す。

        購入者・売り手・管理者以外には存在自体を見せない (NotFound)。
        """
        user = await self.identity.verify(credential)
        try:
            order = await self.orders.get(order_id)
            visible = order is not None and (
                user.user_id in (order.buyer_id, order.seller_id)
                or await self.roles.has_role(user.user_id, ADMIN_ROLE)
            )
        except StorageError:
            logger.exception("Failed to load order %s", order_id)
            raise errors.InternalError()
        if not visible:
            raise errors.NotFound("Order not found")
        return order

    async def list_orders(
        self,
        credential: str | None,
        status: OrderStatus | None = None,
    ) -> list[Order]:
        """管理画面用: 全注文 (ステータスで絞り込み可)"""
        user = await self.identity.verify(credential)
        try:
            is_admin = await self.roles.has_role(user.user_id, ADMIN_ROLE)
            if not is_admin:
                raise errors.Forbidden()
            return await self.orders.list_all(status)
        except StorageError:
            logger.exception("Failed to list orders")
            raise errors.InternalError()
