"""
Order Service — ストア (Relational Store リポジトリ)

products / orders / user_roles テーブルへの読み書き。
コマンド層は下の Protocol だけを知っており、テストではインメモリ実装に差し替える。

売り越し防止はアプリ側のチェックではなく、ここでのストレージ操作で保証する:
  - 商品の予約は「is_available = true の行だけを false にする」条件付き UPDATE
  - 注文テーブルの部分ユニークインデックスでアクティブ注文を商品ごとに 1 件に制限
  - ステータス変更は現在のステータスを条件にした compare-and-swap
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol

from sqlalchemy import DateTime, Numeric, bindparam, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .aggregate import ACTIVE_STATUSES
from .errors import ActiveOrderExists, StorageError
from .models import Order, OrderStatus, Product

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_ACTIVE = tuple(sorted(s.value for s in ACTIVE_STATUSES))

ORDER_COLUMNS = """
    id, receipt_number, buyer_id, seller_id, product_id, total_amount, status,
    shipping_address, buyer_phone, payment_method, created_at, updated_at,
    confirmed_at, confirmed_by, tracking_number, notes
"""


# ── Protocols ────────────────────────────────────


class ProductRepository(Protocol):
    async def get(self, product_id: str) -> Product | None: ...

    async def reserve(self, product_id: str) -> bool: ...

    async def release(self, product_id: str) -> bool: ...


class OrderRepository(Protocol):
    async def has_active_order(self, product_id: str) -> bool: ...

    async def insert(self, order: Order) -> Order: ...

    async def get(self, order_id: str) -> Order | None: ...

    async def list_for_buyer(self, buyer_id: str) -> list[Order]: ...

    async def list_all(self, status: OrderStatus | None = None) -> list[Order]: ...

    async def update_status(self, order: Order, expected_status: OrderStatus) -> Order | None: ...

    async def set_tracking_number(self, order_id: str, tracking_number: str) -> Order | None: ...


class RoleRepository(Protocol):
    async def has_role(self, user_id: str, role: str) -> bool: ...


# ── SQL 実装 ─────────────────────────────────────


class _SqlRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """1 呼び出し = 1 トランザクション。ドライバの例外は StorageError に包む。"""
        try:
            async with self.session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(f"{type(self).__name__}: {type(e).__name__}") from e


class SqlProductRepository(_SqlRepository):
    async def get(self, product_id: str) -> Product | None:
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT id, name, price, is_available, seller_id
                    FROM products
                    WHERE id = :id
                """),
                {"id": product_id},
            )
            row = result.fetchone()
        if not row:
            return None
        return Product.model_validate(dict(row._mapping))

    async def reserve(self, product_id: str) -> bool:
        """
        条件付き UPDATE で商品を予約する。

        同じ商品に対する同時リクエストのうち、is_available を true → false に
        書き換えられるのは 1 件だけ。負けた側は False を受け取る。
        """
        return await self._flip(product_id, expected=True)

    async def release(self, product_id: str) -> bool:
        """予約を解除する (補償トランザクション / キャンセル時)。"""
        return await self._flip(product_id, expected=False)

    async def _flip(self, product_id: str, expected: bool) -> bool:
        async with self._session() as session:
            result = await session.execute(
                text("""
                    UPDATE products
                    SET is_available = :target
                    WHERE id = :id AND is_available = :expected
                    RETURNING id
                """),
                {"id": product_id, "target": not expected, "expected": expected},
            )
            flipped = result.fetchone() is not None
            await session.commit()
        return flipped


class SqlOrderRepository(_SqlRepository):
    async def has_active_order(self, product_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT id FROM orders
                    WHERE product_id = :product_id AND status IN :statuses
                """).bindparams(bindparam("statuses", expanding=True)),
                {"product_id": product_id, "statuses": list(_ACTIVE)},
            )
            return result.first() is not None

    async def insert(self, order: Order) -> Order:
        """
        注文を INSERT する。

        部分ユニークインデックス orders_one_active_per_product に違反した場合は
        ActiveOrderExists を送出する。その他の失敗は StorageError。
        """
        stmt = text(f"""
            INSERT INTO orders ({ORDER_COLUMNS})
            VALUES
                (:id, :receipt_number, :buyer_id, :seller_id, :product_id, :total_amount,
                 :status, :shipping_address, :buyer_phone, :payment_method, :created_at,
                 :updated_at, :confirmed_at, :confirmed_by, :tracking_number, :notes)
        """).bindparams(
            bindparam("total_amount", type_=Numeric(12, 2)),
            bindparam("created_at", type_=DateTime(timezone=True)),
            bindparam("updated_at", type_=DateTime(timezone=True)),
            bindparam("confirmed_at", type_=DateTime(timezone=True)),
        )
        try:
            async with self.session_factory() as session:
                await session.execute(stmt, _order_params(order))
                await session.commit()
        except IntegrityError as e:
            if await self.has_active_order(order.product_id):
                raise ActiveOrderExists(order.product_id) from e
            raise StorageError("SqlOrderRepository: IntegrityError") from e
        except SQLAlchemyError as e:
            raise StorageError(f"SqlOrderRepository: {type(e).__name__}") from e
        return order

    async def get(self, order_id: str) -> Order | None:
        async with self._session() as session:
            result = await session.execute(
                text(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = :id"),
                {"id": order_id},
            )
            row = result.fetchone()
        return Order.model_validate(dict(row._mapping)) if row else None

    async def list_for_buyer(self, buyer_id: str) -> list[Order]:
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {ORDER_COLUMNS} FROM orders
                    WHERE buyer_id = :buyer_id
                    ORDER BY created_at DESC
                """),
                {"buyer_id": buyer_id},
            )
            return [Order.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def list_all(self, status: OrderStatus | None = None) -> list[Order]:
        async with self._session() as session:
            if status is None:
                result = await session.execute(
                    text(f"SELECT {ORDER_COLUMNS} FROM orders ORDER BY created_at DESC"),
                )
            else:
                result = await session.execute(
                    text(f"""
                        SELECT {ORDER_COLUMNS} FROM orders
                        WHERE status = :status
                        ORDER BY created_at DESC
                    """),
                    {"status": status.value},
                )
            return [Order.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def update_status(self, order: Order, expected_status: OrderStatus) -> Order | None:
        """
        ステータスを compare-and-swap で更新する。

        読み出し後に別の管理者がステータスを変えていた場合は None を返す。
        """
        stmt = text(f"""
            UPDATE orders
            SET status = :status, updated_at = :updated_at, confirmed_at = :confirmed_at,
                confirmed_by = :confirmed_by, tracking_number = :tracking_number, notes = :notes
            WHERE id = :id AND status = :expected_status
            RETURNING {ORDER_COLUMNS}
        """).bindparams(
            bindparam("updated_at", type_=DateTime(timezone=True)),
            bindparam("confirmed_at", type_=DateTime(timezone=True)),
        )
        async with self._session() as session:
            result = await session.execute(stmt, {
                "id": order.id,
                "status": order.status.value,
                "expected_status": expected_status.value,
                "updated_at": order.updated_at,
                "confirmed_at": order.confirmed_at,
                "confirmed_by": order.confirmed_by,
                "tracking_number": order.tracking_number,
                "notes": order.notes,
            })
            row = result.fetchone()
            await session.commit()
        return Order.model_validate(dict(row._mapping)) if row else None

    async def set_tracking_number(self, order_id: str, tracking_number: str) -> Order | None:
        """アクティブな注文にだけ追跡番号を設定する。"""
        stmt = text(f"""
            UPDATE orders
            SET tracking_number = :tracking_number
            WHERE id = :id AND status IN :statuses
            RETURNING {ORDER_COLUMNS}
        """).bindparams(bindparam("statuses", expanding=True))
        async with self._session() as session:
            result = await session.execute(stmt, {
                "id": order_id,
                "tracking_number": tracking_number,
                "statuses": list(_ACTIVE),
            })
            row = result.fetchone()
            await session.commit()
        return Order.model_validate(dict(row._mapping)) if row else None


class SqlRoleRepository(_SqlRepository):
    async def has_role(self, user_id: str, role: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                text("SELECT 1 FROM user_roles WHERE user_id = :user_id AND role = :role"),
                {"user_id": user_id, "role": role},
            )
            return result.first() is not None


def _order_params(order: Order) -> dict:
    return {
        "id": order.id,
        "receipt_number": order.receipt_number,
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "product_id": order.product_id,
        "total_amount": order.total_amount,
        "status": order.status.value,
        "shipping_address": order.shipping_address,
        "buyer_phone": order.buyer_phone,
        "payment_method": order.payment_method.value,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "confirmed_at": order.confirmed_at,
        "confirmed_by": order.confirmed_by,
        "tracking_number": order.tracking_number,
        "notes": order.notes,
    }


def _schema_statements() -> list[str]:
    statements = []
    for chunk in SCHEMA_PATH.read_text(encoding="utf-8").split(";"):
        lines = [line for line in chunk.splitlines() if not line.strip().startswith("--")]
        stmt = "\n".join(lines).strip()
        if stmt:
            statements.append(stmt)
    return statements


async def create_schema(engine: AsyncEngine) -> None:
    """schema.sql を適用する (IF NOT EXISTS なので何度実行してもよい)。"""
    async with engine.begin() as conn:
        for stmt in _schema_statements():
            await conn.execute(text(stmt))
