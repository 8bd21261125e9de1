"""
Order Service — エラー分類 (Failure Taxonomy)

呼び出し元に返すエラーはすべて OrderError のサブクラス。
HTTP 層は status_code と message だけを使って {"error": message} を返す。
ストレージの内部エラー文言は決して呼び出し元に渡さない。
"""


class OrderError(Exception):
    """呼び出し元に表示できるエラーの基底クラス"""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(OrderError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(OrderError):
    status_code = 403
    default_message = "Admin access required"


class InvalidArgument(OrderError):
    status_code = 400
    default_message = "Invalid request body"


class NotFound(OrderError):
    status_code = 404
    default_message = "Product not found"


class Unavailable(OrderError):
    status_code = 400
    default_message = "Product is no longer available"


class AlreadyReserved(OrderError):
    status_code = 400
    default_message = (
        "This product already has an active order. "
        "It can only be purchased after the current order is cancelled or delivered."
    )


class SelfPurchaseForbidden(OrderError):
    status_code = 400
    default_message = "You cannot purchase your own product"


class InvalidTransition(OrderError):
    status_code = 400
    default_message = "Invalid order status transition"


class InternalError(OrderError):
    status_code = 500
    default_message = "Internal server error"


# ── ストレージ層の例外 (呼び出し元には見せない) ──


class StorageError(Exception):
    """リポジトリ操作の失敗。コマンド層で InternalError に変換される。"""


class ActiveOrderExists(StorageError):
    """商品にアクティブな注文が既にある (部分ユニークインデックス違反)"""
