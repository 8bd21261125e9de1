"""
Order Service — FastAPI エントリーポイント

購入 (validate-order) は Command、注文履歴・管理一覧は Query として分離。
価格と在庫フラグは特権接続 (service-role) でストアから読み直す。

  ┌──────────┐  Bearer + product_id  ┌───────────────┐   verify   ┌───────────────────┐
  │  Client  │ ────────────────────▶ │ Order Service │ ─────────▶ │ Identity Provider │
  │   App    │ ◀──────────────────── │               │            └───────────────────┘
  └──────────┘   order + receipt     │               │ ─────────▶  Relational Store
                                     │               │ ─────────▶  Redis (order_events)
                                     └───────────────┘
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config, errors, store
from .commands import OrderCommandHandler
from .identity import HttpIdentityVerifier, IdentityVerifier, bearer_token
from .logging_config import setup_logging
from .models import (
    CreateOrderResponse,
    Order,
    OrderStatus,
    UpdateStatusRequest,
    UpdateTrackingRequest,
)
from .publisher import RedisEventPublisher
from .queries import OrderQueries

logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    setup_logging(config.LOG_LEVEL)
    if config.INIT_SCHEMA:
        await store.create_schema(engine)
        logger.info("Applied schema.sql")
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)

# ブラウザから直接呼ばれるので preflight (OPTIONS) に応答する
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


# ── エラーレスポンス ─────────────────────────────


@app.exception_handler(errors.OrderError)
async def order_error_handler(request: Request, exc: errors.OrderError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    # 想定外の例外も {"error": ...} で返す。詳細はログにだけ残す
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500, content={"error": errors.InternalError.default_message}
    )


# ── Dependencies ─────────────────────────────────


def get_identity_verifier() -> IdentityVerifier:
    return HttpIdentityVerifier(config.AUTH_URL, config.AUTH_API_KEY, config.AUTH_TIMEOUT)


def get_commands(
    identity: IdentityVerifier = Depends(get_identity_verifier),
) -> OrderCommandHandler:
    return OrderCommandHandler(
        identity=identity,
        products=store.SqlProductRepository(async_session),
        orders=store.SqlOrderRepository(async_session),
        roles=store.SqlRoleRepository(async_session),
        publisher=RedisEventPublisher(redis_pool, config.ORDER_EVENTS_CHANNEL),
    )


def get_queries(
    identity: IdentityVerifier = Depends(get_identity_verifier),
) -> OrderQueries:
    return OrderQueries(
        identity=identity,
        orders=store.SqlOrderRepository(async_session),
        roles=store.SqlRoleRepository(async_session),
    )


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/functions/v1/validate-order", response_model=CreateOrderResponse)
async def validate_order(
    request: Request,
    authorization: str | None = Header(default=None),
    commands: OrderCommandHandler = Depends(get_commands),
):
    """購入コマンド: 価格を検証し、商品を予約して注文を作成する"""
    try:
        body = await request.json()
    except ValueError:
        # 認証より先に 400 を返さないよう、判定はハンドラに任せる
        body = None
    return await commands.create_order(bearer_token(authorization), body)


@app.post("/commands/orders/{order_id}/status", response_model=Order)
async def cmd_change_status(
    order_id: str,
    req: UpdateStatusRequest,
    authorization: str | None = Header(default=None),
    commands: OrderCommandHandler = Depends(get_commands),
):
    """注文ステータス変更コマンド (管理者)"""
    return await commands.change_status(bearer_token(authorization), order_id, req)


@app.post("/commands/orders/{order_id}/tracking", response_model=Order)
async def cmd_set_tracking(
    order_id: str,
    req: UpdateTrackingRequest,
    authorization: str | None = Header(default=None),
    commands: OrderCommandHandler = Depends(get_commands),
):
    """追跡番号の設定 (管理者)"""
    return await commands.set_tracking_number(
        bearer_token(authorization), order_id, req.tracking_number
    )


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders", response_model=list[Order])
async def query_my_orders(
    authorization: str | None = Header(default=None),
    queries: OrderQueries = Depends(get_queries),
):
    """自分の注文一覧"""
    return await queries.list_my_orders(bearer_token(authorization))


@app.get("/queries/orders/{order_id}", response_model=Order)
async def query_get_order(
    order_id: str,
    authorization: str | None = Header(default=None),
    queries: OrderQueries = Depends(get_queries),
):
    """注文詳細 (購入者・売り手・管理者のみ)"""
    return await queries.get_order(bearer_token(authorization), order_id)


@app.get("/admin/orders", response_model=list[Order])
async def admin_list_orders(
    status: OrderStatus | None = None,
    authorization: str | None = Header(default=None),
    queries: OrderQueries = Depends(get_queries),
):
    """全注文一覧 (管理者)"""
    return await queries.list_orders(bearer_token(authorization), status)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


def run() -> None:
    """`order-service` コマンドのエントリーポイント"""
    uvicorn.run(app, host=config.HOST, port=config.PORT)
