import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from arang_chat.infra.change_feed import RedisChangeFeed
from arang_chat.infra.query import Order
from arang_chat.infra.redis import redis_reachable
from arang_chat.services import AppServices, resolve_services

router = APIRouter()
logger = logging.getLogger(__name__)

_PROBE_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _check_store(services: AppServices) -> Dict[str, Any]:
    try:
        await asyncio.wait_for(
            services.gateway.find("chat_sessions", order=Order("created_at"), limit=1),
            timeout=_PROBE_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        return {"ok": False, "message": "store check timed out"}
    except Exception as exc:  # noqa: BLE001
        logger.debug("store_check_failed", exc_info=exc)
        return {"ok": False, "message": "store check failed", "error": type(exc).__name__}
    return {"ok": True, "message": "store reachable", "gateway": type(services.gateway).__name__}


async def _check_feed(services: AppServices) -> Dict[str, Any]:
    feed = services.feed
    result: Dict[str, Any] = {"ok": True, "feed": type(feed).__name__, "subscriptions": feed.active_count}
    if isinstance(feed, RedisChangeFeed):
        try:
            result["ok"] = await asyncio.wait_for(redis_reachable(feed.client), timeout=_PROBE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            result["ok"] = False
        if not result["ok"]:
            result["message"] = "redis unreachable"
    return result


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    services = resolve_services(request.app)
    if services is None:
        return JSONResponse(status_code=503, content={"status": "not_ready", "store": {"message": "services unavailable"}})

    store, feed = await asyncio.gather(_check_store(services), _check_feed(services))
    store_ok, feed_ok = store.pop("ok"), feed.pop("ok")
    ready = store_ok and feed_ok
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ok" if ready else "not_ready",
            "store": store,
            "change_feed": feed,
            # Informational only: an open circuit degrades alerts, not chat.
            "notifications": services.notifier.circuit_states(),
        },
    )
