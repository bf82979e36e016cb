from fastapi import APIRouter, HTTPException, Request, Response

from arang_chat.services import resolve_services

router = APIRouter()


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request) -> Response:
    services = resolve_services(request.app)
    if services is None or not services.metrics.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    services.metrics.set_feed_subscriptions(services.feed.active_count)
    payload, content_type = services.metrics.render()
    return Response(content=payload, media_type=content_type)
