import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, WebSocket, status
from starlette.websockets import WebSocketDisconnect

from arang_chat.api.chat_socket import ChatSocket
from arang_chat.api.problem_details import problem_payload
from arang_chat.dependencies import get_services, require_admin, require_customer, resolve_current_user
from arang_chat.domain.errors import DomainError
from arang_chat.domain.support_chat.errors import NoActiveSession
from arang_chat.domain.support_chat.schemas import (
    ChatRole,
    ChatRoomSnapshot,
    ChatSessionRecord,
    ChatUserSummary,
    ConnectionState,
    DisplayMessage,
    InboxResponse,
    MarkAllReadResponse,
    MarkReadRequest,
    MarkReadResponse,
    SendMessageRequest,
)
from arang_chat.infra.identity import CurrentUser
from arang_chat.services import AppServices, resolve_services

logger = logging.getLogger(__name__)

router = APIRouter()


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _error_event(websocket: WebSocket, exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, DomainError):
        payload = problem_payload(websocket, status=exc.status_code, title=exc.title, detail=exc.detail, type_=exc.type)
    else:
        payload = problem_payload(websocket, status=422, title="Validation Error", detail=str(exc))
    return {"type": "error", **payload}


# Customer chat


@router.get("/v1/chat/messages", response_model=ChatRoomSnapshot)
async def customer_history(
    user: CurrentUser = Depends(require_customer),
    services: AppServices = Depends(get_services),
) -> ChatRoomSnapshot:
    async with services.chat_room(user) as room:
        return await room.open()


@router.post("/v1/chat/messages", response_model=DisplayMessage, status_code=status.HTTP_201_CREATED)
async def customer_send(
    payload: SendMessageRequest,
    user: CurrentUser = Depends(require_customer),
    services: AppServices = Depends(get_services),
) -> DisplayMessage:
    async with services.chat_room(user) as room:
        await room.open()
        message = await room.send(payload.content, payload.pinned_order_id)
        await room.wait_side_effects()
    logger.info("chat_message_sent", extra={"extra": {"session_id": message.session_id, "sender_type": "customer"}})
    return message


# Admin inbox. Registered before the per-customer routes so "inbox" is never
# taken for a customer id.


@router.get("/v1/admin/chat/inbox", response_model=InboxResponse)
async def admin_inbox(
    q: str | None = Query(None, max_length=200),
    user: CurrentUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> InboxResponse:
    inbox = services.inbox(user)
    await inbox.refresh()
    return InboxResponse(items=inbox.search(q), new_message_count=inbox.new_message_count)


@router.post("/v1/admin/chat/inbox/read-all", response_model=MarkAllReadResponse)
async def admin_mark_all_read(
    user: CurrentUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> MarkAllReadResponse:
    updated = await services.inbox(user).mark_all_as_read(user)
    return MarkAllReadResponse(updated=updated)


@router.post("/v1/admin/chat/inbox/{customer_id}/read", response_model=MarkReadResponse)
async def admin_mark_read(
    customer_id: str,
    payload: MarkReadRequest,
    user: CurrentUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> MarkReadResponse:
    updated = await services.inbox(user).mark_as_read(customer_id, payload.message_id)
    return MarkReadResponse(updated=updated)


@router.websocket("/v1/admin/chat/inbox/ws")
async def admin_inbox_socket(websocket: WebSocket) -> None:
    user = await _accept(websocket, ChatRole.admin)
    if user is None:
        return
    services = resolve_services(websocket.app)
    search: Dict[str, str | None] = {"q": None}

    async with ChatSocket(websocket) as socket:
        inbox = None

        def publish(_items: List[ChatUserSummary] | None = None) -> None:
            socket.push(
                {
                    "type": "inbox",
                    "items": [_dump(item) for item in inbox.search(search["q"])],
                    "newMessageCount": inbox.new_message_count,
                }
            )

        def alert(row: Dict[str, Any]) -> None:
            socket.push({"type": "alert", "messageId": row.get("id"), "sessionId": row.get("session_id")})

        inbox = services.inbox(user, on_change=publish, on_alert=alert)
        try:
            await inbox.start()
            while True:
                command = await websocket.receive_json()
                kind = command.get("type")
                if kind == "search":
                    search["q"] = command.get("q")
                    publish()
                elif kind == "mark_read":
                    updated = await inbox.mark_as_read(command.get("customerId", ""), command.get("messageId", ""))
                    socket.push({"type": "mark_read", "updated": updated})
                elif kind == "mark_all_read":
                    updated = await inbox.mark_all_as_read(user)
                    socket.push({"type": "mark_all_read", "updated": updated})
                elif kind == "refresh":
                    await inbox.refresh()
                else:
                    socket.push(_error_event(websocket, ValueError(f"unknown command {kind!r}")))
        except WebSocketDisconnect:
            logger.debug("chat_inbox_socket_disconnected")
        finally:
            inbox.stop()


# Admin conversation


@router.get("/v1/admin/chat/{customer_id}/messages", response_model=ChatRoomSnapshot)
async def admin_history(
    customer_id: str,
    user: CurrentUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> ChatRoomSnapshot:
    async with services.chat_room(user) as room:
        return await room.open(customer_id)


@router.post(
    "/v1/admin/chat/{customer_id}/messages",
    response_model=DisplayMessage,
    status_code=status.HTTP_201_CREATED,
)
async def admin_send(
    customer_id: str,
    payload: SendMessageRequest,
    user: CurrentUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> DisplayMessage:
    async with services.chat_room(user) as room:
        await room.open(customer_id)
        message = await room.send(payload.content, payload.pinned_order_id)
        await room.wait_side_effects()
    logger.info("chat_message_sent", extra={"extra": {"session_id": message.session_id, "sender_type": "admin"}})
    return message


@router.post("/v1/admin/chat/{customer_id}/close", response_model=ChatSessionRecord)
async def admin_close_session(
    customer_id: str,
    user: CurrentUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> ChatSessionRecord:
    session = await services.resolver.live_session(customer_id)
    if session is None:
        raise NoActiveSession()
    closed = await services.resolver.close_session(session.id)
    if closed is None:
        raise NoActiveSession()
    logger.info("chat_session_closed_by_admin", extra={"extra": {"session_id": closed.id, "admin_id": user.id}})
    return closed


# Live rooms


@router.websocket("/v1/chat/ws")
async def customer_chat_socket(websocket: WebSocket) -> None:
    user = await _accept(websocket, ChatRole.customer)
    if user is None:
        return
    await _run_room(websocket, user, partner_id=None)


@router.websocket("/v1/admin/chat/{customer_id}/ws")
async def admin_chat_socket(websocket: WebSocket, customer_id: str) -> None:
    user = await _accept(websocket, ChatRole.admin)
    if user is None:
        return
    await _run_room(websocket, user, partner_id=customer_id)


async def _accept(websocket: WebSocket, role: ChatRole) -> CurrentUser | None:
    services = resolve_services(websocket.app)
    user = await resolve_current_user(websocket, services) if services is not None else None
    if user is None or user.role is not role:
        logger.info("chat_socket_rejected", extra={"extra": {"expected_role": role.value}})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    await websocket.accept()
    return user


async def _run_room(websocket: WebSocket, user: CurrentUser, *, partner_id: str | None) -> None:
    services = resolve_services(websocket.app)
    async with ChatSocket(websocket) as socket:
        room = None

        def on_change(messages: List[DisplayMessage]) -> None:
            if room.connection_state is ConnectionState.ready:
                socket.push({"type": "messages", "messages": [_dump(message) for message in messages]})

        room = services.chat_room(
            user,
            on_change=on_change,
            on_alert=lambda message: socket.push({"type": "alert", "message": _dump(message)}),
            on_connectivity_error=lambda error: socket.push(
                {"type": "connectivity_error", "detail": error.detail}
            ),
        )
        try:
            try:
                snapshot = await room.open(partner_id)
            except DomainError as exc:
                socket.push(_error_event(websocket, exc))
                return
            socket.push({"type": "snapshot", **_dump(snapshot)})

            while True:
                command = await websocket.receive_json()
                kind = command.get("type")
                if kind == "send":
                    try:
                        message = await room.send(command.get("content") or "", command.get("pinnedOrderId"))
                    except (DomainError, ValueError) as exc:
                        socket.push(_error_event(websocket, exc))
                        continue
                    socket.push({"type": "sent", "message": _dump(message)})
                elif kind == "ping":
                    socket.push({"type": "pong"})
                else:
                    socket.push(_error_event(websocket, ValueError(f"unknown command {kind!r}")))
        except WebSocketDisconnect:
            logger.debug("chat_room_socket_disconnected")
        finally:
            room.close()
