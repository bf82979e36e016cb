from fastapi import Depends, HTTPException, status
from starlette.requests import HTTPConnection

from arang_chat.infra.identity import CurrentUser
from arang_chat.services import AppServices, resolve_services


def get_services(connection: HTTPConnection) -> AppServices:
    services = resolve_services(connection.app)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not ready")
    return services


async def resolve_current_user(connection: HTTPConnection, services: AppServices) -> CurrentUser | None:
    return await services.identity.current_user(connection.headers)


async def get_current_user(
    connection: HTTPConnection,
    services: AppServices = Depends(get_services),
) -> CurrentUser:
    user = await resolve_current_user(connection, services)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    connection.state.current_user_id = user.id
    connection.state.current_role = user.role.value
    return user


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


async def require_customer(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Customer access required")
    return user
