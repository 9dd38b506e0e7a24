"""
Saga Service — 呼び出し元の認証

トークンの検証は外部の Auth Service の責務。ここでは Bearer トークンを
そのまま Auth Service に渡し、解決されたユーザー (id, role) を信頼する。
"""

from dataclasses import dataclass

from fastapi import Header, Request

from ..common.errors import ServiceError, Unauthorized, UpstreamUnavailable
from .clients import ServiceClient, open_http_client


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: str | None = None


async def resolve_identity(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Identity:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("Missing bearer token")

    settings = request.app.state.settings
    async with open_http_client(request.app) as client:
        auth = ServiceClient(client, settings.auth_service_url, "auth-service")
        try:
            resp = await auth.request(
                "GET", "/api/v1/users/me", headers={"Authorization": authorization}
            )
        except UpstreamUnavailable:
            raise
        except ServiceError as e:
            raise Unauthorized("Bearer token was rejected by the auth service") from e

    body = resp.json()
    # Auth Service は {ok, data: {...}} のエンベロープで返すことがある
    user = body.get("data", body) if isinstance(body, dict) else None
    user_id = user.get("id") if isinstance(user, dict) else None
    if user_id is None:
        raise Unauthorized("Auth service did not return a user id")
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise Unauthorized(
            f"Auth service returned a user id that is not numeric: {user_id!r}"
        ) from None
    return Identity(user_id=user_id, role=user.get("role"))
