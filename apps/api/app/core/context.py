from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_client_metadata, set_client_metadata


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    team_id: str | None
    ip_address: str | None
    user_agent: str | None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            ip_address = forwarded_for.split(",")[0].strip()
        else:
            ip_address = request.client.host if request.client is not None else None
        user_agent = request.headers.get("user-agent")

        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            team_id=request.headers.get("x-team-id"),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        tokens = set_client_metadata(ip_address, user_agent[:1000] if user_agent else None)
        try:
            response = await call_next(request)
        finally:
            reset_client_metadata(tokens)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
