from typing import List
from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from cravecrafted.common.logging_setup import get_logger
from cravecrafted.common.utils import build_error, json_error
from cravecrafted.user.dependencies import Authentication
from cravecrafted.user.repository import identify_user_by_pid

logger = get_logger("cravecrafted.middlewares")


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Resolves the bearer token subject to an internal user id, `paths` are public prefixes."""

    def __init__(self, app, *, session_maker, paths: List[str]):
        super().__init__(app)
        self.session_maker = session_maker
        self.paths = paths

    async def dispatch(self, request: Request, call_next):

        if any(request.url.path.startswith(p) for p in self.paths):
            return await call_next(request)

        try:
            auth_token = await Authentication()(request)
        except Exception as e:
            reason = getattr(e, "detail", "Missing or Invalid Auth Headers")
            logger.warning("auth.middleware.failed", extra={
                "reason": reason,
                "path": request.url.path,
                "method": request.method
            })
            payload = build_error(code="INVALID_AUTH", details={"message": "Missing or Invalid Auth Headers"})
            return json_error(payload, status_code=status.HTTP_401_UNAUTHORIZED)

        user_pid = auth_token.get("sub")

        async with self.session_maker() as session:
            user_identifier = await identify_user_by_pid(session, user_pid)

        if not user_identifier:
            logger.warning("auth.middleware.user_not_found", extra={
                "user_public_id": user_pid,
                "path": request.url.path
            })
            payload = build_error(code="INVALID_AUTH", details={"message": "User unidentified and not authorized"})
            return json_error(payload, status_code=status.HTTP_403_FORBIDDEN)

        request.state.user_identifier = user_identifier
        request.state.user_public_id = user_pid
        request.state.user_roles = auth_token.get("roles") or []

        logger.debug("auth.middleware.success", extra={
            "user_public_id": user_pid,
            "path": request.url.path
        })

        return await call_next(request)
