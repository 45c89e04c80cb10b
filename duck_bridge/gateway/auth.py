from __future__ import annotations

import hmac

from fastapi import Request, status
from fastapi.responses import JSONResponse

from duck_bridge.settings import Settings


class Authenticator:
    """Bearer API-key check for ``/v1`` routes.

    Authentication is only enforced when at least one key is configured
    (``SERVER_API_KEY`` or ``INGRESS_API_KEYS``); an unconfigured bridge is open.
    """

    def __init__(self, settings: Settings):
        self.api_keys = tuple(settings.ingress_api_keys_list)
        self.required = bool(self.api_keys)

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing Bearer token.")

        presented = token.strip().encode("utf-8")
        if any(hmac.compare_digest(presented, key.encode("utf-8")) for key in self.api_keys):
            return None

        return _unauthorized("Incorrect API key.")


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
