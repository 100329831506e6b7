"""
Shared slowapi limiter.

Requests are bucketed by the caller's credential so clients behind one
address do not share a limit; anonymous requests fall back to the address.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request


def credential_key(request: Request) -> str:
    auth = request.headers.get("Authorization") or request.headers.get("X-API-Key")
    return auth or get_remote_address(request)


limiter = Limiter(key_func=credential_key)
