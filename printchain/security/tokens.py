from __future__ import annotations

import hmac

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from printchain.auth import Principal, Role
from printchain.config import settings

AUTH_EXEMPT_PATHS = {'/health', '/docs', '/openapi.json'}
AUTH_EXEMPT_PREFIXES = ('/webhooks/',)


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get('authorization') or ''
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def load_principal_from_token(token: str | None) -> Principal | None:
    if not token:
        return None
    for candidate, entry in settings.api_principals.items():
        if not hmac.compare_digest(candidate.encode('utf-8'), token.encode('utf-8')):
            continue
        try:
            role = Role(str(entry.get('role', '')).upper())
        except ValueError:
            return None
        return Principal(
            username=entry.get('username') or 'api',
            role=role,
            company_id=entry.get('company_id'),
            active=str(entry.get('active', 'true')).lower() != 'false',
        )
    return None


def is_exempt(path: str) -> bool:
    return path in AUTH_EXEMPT_PATHS or path.startswith(AUTH_EXEMPT_PREFIXES)


def install_api_token_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def api_token_middleware(request: Request, call_next):
        request.state.principal = load_principal_from_token(_bearer_token(request))
        if not is_exempt(request.url.path) and request.state.principal is None:
            return JSONResponse({'detail': 'Not authenticated'}, status_code=401)
        return await call_next(request)
