from __future__ import annotations

from collections.abc import Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dealdesk.auth import Principal, Role

PUBLIC_PATH_PREFIXES = ('/public/', '/health', '/robots.txt')

TenantResolver = Callable[[Request], Principal | None]


def header_tenant_resolver(request: Request) -> Principal | None:
    """Trust the membership facts forwarded by the upstream session gateway.

    The ``x-user-*`` and ``x-dealer-*`` headers are taken as-is, so this resolver
    must only be deployed behind a gateway that strips them from client requests
    and sets them from the verified session. Other deployments pass their own
    resolver to ``install_tenant_context_middleware``.
    """
    user_id = request.headers.get('x-user-id', '').strip()
    dealer_id = request.headers.get('x-dealer-id', '').strip()
    role = request.headers.get('x-dealer-role', '').strip().upper()
    if not user_id.isdigit() or not dealer_id.isdigit():
        return None
    try:
        parsed_role = Role(role)
    except ValueError:
        return None
    return Principal(
        user_id=int(user_id),
        dealer_id=int(dealer_id),
        role=parsed_role,
        name=request.headers.get('x-user-name') or None,
        email=request.headers.get('x-user-email') or None,
    )


def _is_public(path: str) -> bool:
    return any(path == prefix.rstrip('/') or path.startswith(prefix) for prefix in PUBLIC_PATH_PREFIXES)


def install_tenant_context_middleware(app: FastAPI, resolver: TenantResolver = header_tenant_resolver) -> None:
    app.state.tenant_resolver = resolver

    @app.middleware('http')
    async def tenant_context_middleware(request: Request, call_next):
        request.state.principal = request.app.state.tenant_resolver(request)
        if not _is_public(request.url.path) and request.state.principal is None:
            return JSONResponse({'detail': 'Not authenticated'}, status_code=401)
        return await call_next(request)
