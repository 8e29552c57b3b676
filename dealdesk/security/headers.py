from fastapi import FastAPI, Request
from starlette.responses import Response


BASE_HEADERS = {
    "X-Robots-Tag": "noindex, nofollow, noarchive",
    "X-Content-Type-Options": "nosniff",
}

# Share tokens travel in the path, so shared documents must not leak through
# referrers or intermediary caches.
SHARED_DOCUMENT_HEADERS = {
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


def install_security_headers(app: FastAPI, *, shared_prefix: str = "/public/") -> None:
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers.update(BASE_HEADERS)
        if request.url.path.startswith(shared_prefix):
            response.headers.update(SHARED_DOCUMENT_HEADERS)
        return response
