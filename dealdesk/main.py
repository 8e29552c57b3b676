import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from dealdesk.routers import deals, documents, public
from dealdesk.security.headers import install_security_headers
from dealdesk.security.tenant_context import install_tenant_context_middleware

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

app = FastAPI(title='Dealdesk')

install_security_headers(app)
install_tenant_context_middleware(app)

app.include_router(deals.router)
app.include_router(documents.router)
app.include_router(public.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
