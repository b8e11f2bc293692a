from fastapi import FastAPI

from printchain.logging_setup import configure_logging
from printchain.routers import jobs, reconciliation, webhooks
from printchain.security.headers import install_security_headers
from printchain.security.tokens import install_api_token_middleware

configure_logging()

app = FastAPI(title='Printchain')

install_security_headers(app)
install_api_token_middleware(app)

app.include_router(jobs.router)
app.include_router(jobs.rate_card_router)
app.include_router(webhooks.router)
app.include_router(webhooks.events_router)
app.include_router(reconciliation.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
