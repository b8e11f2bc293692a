from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request, status

from printchain.config import settings

security_logger = logging.getLogger('printchain.security')

WEBHOOK_SECRET_HEADER = 'x-webhook-secret'


def verify_webhook_secret(request: Request) -> None:
    expected = settings.webhook_secret
    if not expected:
        return

    provided = request.headers.get(WEBHOOK_SECRET_HEADER) or request.query_params.get('token') or ''
    if not hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
        security_logger.warning(
            'webhook_secret_rejected path=%s client=%s',
            request.url.path,
            request.client.host if request.client else None,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid webhook secret')
