"""aiohttp integration.

``setup_kms(app, context)`` runs the KMS bootstrap on application startup
and shuts it down on cleanup. ``kms_error_middleware`` turns KMS failures
into generic responses: end users see "access denied" or "service
unavailable", the error detail stays in the logs.
"""
import logging

from aiohttp import web

from .context import KMSContext
from .exceptions import DecryptionError, KMSError

logger = logging.getLogger("navigator.kms")

KMS_CONTEXT = web.AppKey("kms_context", KMSContext)


def setup_kms(app: web.Application, context: KMSContext) -> web.Application:
    app[KMS_CONTEXT] = context

    async def _startup(app: web.Application) -> None:
        await app[KMS_CONTEXT].init()

    async def _cleanup(app: web.Application) -> None:
        await app[KMS_CONTEXT].shutdown()

    app.on_startup.append(_startup)
    app.on_cleanup.append(_cleanup)
    return app


def get_kms(request: web.Request) -> KMSContext:
    return request.app[KMS_CONTEXT]


@web.middleware
async def kms_error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except DecryptionError as err:
        logger.warning(
            "Access denied on %s %s: %s", request.method, request.path,
            type(err).__name__,
        )
        raise web.HTTPForbidden(text="access denied") from err
    except KMSError as err:
        logger.error(
            "KMS failure on %s %s: %s", request.method, request.path,
            type(err).__name__,
        )
        raise web.HTTPServiceUnavailable(text="service unavailable") from err
