import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from orgcluster.services.errors import (
    AlreadyProvisionedException,
    IntegrityException,
    InvalidStateException,
    NotConfiguredException,
    NotFoundException,
    OrgClusterException,
    ProvisioningInProgressException,
    ProvisioningTimeout,
    SecretVaultError,
    UpstreamError,
)
from orgcluster.services.constants import (
    ERROR_ALREADY_PROVISIONED,
    ERROR_INVALID_STATE,
    ERROR_NOT_CONFIGURED,
    ERROR_NOT_FOUND,
    ERROR_TIMEOUT,
    ERROR_UPSTREAM,
)

ERROR_STATUS = {
    IntegrityException: 409,
    AlreadyProvisionedException: 409,
    ProvisioningInProgressException: 409,
    InvalidStateException: 400,
    NotFoundException: 404,
    NotConfiguredException: 503,
    UpstreamError: 502,
    ProvisioningTimeout: 504,
    SecretVaultError: 502,
}

# Result error codes returned by the orchestrator, mapped for the routers.
ERROR_CODE_STATUS = {
    ERROR_NOT_CONFIGURED: 503,
    ERROR_ALREADY_PROVISIONED: 409,
    ERROR_INVALID_STATE: 400,
    ERROR_NOT_FOUND: 404,
    ERROR_UPSTREAM: 502,
    ERROR_TIMEOUT: 504,
}

logger = logging.getLogger(__name__)


def _exception_handler(request: Request, exc: Exception):
    status = ERROR_STATUS.get(type(exc), 500)
    if status >= 500 and status not in (502, 503, 504):
        logger.exception("Unhandled application error for path=%s: %s", request.url.path, exc)
    else:
        logger.warning("Request failed path=%s status=%s error=%s", request.url.path, status, exc)
    return JSONResponse({"detail": str(exc)}, status_code=status)


def register_exception_handlers(app):
    app.exception_handler(OrgClusterException)(_exception_handler)
