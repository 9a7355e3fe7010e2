class OrgClusterException(Exception):
    pass


class IntegrityException(OrgClusterException):
    pass


class NotFoundException(OrgClusterException):
    pass


class NotConfiguredException(OrgClusterException):
    pass


class AlreadyProvisionedException(OrgClusterException):
    pass


class ProvisioningInProgressException(OrgClusterException):
    pass


class InvalidStateException(OrgClusterException):
    pass


class SecretVaultError(OrgClusterException):
    pass


class UpstreamError(OrgClusterException):
    """A required control-plane call returned a non-success response."""

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None) -> None:
        self.code = code
        self.status = status
        detail = f"{message} ({code})" if code else message
        super().__init__(detail)


class ProvisioningTimeout(UpstreamError):
    pass
