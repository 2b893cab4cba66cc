class PortalError(Exception):
    """Base class for errors raised by the portal core"""


class ValidationError(PortalError, ValueError):
    """Invalid provisioning data or obfuscation parameters"""


class PreconditionError(PortalError, ValueError):
    """An operation was called with inputs it cannot work with"""


class SerializationError(PortalError):
    """Encoding of an export artifact failed"""


class AuthorizationError(PortalError, PermissionError):
    """The calling context lacks the required rights"""


class ContextCancelledError(PortalError):
    """The request context was cancelled before a collaborator call"""


class NotFoundError(PortalError, LookupError):
    """A repository lookup found nothing"""
