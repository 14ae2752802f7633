class LinksharingError(Exception):
    """Base class for every error raised by the gateway."""


class ValidationError(LinksharingError):
    """A request path or grant the client sent is malformed."""


class AccessError(ValidationError):
    pass


class ConfigError(ValidationError):
    pass


class BackendError(LinksharingError):
    """The storage backend failed."""


class NotFoundError(BackendError):
    pass


class BucketNotFoundError(NotFoundError):
    pass


class ObjectNotFoundError(NotFoundError):
    pass


class ResolutionError(LinksharingError):
    """TXT records for a hosted domain could not be turned into a grant and root."""


class RenderError(LinksharingError):
    pass
