class BlogError(Exception):
    """Base class for errors raised by the blog services."""
    status_code = 400

    def __init__(self, message: str, code: str = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ValidationError(BlogError):
    """Bad input: oversized or unsupported file, out-of-range rating, empty required field."""
    status_code = 400


class UnauthorizedError(BlogError):
    """The identity is missing or is not the configured author."""
    status_code = 403


class NotFoundError(BlogError):
    """A referenced post, comment or rating does not exist."""
    status_code = 404


class BackendError(BlogError):
    """The document store, blob store or identity provider failed."""
    status_code = 502
