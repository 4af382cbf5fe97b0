"""Exception taxonomy shared by the codec, validator, gateway and API."""


class TrafficDashError(Exception):
    """Base class for every error raised by this package."""


class FormatError(TrafficDashError):
    """The uploaded bytes are not a readable spreadsheet."""


class ValidationError(TrafficDashError):
    """A batch was rejected; ``errors`` holds every accumulated message."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])


class DuplicateError(ValidationError):
    """A key collides with another row in the file or with stored data."""


class DuplicateKeyError(DuplicateError):
    """Bulk insert refused because some Contract IDs already exist."""

    def __init__(self, message: str, keys: list[str], errors: list[str] | None = None):
        super().__init__(message, errors)
        self.keys = list(keys)


class NotFoundError(TrafficDashError):
    """The referenced record does not exist."""


RecordNotFound = NotFoundError


class BackendError(TrafficDashError):
    """The database failed; ``detail`` carries the underlying message."""

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.detail = detail
