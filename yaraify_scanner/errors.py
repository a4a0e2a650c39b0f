"""
Exception hierarchy for the YARAify client.

Transport failures are not wrapped here: the HTTP layer raises the builtin
ConnectionError and callers see it unchanged.
"""

from typing import Optional


class YaraifyError(Exception):
    """Base class for every error raised by this package."""


class InputValidationError(YaraifyError, ValueError):
    """A required argument was missing or empty. Raised before any I/O."""


class QueryStatusError(YaraifyError):
    """The service answered with a query_status outside the success vocabulary."""

    def __init__(self, status: str, query: str = ""):
        self.status = status
        self.query = query
        detail = status if status else "<missing query_status>"
        if query:
            super().__init__(f"{query}: {detail}")
        else:
            super().__init__(detail)


class DecodeError(YaraifyError):
    """A response could not be decoded into the expected shape."""

    def __init__(self, message: str, raw: Optional[bytes] = None):
        self.raw = raw
        super().__init__(message)


class ArchiveError(YaraifyError):
    """A downloaded archive could not be opened or decrypted."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class MemberNotFoundError(ArchiveError):
    """The archive opened fine but held no extractable member."""
