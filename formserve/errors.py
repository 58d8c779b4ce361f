"""HTTP-aware errors: a sentinel carrying the response details and a wrapper
that pairs an internal error with such a sentinel."""

from __future__ import annotations


class SentinelHttpError(Exception):
    """An error whose status and message may be sent as an HTTP response.

    The message becomes the response body, so it must not leak sensitive
    information.
    """

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"SentinelHttpError(status={self.status!r}, message={self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SentinelHttpError):
            return NotImplemented
        return (self.status, self.message) == (other.status, other.message)

    def __hash__(self) -> int:
        return hash((self.status, self.message))

    def http_error(self) -> tuple[int, str]:
        """Return the HTTP status and message."""
        return self.status, self.message


class WrappedError(Exception):
    """An internal error (meant for logs) paired with a sentinel (meant for
    the HTTP response)."""

    def __init__(self, err: BaseException, sentinel: SentinelHttpError) -> None:
        super().__init__(str(err))
        self.err = err
        self.sentinel = sentinel
        self.__cause__ = err

    def __str__(self) -> str:
        return str(self.err)

    def __repr__(self) -> str:
        return f"WrappedError(err={self.err!r}, sentinel={self.sentinel!r})"

    def http_error(self) -> tuple[int, str]:
        """Return the HTTP status and message of the sentinel."""
        return self.sentinel.http_error()

    def matches(self, sentinel: object) -> bool:
        """Tell whether the given error is this error's sentinel."""
        return isinstance(sentinel, SentinelHttpError) and self.sentinel == sentinel


def wrap_error(err: BaseException, sentinel: SentinelHttpError) -> WrappedError:
    """Wrap an error with a sentinel: the error is logged, the sentinel is
    sent in the response."""
    return WrappedError(err, sentinel)