from enum import Enum


class ErrorKind(str, Enum):
    NO_FILE = "NoFile"
    RATE_LIMITED = "RateLimited"
    UPSTREAM_ERROR = "UpstreamError"
    NO_IMAGE_RETURNED = "NoImageReturned"
    STORE_ERROR = "StoreError"
    NOT_FOUND = "NotFound"
    NO_SUCH_JOB = "NoSuchJob"


GENERIC_MESSAGE = "Something went wrong while drawing your illustration."
RATE_LIMIT_MESSAGE = "The illustrator is busy right now. Please try again in a moment."


def caller_kind(kind: ErrorKind) -> ErrorKind:
    """Kind reported to the front-end. NoImageReturned is only distinct in logs."""
    if kind == ErrorKind.NO_IMAGE_RETURNED:
        return ErrorKind.UPSTREAM_ERROR
    return kind


def status_for(kind: ErrorKind) -> int:
    if kind == ErrorKind.NO_FILE:
        return 400
    if kind == ErrorKind.RATE_LIMITED:
        return 429
    if kind in (ErrorKind.NOT_FOUND, ErrorKind.NO_SUCH_JOB):
        return 404
    return 500


def message_for(kind: ErrorKind) -> str:
    if kind == ErrorKind.NO_FILE:
        return "No photo was attached."
    if kind == ErrorKind.RATE_LIMITED:
        return RATE_LIMIT_MESSAGE
    if kind == ErrorKind.NO_SUCH_JOB:
        return "No such job."
    return GENERIC_MESSAGE


class BoothError(Exception):
    """Base for every failure the booth reports back as a typed error."""

    kind = ErrorKind.UPSTREAM_ERROR

    @property
    def status_code(self) -> int:
        return status_for(self.kind)

    @property
    def user_message(self) -> str:
        return message_for(self.kind)


class NoFileError(BoothError):
    kind = ErrorKind.NO_FILE


class RateLimitedError(BoothError):
    kind = ErrorKind.RATE_LIMITED


class UpstreamError(BoothError):
    kind = ErrorKind.UPSTREAM_ERROR


class NoImageReturnedError(UpstreamError):
    kind = ErrorKind.NO_IMAGE_RETURNED


class ParseError(NoImageReturnedError):
    """The upstream body matched none of the known image payload shapes."""


class StoreError(BoothError):
    kind = ErrorKind.STORE_ERROR


class NotFoundError(StoreError):
    kind = ErrorKind.NOT_FOUND


class NoSuchJobError(BoothError):
    kind = ErrorKind.NO_SUCH_JOB
