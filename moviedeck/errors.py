"""Closed taxonomy of request failures and the rules that produce them."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    """Every way a catalog request can fail."""

    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"
    TRANSPORT = "transport"
    DECODE_FAILURE = "decode_failure"
    EMPTY_RESPONSE = "empty_response"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class ClassifiedError:
    """A failed request described as data rather than raised.

    ``status_code`` is only meaningful for :attr:`ErrorKind.HTTP_ERROR` (and is
    recorded for the other status-derived kinds), ``cause`` only for
    :attr:`ErrorKind.TRANSPORT`.
    """

    kind: ErrorKind
    status_code: int | None = None
    cause: str | None = None

    @property
    def retryable(self) -> bool:
        match self.kind:
            case ErrorKind.TRANSPORT | ErrorKind.RATE_LIMITED | ErrorKind.SERVER_ERROR:
                return True
            case (
                ErrorKind.INVALID_REQUEST
                | ErrorKind.UNAUTHORIZED
                | ErrorKind.HTTP_ERROR
                | ErrorKind.DECODE_FAILURE
                | ErrorKind.EMPTY_RESPONSE
                | ErrorKind.UNKNOWN
            ):
                return False

    @property
    def requires_user_action(self) -> bool:
        return self.kind is ErrorKind.UNAUTHORIZED

    @property
    def user_message(self) -> str:
        """Short message suitable for a retry affordance."""

        match self.kind:
            case ErrorKind.UNAUTHORIZED:
                return "Invalid API key"
            case ErrorKind.TRANSPORT:
                return "No internet connection"
            case ErrorKind.RATE_LIMITED:
                return "Too many requests"
            case ErrorKind.SERVER_ERROR:
                return "Server error"
            case ErrorKind.HTTP_ERROR:
                if self.status_code == 404:
                    return "Not found"
                return "Request failed"
            case ErrorKind.EMPTY_RESPONSE:
                return "No data available"
            case ErrorKind.INVALID_REQUEST | ErrorKind.DECODE_FAILURE | ErrorKind.UNKNOWN:
                return "Something went wrong"

    def describe(self) -> str:
        if self.kind is ErrorKind.HTTP_ERROR:
            return f"http_error({self.status_code})"
        if self.kind is ErrorKind.TRANSPORT:
            return f"transport({self.cause})"
        return self.kind.value

    def __str__(self) -> str:
        return self.describe()

    # Constructors for the payload-less kinds keep call sites short.

    @classmethod
    def invalid_request(cls, reason: str | None = None) -> "ClassifiedError":
        return cls(ErrorKind.INVALID_REQUEST, cause=reason)

    @classmethod
    def unauthorized(cls) -> "ClassifiedError":
        return cls(ErrorKind.UNAUTHORIZED, status_code=401)

    @classmethod
    def transport(cls, cause: str) -> "ClassifiedError":
        return cls(ErrorKind.TRANSPORT, cause=cause)

    @classmethod
    def decode_failure(cls, reason: str | None = None) -> "ClassifiedError":
        return cls(ErrorKind.DECODE_FAILURE, cause=reason)

    @classmethod
    def empty_response(cls) -> "ClassifiedError":
        return cls(ErrorKind.EMPTY_RESPONSE)


def classify_transport(exc: BaseException) -> ClassifiedError:
    """Classify a failure that happened before any HTTP status was received."""

    message = str(exc).strip()
    cause = exc.__class__.__name__ if not message else f"{exc.__class__.__name__}: {message}"
    return ClassifiedError.transport(cause)


def classify_status(status_code: int) -> ClassifiedError:
    """Map an HTTP status code to its classification.

    Successful codes map to ``unknown``: a 2xx only fails through the payload
    rules in :func:`classify_payload`.
    """

    if status_code == 401:
        return ClassifiedError.unauthorized()
    if status_code == 429:
        return ClassifiedError(ErrorKind.RATE_LIMITED, status_code=status_code)
    if 500 <= status_code <= 599:
        return ClassifiedError(ErrorKind.SERVER_ERROR, status_code=status_code)
    if 400 <= status_code <= 499:
        return ClassifiedError(ErrorKind.HTTP_ERROR, status_code=status_code)
    return ClassifiedError(ErrorKind.UNKNOWN, status_code=status_code)


def classify_payload(body: bytes | None) -> ClassifiedError | None:
    """Return the failure for an unusable 2xx body, or ``None`` if it parses."""

    if body is None or not body.strip():
        return ClassifiedError.empty_response()
    try:
        json.loads(body)
    except ValueError as exc:
        return ClassifiedError.decode_failure(str(exc))
    return None


def classify_response(status_code: int, body: bytes | None = None) -> ClassifiedError:
    """Classify a complete response that the caller could not use."""

    if 200 <= status_code <= 299:
        payload_error = classify_payload(body)
        if payload_error is not None:
            return payload_error
    return classify_status(status_code)


def is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TransportError, OSError))
