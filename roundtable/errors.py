"""Exception hierarchy shared by the persona orchestration core."""

from __future__ import annotations


class RoundtableError(Exception):
    """Base exception for the persona orchestration core."""

    def __init__(self, message: str = "An error occurred") -> None:
        self.message = message
        super().__init__(self.message)


class ModelUnavailable(RoundtableError):
    """The language-model service could not be reached; retryable by the caller."""


class ModelTimeout(ModelUnavailable):
    """A completion did not finish within its deadline."""


class ModelRateLimited(ModelUnavailable):
    """The language-model service refused the call because of rate limits."""


class ModelMalformedOutput(RoundtableError):
    """The model answered, but not in the structured shape that was asked for."""

    def __init__(self, message: str = "Malformed model output", raw: str | None = None) -> None:
        self.raw = raw
        super().__init__(message)


class NotFound(RoundtableError):
    """A memory key, persona, project or conversation does not exist."""

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message)


class TurnCancelled(RoundtableError):
    """The caller cancelled an in-flight turn."""

    def __init__(self, message: str = "Turn cancelled by caller") -> None:
        super().__init__(message)


__all__ = [
    "ModelMalformedOutput",
    "ModelRateLimited",
    "ModelTimeout",
    "ModelUnavailable",
    "NotFound",
    "RoundtableError",
    "TurnCancelled",
]
