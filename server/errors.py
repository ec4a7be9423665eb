"""
Exception types raised by the director.

Each error carries the operation that failed so log lines and aggregated
batch failures keep their context after being passed up the stack.
"""


class DirectorError(Exception):
    """Base error with operation context."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class UpstreamError(DirectorError):
    """Network or protocol failure talking to the upstream MDM server."""


class EnrollmentProfileError(DirectorError):
    """The configured enrollment profile could not be read, decoded or pushed."""


class ProfileSigningError(DirectorError):
    """Signing material is missing or the payload could not be signed."""
