"""Error taxonomy shared by every fleet operation."""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path


class ErrorKind(StrEnum):
    """What went wrong, independent of the message text."""

    SCAN = "scan"
    PROCESS = "process"
    SAFETY_BLOCKED = "safety_blocked"
    NETWORK = "network"
    MANIFEST = "manifest"
    CONFLICT_DETECTED = "conflict_detected"


class NetworkErrorKind(StrEnum):
    """Sub-classification for NETWORK errors."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth_failed"


# Lower-cased stderr fragments, checked in this order.
AUTH_FAILURE_PATTERNS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "http basic: access denied",
    "permission denied (publickey",
    "could not read from remote repository",
)

TIMEOUT_PATTERNS = (
    "connection timed out",
    "operation timed out",
    "timed out",
)

UNREACHABLE_PATTERNS = (
    "could not resolve host",
    "could not resolve hostname",
    "connection refused",
    "network is unreachable",
    "no route to host",
    "does not appear to be a git repository",
)

# Checked last: these also accompany authentication failures.
GENERIC_REMOTE_PATTERNS = (
    "unable to access",
    "repository not found",
)


class FlotillaError(Exception):
    """Tagged error carrying an explicit kind plus optional context.

    The wrapped cause, when there is one, travels on ``__cause__`` via
    ``raise ... from``.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        network: NetworkErrorKind | None = None,
        stderr: str = "",
        path: Path | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.network = network
        self.stderr = stderr
        self.path = path

    @property
    def retryable(self) -> bool:
        """Only transient network failures are worth another attempt."""
        return self.kind == ErrorKind.NETWORK and self.network in (
            NetworkErrorKind.TIMEOUT,
            NetworkErrorKind.UNREACHABLE,
        )

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "network": self.network.value if self.network else None,
            "message": self.message,
            "stderr": self.stderr,
            "path": str(self.path) if self.path else None,
        }

    @classmethod
    def scan(cls, message: str, path: Path | None = None) -> FlotillaError:
        return cls(ErrorKind.SCAN, message, path=path)

    @classmethod
    def process(cls, message: str, stderr: str = "", path: Path | None = None) -> FlotillaError:
        return cls(ErrorKind.PROCESS, message, stderr=stderr, path=path)

    @classmethod
    def blocked(cls, reason: str, path: Path | None = None) -> FlotillaError:
        return cls(ErrorKind.SAFETY_BLOCKED, reason, path=path)

    @classmethod
    def network_failure(
        cls,
        network: NetworkErrorKind,
        message: str,
        stderr: str = "",
        path: Path | None = None,
    ) -> FlotillaError:
        return cls(ErrorKind.NETWORK, message, network=network, stderr=stderr, path=path)

    @classmethod
    def manifest(cls, message: str, path: Path | None = None) -> FlotillaError:
        return cls(ErrorKind.MANIFEST, message, path=path)

    @classmethod
    def conflict(cls, message: str, path: Path | None = None) -> FlotillaError:
        return cls(ErrorKind.CONFLICT_DETECTED, message, path=path)


def classify_network_stderr(stderr: str) -> NetworkErrorKind | None:
    """Map git's stderr to a network sub-kind, or None for local failures."""
    text = stderr.lower()
    if any(pattern in text for pattern in TIMEOUT_PATTERNS):
        return NetworkErrorKind.TIMEOUT
    if any(pattern in text for pattern in UNREACHABLE_PATTERNS):
        return NetworkErrorKind.UNREACHABLE
    if any(pattern in text for pattern in AUTH_FAILURE_PATTERNS):
        return NetworkErrorKind.AUTH_FAILED
    if any(pattern in text for pattern in GENERIC_REMOTE_PATTERNS):
        return NetworkErrorKind.UNREACHABLE
    return None
