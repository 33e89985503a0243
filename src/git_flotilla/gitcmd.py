"""Git process execution.

Every git invocation in the package goes through :class:`GitExecutor`:
arguments are passed as a list (never through a shell), credential prompts
are disabled, and user-influenced values are validated before they reach
``argv``.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from .errors import FlotillaError, NetworkErrorKind, classify_network_stderr

logger = logging.getLogger(__name__)

# Bulk operations must fail instead of blocking on a credential prompt.
NON_INTERACTIVE_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_ASKPASS": "",
    "SSH_ASKPASS": "",
    "GCM_INTERACTIVE": "never",
}

_REF_PATTERN = re.compile(r"^[A-Za-z0-9._/@{}^~-]+$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_URL_PATTERN = re.compile(r"^(?:(?:https?|ssh|git|file)://|[\w.-]+@[\w.-]+:|/)[^\s]*$")


def validate_ref(ref: str) -> str:
    """Validate a branch, tag or revision expression before it enters argv."""
    if not ref or not _REF_PATTERN.match(ref):
        raise ValueError(f"invalid git reference: {ref!r}")
    if ref.startswith("-") or ".." in ref or ref.endswith((".", "/", ".lock")):
        raise ValueError(f"invalid git reference: {ref!r}")
    return ref


def validate_path_argument(value: str | Path) -> str:
    """Validate a filesystem path passed to git as an argument."""
    text = str(value)
    if not text or text.startswith("-") or _CONTROL_CHARS.search(text):
        raise ValueError(f"invalid path argument: {text!r}")
    return text


def validate_url(url: str) -> str:
    """Validate a clone URL (https, ssh, scp-like, git, file or absolute path)."""
    if not url or url.startswith("-") or _CONTROL_CHARS.search(url):
        raise ValueError(f"invalid repository URL: {url!r}")
    if not _URL_PATTERN.match(url):
        raise ValueError(f"invalid repository URL: {url!r}")
    return url


@dataclass
class ProcessResult:
    """Captured result of one git invocation."""

    argv: list[str]
    cwd: Path | None
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def check(self) -> ProcessResult:
        """Raise a classified error for a non-zero exit, otherwise return self."""
        if self.ok:
            return self
        command = " ".join(self.argv[:3])
        stderr = self.stderr.strip() or self.stdout.strip()
        network = classify_network_stderr(stderr)
        if network is not None:
            raise FlotillaError.network_failure(
                network,
                f"{command} failed: {_first_line(stderr)}",
                stderr=stderr,
                path=self.cwd,
            )
        raise FlotillaError.process(
            f"{command} exited with code {self.exit_code}: {_first_line(stderr)}",
            stderr=stderr,
            path=self.cwd,
        )


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


class GitExecutor:
    """Runs git as a subprocess with a bounded, non-interactive environment."""

    def __init__(self, git_binary: str = "git", default_timeout: float | None = None):
        self.git_binary = git_binary
        self.default_timeout = default_timeout

    def execute(
        self,
        repo_path: Path | None,
        argv: list[str],
        *,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        """Run ``git <argv>`` in ``repo_path``.

        A non-zero exit is returned, not raised; call :meth:`ProcessResult.check`
        where failure should propagate. Timeouts are raised as NETWORK/TIMEOUT
        errors since only remote operations are given a deadline.
        """
        full_env = {**os.environ, **NON_INTERACTIVE_ENV, **(env or {})}
        effective_timeout = timeout if timeout is not None else self.default_timeout
        cmd = [self.git_binary, *argv]
        if repo_path is not None and not Path(repo_path).is_dir():
            raise FlotillaError.process(
                f"repository path does not exist: {repo_path}", path=repo_path
            )
        logger.debug("git %s (cwd=%s)", " ".join(argv), repo_path)

        start = time.monotonic()
        try:
            completed = subprocess.run(
                cmd,
                cwd=repo_path,
                capture_output=True,
                text=True,
                check=False,
                env=full_env,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise FlotillaError.network_failure(
                NetworkErrorKind.TIMEOUT,
                f"git {argv[0]} timed out after {effective_timeout:g}s",
                path=repo_path,
            ) from e
        except FileNotFoundError as e:
            raise FlotillaError.process(
                f"git executable not found: {self.git_binary}", path=repo_path
            ) from e

        return ProcessResult(
            argv=cmd,
            cwd=repo_path,
            stdout=completed.stdout,
            stderr=completed.stderr,
            exit_code=completed.returncode,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    def run(self, repo_path: Path | None, *args: str, timeout: float | None = None) -> ProcessResult:
        """Shorthand for :meth:`execute` with positional arguments."""
        return self.execute(repo_path, list(args), timeout=timeout)

    def output(self, repo_path: Path | None, *args: str, timeout: float | None = None) -> str:
        """Run and return stripped stdout, raising on failure."""
        return self.execute(repo_path, list(args), timeout=timeout).check().stdout.strip()
