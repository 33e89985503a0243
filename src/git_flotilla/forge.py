"""
Forge providers: list an organization's repositories over a REST API.

Each forge (GitHub, GitLab, Gitea) is one :class:`ForgeProvider` subclass
registered by name. The sync planner only sees the
:meth:`ForgeProvider.list_organization_repositories` capability and the
:class:`ForgeRepository` shape.

Tokens are read from ``GITHUB_TOKEN``, ``GITLAB_TOKEN`` or ``GITEA_TOKEN``
when not passed explicitly. Requests without a token only see public
repositories and are subject to lower rate limits.

Example:
    >>> provider = create_provider("github")
    >>> repos = provider.list_organization_repositories("acme")
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .errors import FlotillaError, NetworkErrorKind
from .retry import RetryConfig, RetryExhausted, call_with_retry

logger = logging.getLogger(__name__)

PER_PAGE = 100
# Upper bound on pages followed for one listing.
MAX_PAGES = 100


@dataclass(frozen=True)
class ForgeRepository:
    """Repository metadata common to every forge."""

    name: str
    full_name: str
    clone_url: str
    ssh_url: str = ""
    default_branch: str = "main"
    is_private: bool = False
    is_archived: bool = False
    is_fork: bool = False

    def url_for(self, protocol: str = "https") -> str:
        if protocol == "ssh" and self.ssh_url:
            return self.ssh_url
        return self.clone_url

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "full_name": self.full_name,
            "clone_url": self.clone_url,
            "ssh_url": self.ssh_url,
            "default_branch": self.default_branch,
            "is_private": self.is_private,
            "is_archived": self.is_archived,
            "is_fork": self.is_fork,
        }


@dataclass(frozen=True)
class ForgeFilters:
    """Which listed repositories to keep."""

    include_archived: bool = False
    include_forks: bool = False
    include_private: bool = True

    def accepts(self, repo: ForgeRepository) -> bool:
        if repo.is_archived and not self.include_archived:
            return False
        if repo.is_fork and not self.include_forks:
            return False
        if repo.is_private and not self.include_private:
            return False
        return True


_PROVIDERS: dict[str, type[ForgeProvider]] = {}


def register_provider(name: str):
    """Class decorator adding a provider to the registry under ``name``."""

    def decorator(cls: type[ForgeProvider]) -> type[ForgeProvider]:
        cls.name = name
        _PROVIDERS[name] = cls
        return cls

    return decorator


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def create_provider(
    name: str,
    token: str | None = None,
    base_url: str | None = None,
    **kwargs: Any,
) -> ForgeProvider:
    try:
        cls = _PROVIDERS[name.lower()]
    except KeyError:
        raise FlotillaError.manifest(
            f"unknown forge {name!r} (expected one of: {', '.join(available_providers())})"
        ) from None
    return cls(token=token, base_url=base_url, **kwargs)


class ForgeProvider(ABC):
    """Base class for REST-backed forge listings."""

    name: str = ""
    DEFAULT_BASE_URL: str = ""
    TOKEN_ENV_VAR: str = ""

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float = 30.0,
        retry: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.token = token if token is not None else os.environ.get(self.TOKEN_ENV_VAR, "")
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.retry = retry or RetryConfig()
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=self.auth_headers(),
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ForgeProvider:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @abstractmethod
    def auth_headers(self) -> dict[str, str]:
        """Headers sent with every request."""

    @abstractmethod
    def organization_path(self, org: str) -> tuple[str, dict[str, str]]:
        """API path and query parameters listing an organization's repositories."""

    @abstractmethod
    def convert(self, item: dict[str, Any]) -> ForgeRepository:
        """Map one API item to a ForgeRepository."""

    def list_organization_repositories(
        self,
        org: str,
        filters: ForgeFilters | None = None,
    ) -> list[ForgeRepository]:
        """Every repository of ``org`` that passes ``filters``, sorted by full name.

        Raises FlotillaError(NETWORK) when the listing cannot be fetched.
        """
        if not org or ("/" in org.strip("/") and self.name != "gitlab"):
            raise FlotillaError.manifest(f"invalid organization name: {org!r}")
        active_filters = filters or ForgeFilters()
        path, params = self.organization_path(org)
        repos = [self.convert(item) for item in self._paginate(path, params)]
        kept = [repo for repo in repos if active_filters.accepts(repo)]
        logger.debug(
            "%s: %s lists %d repositories, %d after filters",
            self.name,
            org,
            len(repos),
            len(kept),
        )
        return sorted(kept, key=lambda r: r.full_name)

    def _paginate(self, path: str, params: dict[str, str]) -> Iterator[dict[str, Any]]:
        url: str | None = path
        query: dict[str, str] | None = params
        for _ in range(MAX_PAGES):
            response = self._get(url, query)
            items = response.json()
            if not isinstance(items, list):
                raise FlotillaError.network_failure(
                    NetworkErrorKind.UNREACHABLE,
                    f"{self.name}: unexpected response shape from {response.request.url}",
                )
            yield from items
            url, query = self._next_page(response, params)
            if url is None:
                return
        logger.warning("%s: stopped after %d pages", self.name, MAX_PAGES)

    def _next_page(
        self, response: httpx.Response, params: dict[str, str]
    ) -> tuple[str | None, dict[str, str] | None]:
        next_link = response.links.get("next", {}).get("url")
        if next_link:
            return next_link, None
        next_page = response.headers.get("x-next-page", "").strip()
        if next_page:
            return str(response.request.url).split("?", 1)[0], {**params, "page": next_page}
        return None, None

    def _get(self, url: str, params: dict[str, str] | None) -> httpx.Response:
        def request() -> httpx.Response:
            response = self._client.get(url, params=params)
            response.raise_for_status()
            return response

        try:
            response, _ = call_with_retry(request, self.retry, label=f"{self.name} GET {url}")
        except RetryExhausted as exhausted:
            raise self._translate(exhausted.error, url) from exhausted.error
        return response

    def _translate(self, error: BaseException, url: str) -> Exception:
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            if status in (401, 403):
                return FlotillaError.network_failure(
                    NetworkErrorKind.AUTH_FAILED,
                    f"{self.name}: authentication failed (HTTP {status}) for {url}",
                )
            if status == 404:
                return FlotillaError.network_failure(
                    NetworkErrorKind.UNREACHABLE,
                    f"{self.name}: not found (HTTP 404): {url}",
                )
            return FlotillaError.network_failure(
                NetworkErrorKind.UNREACHABLE,
                f"{self.name}: HTTP {status} from {url}",
            )
        if isinstance(error, httpx.TimeoutException):
            return FlotillaError.network_failure(
                NetworkErrorKind.TIMEOUT, f"{self.name}: request timed out: {url}"
            )
        if isinstance(error, httpx.HTTPError):
            return FlotillaError.network_failure(
                NetworkErrorKind.UNREACHABLE, f"{self.name}: network error for {url}: {error}"
            )
        if isinstance(error, Exception):
            return error
        return RuntimeError(str(error))


@register_provider("github")
class GitHubProvider(ForgeProvider):
    """GitHub REST API v3."""

    DEFAULT_BASE_URL = "https://api.github.com"
    TOKEN_ENV_VAR = "GITHUB_TOKEN"

    def auth_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def organization_path(self, org: str) -> tuple[str, dict[str, str]]:
        return f"/orgs/{quote(org, safe='')}/repos", {"per_page": str(PER_PAGE), "type": "all"}

    def convert(self, item: dict[str, Any]) -> ForgeRepository:
        return ForgeRepository(
            name=item["name"],
            full_name=item.get("full_name") or item["name"],
            clone_url=item.get("clone_url", ""),
            ssh_url=item.get("ssh_url", ""),
            default_branch=item.get("default_branch") or "main",
            is_private=bool(item.get("private")),
            is_archived=bool(item.get("archived")),
            is_fork=bool(item.get("fork")),
        )


@register_provider("gitlab")
class GitLabProvider(ForgeProvider):
    """GitLab REST API v4. Group listings include subgroup projects."""

    DEFAULT_BASE_URL = "https://gitlab.com/api/v4"
    TOKEN_ENV_VAR = "GITLAB_TOKEN"

    def auth_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["PRIVATE-TOKEN"] = self.token
        return headers

    def organization_path(self, org: str) -> tuple[str, dict[str, str]]:
        return (
            f"/groups/{quote(org.strip('/'), safe='')}/projects",
            {"per_page": str(PER_PAGE), "include_subgroups": "true"},
        )

    def convert(self, item: dict[str, Any]) -> ForgeRepository:
        return ForgeRepository(
            name=item.get("path") or item["name"],
            full_name=item.get("path_with_namespace") or item["name"],
            clone_url=item.get("http_url_to_repo", ""),
            ssh_url=item.get("ssh_url_to_repo", ""),
            default_branch=item.get("default_branch") or "main",
            is_private=item.get("visibility", "private") != "public",
            is_archived=bool(item.get("archived")),
            is_fork=item.get("forked_from_project") is not None,
        )


@register_provider("gitea")
class GiteaProvider(ForgeProvider):
    """Gitea (and Forgejo) REST API v1."""

    DEFAULT_BASE_URL = "https://gitea.com/api/v1"
    TOKEN_ENV_VAR = "GITEA_TOKEN"

    def auth_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    def organization_path(self, org: str) -> tuple[str, dict[str, str]]:
        return f"/orgs/{quote(org, safe='')}/repos", {"limit": "50"}

    def convert(self, item: dict[str, Any]) -> ForgeRepository:
        return ForgeRepository(
            name=item["name"],
            full_name=item.get("full_name") or item["name"],
            clone_url=item.get("clone_url", ""),
            ssh_url=item.get("ssh_url", ""),
            default_branch=item.get("default_branch") or "main",
            is_private=bool(item.get("private")),
            is_archived=bool(item.get("archived")),
            is_fork=bool(item.get("fork")),
        )
