"""Stable release tags from the GitHub Releases API."""
from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from bitforge.__version__ import __version__
from bitforge.core.constants import RELEASE_INDEX_URLS, USER_AGENT, BuildTarget
from bitforge.core.exceptions import (
    ConfigurationError,
    InvalidVersionTag,
    NetworkError,
    ParseError,
    ValidationError,
)
from bitforge.core.shell import validate_version_tag
from bitforge.core.types import VersionTag

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 15.0


class ReleaseDescriptor(BaseModel):
    tag_name: str
    prerelease: bool = False


_RELEASES = TypeAdapter(list[ReleaseDescriptor])


def create_http_client(timeout: float = DEFAULT_TIMEOUT) -> httpx.AsyncClient:
    """Build the client shared by every release lookup of one engine."""
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={
            "Accept": "application/vnd.github+json",
            "User-Agent": f"{USER_AGENT}/{__version__}",
        },
    )


def is_stable(release: ReleaseDescriptor) -> bool:
    """A release is stable unless flagged prerelease or its tag contains ``rc``.

    The substring match is case-sensitive and deliberately literal: any tag
    text containing ``rc`` is treated as a release candidate.
    """
    return not release.prerelease and "rc" not in release.tag_name


class VersionResolver:
    """Resolve the selectable version tags for a build target.

    The remote index's own ordering (newest first) is kept; tags are never
    re-sorted locally. Each call issues exactly one GET and has no local side
    effects, so callers retry by calling again.

    Usage::

        async with create_http_client() as client:
            resolver = VersionResolver(client)
            tags = await resolver.fetch_versions(BuildTarget.BITCOIN_CORE)
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        per_page: int = 30,
        max_versions: int | None = 10,
        urls: dict[BuildTarget, str] | None = None,
    ) -> None:
        self._client = client
        self._per_page = per_page
        self._max_versions = max_versions
        self._urls = dict(urls or RELEASE_INDEX_URLS)

    async def fetch_versions(self, project: BuildTarget | str) -> list[VersionTag]:
        """Return stable tags for *project*, newest first as published.

        Raises:
            NetworkError: On transport failure or a non-success HTTP status.
            ParseError: If the body is not a list of release descriptors.
            ValidationError: If *project* names no known build target.
            ConfigurationError: If no release index URL is configured for it.
        """
        try:
            target = BuildTarget(project)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown project {project!r}", details={"project": str(project)}
            ) from exc
        url = self._urls.get(target)
        if url is None:
            raise ConfigurationError(
                f"No release index URL configured for {target.display_name}",
                details={"target": str(target)},
            )
        try:
            resp = await self._client.get(url, params={"per_page": self._per_page})
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("release_index_status", target=str(target), status=status)
            raise NetworkError(
                f"Release index for {target.display_name} returned HTTP {status}",
                details={"url": url},
                status_code=status,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("release_index_unreachable", target=str(target), error=str(exc))
            raise NetworkError(
                f"Could not reach release index for {target.display_name}: {exc}",
                details={"url": url},
            ) from exc

        releases = self._parse(resp, target)
        tags: list[VersionTag] = []
        for release in releases:
            if not is_stable(release):
                continue
            try:
                validate_version_tag(release.tag_name)
            except InvalidVersionTag:
                logger.warning("release_tag_rejected", target=str(target), tag=release.tag_name)
                continue
            tags.append(VersionTag.parse(release.tag_name, prerelease=release.prerelease))

        if self._max_versions is not None:
            tags = tags[: self._max_versions]
        logger.info(
            "versions_resolved",
            target=str(target),
            received=len(releases),
            kept=len(tags),
        )
        return tags

    @staticmethod
    def _parse(resp: httpx.Response, target: BuildTarget) -> list[ReleaseDescriptor]:
        try:
            payload: Any = resp.json()
        except ValueError as exc:
            raise ParseError(
                f"Release index for {target.display_name} did not return JSON: {exc}"
            ) from exc
        try:
            return _RELEASES.validate_python(payload)
        except PydanticValidationError as exc:
            raise ParseError(
                f"Unexpected release index payload for {target.display_name}",
                details={"errors": exc.error_count()},
            ) from exc
