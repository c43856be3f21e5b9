"""Release tag discovery."""

from bitforge.versions.resolver import (
    ReleaseDescriptor,
    VersionResolver,
    create_http_client,
    is_stable,
)

__all__ = ["ReleaseDescriptor", "VersionResolver", "create_http_client", "is_stable"]
