"""Build dependency checks and installation."""

from bitforge.deps.resolver import (
    DependencyResolver,
    HomebrewPackageManager,
    PackageManager,
    confirmation_message,
)

__all__ = [
    "DependencyResolver",
    "HomebrewPackageManager",
    "PackageManager",
    "confirmation_message",
]
