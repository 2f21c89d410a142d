"""Route pattern matching for the authorization middleware.

A pattern is a plain path prefix, a glob containing ``*``, a compiled regex,
the literal ``"OPTIONS"`` (matches preflight requests) or a callable taking
the path and the request.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence, Union

from starlette.requests import Request

RouteTest = Callable[[str, Request], bool]
RoutePattern = Union[str, "re.Pattern[str]", RouteTest]
ProtectedRoutesMap = Mapping[RoutePattern, Sequence[str]]


@dataclass(frozen=True)
class ProtectedRoute:
    """A route test plus the roles of which a caller needs at least one."""

    test: RouteTest
    roles: tuple[str, ...]


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Anchored regex for a glob where ``*`` matches any run of characters."""
    return re.compile("^" + re.escape(pattern).replace(r"\*", ".*") + "$")


def normalize_pattern(pattern: RoutePattern) -> RouteTest:
    """Turn a route pattern into a test function."""
    if isinstance(pattern, re.Pattern):
        return lambda path, request: pattern.search(path) is not None
    if callable(pattern):
        return pattern
    if pattern == "OPTIONS":
        return lambda path, request: request.method == "OPTIONS"
    if "*" in pattern:
        regex = glob_to_regex(pattern)
        return lambda path, request: regex.match(path) is not None
    return lambda path, request: path.startswith(pattern)


def normalize_protected_routes(
    routes: ProtectedRoutesMap | None = None,
) -> list[ProtectedRoute]:
    """Compile a pattern -> roles map, keeping its order."""
    return [
        ProtectedRoute(test=normalize_pattern(pattern), roles=tuple(roles))
        for pattern, roles in (routes or {}).items()
    ]
