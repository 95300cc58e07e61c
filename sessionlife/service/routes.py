from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Iterable, Tuple

from sessionlife.config import DEFAULT_EXEMPT_ROUTES


class ExemptRoutes:
    """Decides, for the routing layer, whether a path tracks the session.

    Plain patterns match by prefix (``/login`` covers ``/login/sso``);
    patterns containing ``*`` are shell-style globs.
    """

    def __init__(self, patterns: Iterable[str] = DEFAULT_EXEMPT_ROUTES) -> None:
        self.patterns: Tuple[str, ...] = tuple(p for p in patterns if p)

    def is_exempt(self, path: str) -> bool:
        path = path or "/"
        for pattern in self.patterns:
            if "*" in pattern:
                if fnmatchcase(path, pattern):
                    return True
            elif path.startswith(pattern):
                return True
        return False

    def tracking_enabled(self, path: str) -> bool:
        return not self.is_exempt(path)
