from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath


DEFAULT_EXCLUDES = (
    ".git/",
    ".hg/",
    ".svn/",
    "__pycache__/",
    ".pytest_cache/",
    "*.swp",
)


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _match_pattern(path: str, pattern: str) -> bool:
    path_obj = PurePosixPath(path)
    norm = _normalize_pattern(pattern)
    if not norm:
        return False
    if norm.endswith("/"):
        # Directory patterns match the directory itself and everything below it.
        name = norm.rstrip("/")
        return any(
            PurePosixPath(*path_obj.parts[: index + 1]).match(name)
            or PurePosixPath(*path_obj.parts[: index + 1]).match(f"**/{name}")
            for index in range(len(path_obj.parts))
        )
    return path_obj.match(norm) or path_obj.match(f"**/{norm}")


@dataclass(slots=True)
class PathFilter:
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDES
    internal_paths: tuple[str, ...] = ()

    def is_internal(self, path: str) -> bool:
        return any(
            path == internal or path.startswith(f"{internal}/")
            for internal in self.internal_paths
        )

    def prunes_directory(self, path: str) -> bool:
        if self.is_internal(path):
            return True
        return any(
            _match_pattern(path, pattern)
            for pattern in self.exclude_patterns
            if _normalize_pattern(pattern).endswith("/")
        )

    def matches(self, path: str) -> bool:
        if self.is_internal(path):
            return False
        if self.include_patterns and not any(
            _match_pattern(path, pattern) for pattern in self.include_patterns
        ):
            return False
        if any(_match_pattern(path, pattern) for pattern in self.exclude_patterns):
            return False
        return True


def build_path_filter(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
    *,
    internal_paths: tuple[str, ...] = (),
) -> PathFilter:
    include = tuple(_normalize_pattern(pattern) for pattern in (include_patterns or []) if pattern)
    exclude = DEFAULT_EXCLUDES + tuple(
        _normalize_pattern(pattern) for pattern in (exclude_patterns or []) if pattern
    )
    return PathFilter(
        include_patterns=include,
        exclude_patterns=exclude,
        internal_paths=tuple(path.strip("/") for path in internal_paths if path),
    )
