from __future__ import annotations

import fnmatch
import logging
import os
import subprocess
from pathlib import Path
from typing import Iterable, Mapping


logger = logging.getLogger(__name__)


def capture_environment(
    patterns: Iterable[str],
    env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the variables of ``env`` whose names match any of ``patterns``."""
    source = os.environ if env is None else env
    patterns = list(patterns)
    return {
        key: source[key]
        for key in sorted(source)
        if any(fnmatch.fnmatchcase(key, pattern) for pattern in patterns)
    }


def git_head(root: Path) -> str | None:
    """Commit hash checked out at ``root``, or ``None`` outside a git work tree."""
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=root,
            capture_output=True,
            text=True,
            check=False,
        )
    except (FileNotFoundError, OSError) as exc:
        logger.debug("git unavailable: %s", exc)
        return None
    if completed.returncode != 0:
        return None
    commit = completed.stdout.strip()
    return commit or None
