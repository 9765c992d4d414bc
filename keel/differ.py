from __future__ import annotations

from typing import Iterable, Mapping

from keel.models import DiffResult, ModifiedEntry, UnreadableEntry


def diff_trees(
    old: Mapping[str, str],
    new: Mapping[str, str],
    *,
    unreadable: Iterable[UnreadableEntry] | None = None,
) -> DiffResult:
    """Compare two ``path -> sha256`` maps with a single sorted merge.

    Paths are compared as plain strings: no case folding and no separator
    normalization. Paths reported as unreadable land only in ``unreadable``.
    """
    unreadable_entries = sorted(unreadable or [], key=lambda entry: entry.path)
    skipped = {entry.path for entry in unreadable_entries}

    old_paths = sorted(path for path in old if path not in skipped)
    new_paths = sorted(path for path in new if path not in skipped)

    result = DiffResult(unreadable=unreadable_entries)
    i = j = 0
    while i < len(old_paths) and j < len(new_paths):
        old_path = old_paths[i]
        new_path = new_paths[j]
        if old_path == new_path:
            if old[old_path] != new[new_path]:
                result.modified.append(
                    ModifiedEntry(path=old_path, old_hash=old[old_path], new_hash=new[new_path])
                )
            i += 1
            j += 1
        elif old_path < new_path:
            result.removed.append(old_path)
            i += 1
        else:
            result.added.append(new_path)
            j += 1

    result.removed.extend(old_paths[i:])
    result.added.extend(new_paths[j:])
    return result
