"""
L1 Domain — archive member path checks (pure).

An entry is unsafe when, interpreted relative to the staging root, it
would land outside it. Checks are purely lexical; the extractor runs
them over every member before writing anything.
"""

from __future__ import annotations

import posixpath


def _normalize(name: str) -> str:
    return name.replace("\\", "/")


def member_escape_reason(name: str) -> str | None:
    """Why ``name`` is unsafe as an archive member path, or None if safe."""
    name = _normalize(name)
    if not name:
        return "empty entry name"
    if name.startswith("/"):
        return "absolute path"
    if len(name) > 1 and name[1] == ":":
        return "drive-qualified path"
    normalized = posixpath.normpath(name)
    if normalized == ".." or normalized.startswith("../"):
        return "path escapes the staging root"
    return None


def link_escape_reason(member_name: str, target: str) -> str | None:
    """Why a symlink at ``member_name`` pointing to ``target`` is unsafe."""
    target = _normalize(target)
    if not target:
        return "empty link target"
    if target.startswith("/"):
        return "absolute link target"
    resolved = posixpath.normpath(
        posixpath.join(posixpath.dirname(_normalize(member_name)), target)
    )
    if resolved == ".." or resolved.startswith("../"):
        return "link target escapes the staging root"
    return None
