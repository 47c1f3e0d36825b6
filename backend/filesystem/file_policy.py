"""Path and file-type checks shared by the peer file endpoints and the transferrer."""

from __future__ import annotations

import posixpath
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from backend.exceptions import ValidationError


def file_extension(name: str) -> str:
    """Return the lowercased extension of ``name`` without the dot."""
    return PurePosixPath(name).suffix.lower().lstrip(".")


def is_file_type_allowed(
    name: str,
    allowed: Iterable[str],
    blocked: Iterable[str],
) -> bool:
    """Return True when the extension is allowed and not blocked.

    The blocklist wins over the allowlist.
    """
    ext = file_extension(name)
    if not ext:
        return False
    if ext in {b.lower() for b in blocked}:
        return False
    return ext in {a.lower() for a in allowed}


def validate_relative_path(relative_path: str) -> str:
    """Normalize a client-supplied relative path, rejecting traversal.

    Purely lexical: nothing is read from disk. Raises ValidationError for
    empty, absolute, parent-escaping or NUL-containing paths.
    """
    if not relative_path or "\x00" in relative_path:
        raise ValidationError("Invalid file path")
    candidate = relative_path.replace("\\", "/")
    if candidate.startswith("/") or PurePosixPath(candidate).is_absolute():
        raise ValidationError("Invalid file path")
    if len(candidate) > 1 and candidate[1] == ":":
        # Windows drive letter
        raise ValidationError("Invalid file path")
    normalized = posixpath.normpath(candidate)
    if normalized in (".", "") or normalized == ".." or normalized.startswith("../"):
        raise ValidationError("Invalid file path")
    return normalized


def resolve_within(root: Path, relative_path: str) -> Path:
    """Resolve ``relative_path`` under ``root``, rejecting escapes.

    The lexical check runs first; the symlink-resolved containment check
    runs second.
    """
    normalized = validate_relative_path(relative_path)
    root_resolved = root.resolve()
    full_path = (root_resolved / normalized).resolve()
    if not full_path.is_relative_to(root_resolved):
        raise ValidationError("Invalid file path")
    return full_path


def check_file_request(
    root: Path,
    relative_path: str,
    allowed: Iterable[str],
    blocked: Iterable[str],
) -> Path:
    """Validate a file request: containment first, then the file type.

    Raises ValidationError (400 for paths, 403 for file types).
    """
    normalized = validate_relative_path(relative_path)
    if not is_file_type_allowed(normalized, allowed, blocked):
        raise ValidationError("File type not allowed", status_code=403)
    return resolve_within(root, normalized)
