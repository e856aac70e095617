"""
Path resolver for KEEL

Maps a client supplied relative path onto the configured root directory.
Two checks are applied: a lexical one on the normalized input, then a
canonical one after symlinks are resolved, because a symlink inside the root
can point outside it even when the lexical path looks safe.

Case sensitivity follows the host filesystem: on a case-insensitive
filesystem ``Docs`` and ``docs`` resolve to the same entry.
"""

import logging
import os
import posixpath
import re
from pathlib import Path
from typing import Optional

from panel_errors import InvalidPathInput, PathTraversal

logger = logging.getLogger(__name__)

_WINDOWS_ABSOLUTE = re.compile(r"^(?:[A-Za-z]:|\\\\|//)")


class PathResolver:
    """
    Confines paths to a root directory.

    Args:
        root: Root directory; must exist
    """

    def __init__(self, root: str):
        canonical = os.path.realpath(root)
        if not os.path.isdir(canonical):
            raise ValueError(f"Root directory does not exist: {root}")
        self.root = Path(canonical)
        self._root_str = canonical
        self._root_prefix = canonical if canonical.endswith(os.sep) else canonical + os.sep

    def resolve(self, raw: Optional[str]) -> Path:
        """
        Resolve a client path to an absolute path inside the root.

        Args:
            raw: Path relative to the root; empty or None means the root

        Returns:
            Canonical absolute path

        Raises:
            InvalidPathInput: Not a string, or contains a null byte
            PathTraversal: Absolute input, or the path leaves the root
        """
        if raw is None:
            return self.root
        if not isinstance(raw, str):
            raise InvalidPathInput(f"path must be a string, got {type(raw).__name__}")
        if "\x00" in raw:
            raise InvalidPathInput("path contains a null byte")
        if raw == "":
            return self.root

        if raw.startswith("/") or _WINDOWS_ABSOLUTE.match(raw):
            self._deny(raw, "absolute path")

        normalized = posixpath.normpath(raw)
        if normalized == ".." or normalized.startswith("../"):
            self._deny(raw, "escapes root lexically")

        if normalized == ".":
            return self.root

        candidate = os.path.join(self._root_str, *normalized.split("/"))
        canonical = os.path.realpath(candidate)
        if canonical != self._root_str and not canonical.startswith(self._root_prefix):
            self._deny(raw, f"canonical path {canonical} outside root")

        return Path(canonical)

    def locate(self, raw: Optional[str]) -> Path:
        """
        Like ``resolve`` but without following a symlink in the last
        component, so that operations on a link act on the link itself.
        """
        resolved = self.resolve(raw)
        if resolved == self.root:
            return self.root

        normalized = posixpath.normpath(raw)
        parent, name = posixpath.split(normalized)
        return self.resolve(parent) / name

    def contains(self, path: Path) -> bool:
        """Whether an already canonical path lies inside the root"""
        s = str(path)
        return s == self._root_str or s.startswith(self._root_prefix)

    def relative(self, path: Path) -> str:
        """POSIX style path relative to the root ("." for the root)"""
        rel = os.path.relpath(str(path), self._root_str)
        return rel.replace(os.sep, "/")

    def _deny(self, raw: str, reason: str):
        logger.warning(f"Rejected path {raw!r}: {reason}")
        raise PathTraversal(f"{raw!r}: {reason}")
