"""
File operations engine for KEEL

Lists, uploads, reads, writes, moves, deletes and creates entries below the
root directory. Every
operation takes the raw client path and resolves it again, even when the
caller resolved it moments before.

Uploads are streamed into a temporary file next to the target and renamed
into place with ``os.replace``, so a reader sees either the old content or
the complete new content, never a partial file. Two uploads (or an upload
and a delete) racing on the same path are not serialized: the last rename or
unlink wins.
"""

import asyncio
import errno
import logging
import os
import posixpath
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, List, Optional, Tuple

import aiofiles

from panel_errors import (
    AlreadyExists,
    ExtensionNotAllowed,
    FileNotFound,
    FileOpError,
    InvalidPathInput,
    IOFailure,
    IsADirectory,
    NotADirectory,
    NotTextFile,
    PayloadTooLarge,
)
from panel_models import EntryType, FileEntry
from path_resolver import PathResolver
from worker_pool import WorkerPool

logger = logging.getLogger(__name__)

# In-flight uploads use this prefix; such entries are hidden from listings
TEMP_PREFIX = ".keel-upload-"
TEMP_SUFFIX = ".part"

DEFAULT_MAX_UPLOAD = 10 * 1024 * 1024


def _normalize_extensions(extensions: Iterable[str]) -> List[str]:
    result = []
    for ext in extensions:
        ext = ext.strip().lower()
        if ext and not ext.startswith("."):
            ext = "." + ext
        if ext:
            result.append(ext)
    return result


def _entry_from_stat(name: str, st: os.stat_result) -> FileEntry:
    is_dir = stat.S_ISDIR(st.st_mode)
    return FileEntry(
        name=name,
        type=EntryType.DIRECTORY if is_dir else EntryType.FILE,
        size_bytes=None if is_dir else st.st_size,
        modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
    )


def translate_os_error(e: OSError, what: str) -> FileOpError:
    """Map an OSError onto the error taxonomy"""
    if e.errno == errno.ENOENT:
        return FileNotFound(f"{what}: {e}")
    if e.errno == errno.ENOTDIR:
        return NotADirectory(f"{what}: {e}")
    if e.errno == errno.EISDIR:
        return IsADirectory(f"{what}: {e}")
    if e.errno == errno.EEXIST:
        return AlreadyExists(f"{what}: {e}")
    name = errno.errorcode.get(e.errno, "EUNKNOWN") if e.errno else "EUNKNOWN"
    return IOFailure(f"{what}: {name} {e}")


class FileOperations:
    """
    File manager bound to one root directory.

    Args:
        resolver: PathResolver for the root
        pool: WorkerPool that runs blocking filesystem calls
        max_upload_bytes: Upload size limit (inclusive)
        allowed_extensions: If non-empty, only these extensions may be uploaded
        blocked_extensions: Extensions that may never be uploaded
    """

    def __init__(
        self,
        resolver: PathResolver,
        pool: WorkerPool,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD,
        allowed_extensions: Iterable[str] = (),
        blocked_extensions: Iterable[str] = ()
    ):
        if max_upload_bytes < 0:
            raise ValueError("max_upload_bytes must not be negative")
        self.resolver = resolver
        self.pool = pool
        self.max_upload_bytes = max_upload_bytes
        self.allowed_extensions = _normalize_extensions(allowed_extensions)
        self.blocked_extensions = _normalize_extensions(blocked_extensions)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list(self, raw: Optional[str] = "") -> List[FileEntry]:
        """
        List a directory.

        Directories come first, then files; each group is sorted by name.
        Symlinks that point outside the root, dangling links, in-flight
        uploads and special files are left out.

        Raises:
            FileNotFound: The directory does not exist
            NotADirectory: The path is a file
        """
        path = self.resolver.resolve(raw)
        return await self._run("list", self._list_sync, path)

    def _list_sync(self, path: Path) -> List[FileEntry]:
        st = os.stat(path)
        if not stat.S_ISDIR(st.st_mode):
            raise NotADirectory(f"{path} is not a directory")

        entries = []
        with os.scandir(path) as it:
            for de in it:
                if de.name.startswith(TEMP_PREFIX):
                    continue
                try:
                    if de.is_symlink():
                        target = Path(os.path.realpath(de.path))
                        if not self.resolver.contains(target):
                            logger.debug(f"Hiding symlink {de.path} -> {target}")
                            continue
                    entry_stat = de.stat()
                except OSError as e:
                    # dangling or looping link, unreadable entry, or removed while listing
                    logger.debug(f"Skipping {de.path}: {e}")
                    continue

                if not (stat.S_ISDIR(entry_stat.st_mode) or stat.S_ISREG(entry_stat.st_mode)):
                    continue
                entries.append(_entry_from_stat(de.name, entry_stat))

        entries.sort(key=lambda e: (e.type != EntryType.DIRECTORY, e.name))
        return entries

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        raw: str,
        chunks: AsyncIterator[bytes],
        declared_size: Optional[int] = None
    ) -> FileEntry:
        """
        Store a streamed upload at ``raw``, replacing any existing file.

        Args:
            raw: Target path relative to the root
            chunks: Async iterator of byte chunks
            declared_size: Size announced by the client, if any

        Returns:
            FileEntry for the stored file

        Raises:
            PayloadTooLarge: Declared or received size above the limit, or
                more bytes received than declared
            IOFailure: Fewer bytes received than declared, or a disk error
            FileNotFound: Parent directory missing
            NotADirectory: Parent is a file
            IsADirectory: Target is a directory (or the root)
            ExtensionNotAllowed: Extension rejected by the type policy
        """
        target = self.resolver.resolve(raw)
        if target == self.resolver.root:
            raise IsADirectory("cannot upload onto the root directory")
        self._check_name(target.name)
        self._check_extension(target.name)

        if declared_size is not None:
            if declared_size < 0:
                raise ValueError("declared_size must not be negative")
            if declared_size > self.max_upload_bytes:
                logger.info(f"Rejected upload to {raw!r}: declared {declared_size} > {self.max_upload_bytes}")
                raise PayloadTooLarge(f"declared size {declared_size} exceeds {self.max_upload_bytes}")
            limit = declared_size
        else:
            limit = self.max_upload_bytes

        await self._run("upload-check", self._check_upload_target, target)
        try:
            tmp_path = self._make_temp(target.parent)
        except OSError as e:
            raise translate_os_error(e, f"creating temporary file in {target.parent}")

        received = 0
        try:
            try:
                async with aiofiles.open(tmp_path, "wb") as f:
                    async for chunk in chunks:
                        if not chunk:
                            continue
                        received += len(chunk)
                        if received > limit:
                            raise PayloadTooLarge(
                                f"received more than {limit} bytes (max {self.max_upload_bytes})"
                            )
                        await f.write(chunk)
                    await f.flush()
                    await self._run("upload-fsync", os.fsync, f.fileno())
            except OSError as e:
                raise translate_os_error(e, f"writing {tmp_path}")

            if declared_size is not None and received < declared_size:
                raise IOFailure(f"truncated upload: {received} of {declared_size} bytes")

            # The tree may have changed while the bytes were arriving
            final = self.resolver.resolve(raw)
            if final != target:
                raise IOFailure(f"target of {raw!r} changed during upload")

            await self._commit(tmp_path, final)
        except BaseException:
            self._discard(tmp_path)
            raise

        logger.info(f"Stored {received} bytes at {self.resolver.relative(target)}")
        st = await self._run("upload-stat", os.stat, target)
        return _entry_from_stat(target.name, st)

    def _check_upload_target(self, target: Path):
        parent_stat = os.stat(target.parent)
        if not stat.S_ISDIR(parent_stat.st_mode):
            raise NotADirectory(f"parent of {target} is not a directory")
        try:
            target_stat = os.stat(target)
        except FileNotFoundError:
            return
        if stat.S_ISDIR(target_stat.st_mode):
            raise IsADirectory(f"{target} is a directory")

    @staticmethod
    def _make_temp(directory: Path) -> Path:
        fd, name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=str(directory))
        os.close(fd)
        return Path(name)

    async def _commit(self, tmp_path: Path, final: Path):
        """
        Rename the finished temp file onto the target.

        Once handed to a worker thread the rename runs to completion even if
        the upload is cancelled meanwhile; the cancellation is raised after
        it. The temp file is therefore either renamed or discarded, never
        both at once.
        """
        rename = asyncio.ensure_future(self._run("upload-rename", os.replace, str(tmp_path), str(final)))
        try:
            await asyncio.shield(rename)
        except asyncio.CancelledError:
            await asyncio.wait([rename])
            if rename.exception() is None:
                logger.info(f"Upload to {self.resolver.relative(final)} committed before cancellation")
            else:
                logger.warning(f"Rename of cancelled upload failed: {rename.exception()}")
            raise

    @staticmethod
    def _discard(tmp_path: Path):
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Could not remove temporary upload {tmp_path}: {e}")
        else:
            logger.info(f"Discarded temporary upload {tmp_path.name}")

    # ------------------------------------------------------------------
    # Delete / mkdir / download
    # ------------------------------------------------------------------

    async def delete(self, raw: str):
        """
        Delete a single file. Directories are refused.

        Raises:
            FileNotFound: Nothing at that path
            IsADirectory: The path is a directory
        """
        location = self.resolver.locate(raw)
        self._check_name(location.name)
        await self._run("delete", self._delete_sync, location)
        logger.info(f"Deleted {self.resolver.relative(location)}")

    @staticmethod
    def _delete_sync(location: Path):
        st = os.lstat(location)
        if stat.S_ISDIR(st.st_mode):
            raise IsADirectory(f"{location} is a directory")
        os.unlink(location)

    async def mkdir(self, raw: str) -> FileEntry:
        """
        Create one directory; its parent must already exist.

        Raises:
            AlreadyExists: Something already exists at that path
            FileNotFound: Parent directory missing
        """
        path = self.resolver.resolve(raw)
        if path == self.resolver.root:
            raise AlreadyExists("root directory already exists")
        self._check_name(path.name)
        await self._run("mkdir", os.mkdir, path, 0o755)
        logger.info(f"Created directory {self.resolver.relative(path)}")
        st = await self._run("mkdir-stat", os.stat, path)
        return _entry_from_stat(path.name, st)

    async def open_download(self, raw: str) -> Tuple[Path, FileEntry]:
        """
        Resolve and stat a file that is about to be streamed to a client.

        Raises:
            FileNotFound: Missing, or not a regular file
            IsADirectory: The path is a directory
        """
        path = self.resolver.resolve(raw)
        self._check_name(path.name)
        st = await self._run("download-stat", os.stat, path)
        if stat.S_ISDIR(st.st_mode):
            raise IsADirectory(f"{path} is a directory")
        if not stat.S_ISREG(st.st_mode):
            raise FileNotFound(f"{path} is not a regular file")
        return path, _entry_from_stat(path.name, st)

    # ------------------------------------------------------------------
    # Text editing
    # ------------------------------------------------------------------

    async def read_text(self, raw: str, encoding: str = "utf-8") -> Tuple[FileEntry, str]:
        """
        Read a whole file as text for the editor.

        Files larger than ``max_upload_bytes`` are refused, since an edited
        file could not be written back anyway.

        Raises:
            FileNotFound: Missing, or not a regular file
            IsADirectory: The path is a directory
            PayloadTooLarge: File above the size limit
            NotTextFile: Content does not decode with ``encoding``
        """
        path, entry = await self.open_download(raw)
        if entry.size_bytes > self.max_upload_bytes:
            raise PayloadTooLarge(f"{path} has {entry.size_bytes} bytes, limit {self.max_upload_bytes}")

        try:
            async with aiofiles.open(path, "rb") as f:
                # the file may have grown since the stat
                data = await f.read(self.max_upload_bytes + 1)
        except OSError as e:
            raise translate_os_error(e, f"reading {path}")
        if len(data) > self.max_upload_bytes:
            raise PayloadTooLarge(f"{path} grew past {self.max_upload_bytes} bytes while reading")

        try:
            text = data.decode(encoding)
        except (UnicodeDecodeError, LookupError) as e:
            raise NotTextFile(f"{path}: {e}")
        return entry, text

    async def write_text(self, raw: str, content: str, encoding: str = "utf-8") -> FileEntry:
        """
        Replace a file with ``content``, creating it if needed.

        Goes through the upload path, so the same size limit, extension policy
        and atomic rename apply.
        """
        try:
            data = content.encode(encoding)
        except (UnicodeEncodeError, LookupError) as e:
            raise NotTextFile(f"cannot encode content for {raw!r}: {e}")

        async def single_chunk():
            yield data

        return await self.upload(raw, single_chunk(), declared_size=len(data))

    # ------------------------------------------------------------------
    # Rename / move
    # ------------------------------------------------------------------

    async def rename(self, raw: str, new_name: str) -> FileEntry:
        """Give an entry a new name within its directory"""
        if (
            not isinstance(new_name, str)
            or new_name in ("", ".", "..")
            or any(c in new_name for c in ("/", "\\", "\x00"))
        ):
            raise InvalidPathInput(f"invalid new name {new_name!r}")
        if not isinstance(raw, str) or "\x00" in raw:
            raise InvalidPathInput("invalid source path")

        parent = posixpath.dirname(posixpath.normpath(raw))
        return await self.move(raw, posixpath.join(parent, new_name))

    async def move(self, source: str, destination: str) -> FileEntry:
        """
        Move a file or directory to a new path below the root.

        Both paths are resolved through the root boundary. A symlink is moved
        as a link. Existing entries are never overwritten.

        Raises:
            FileNotFound: Source missing, or destination parent missing
            AlreadyExists: Something already exists at the destination
            InvalidPathInput: Source is the root, or a directory would be
                moved into itself
            ExtensionNotAllowed: A file would get a blocked extension
        """
        src = self.resolver.locate(source)
        dst = self.resolver.locate(destination)
        if src == self.resolver.root:
            raise InvalidPathInput("cannot move the root directory")
        if dst == self.resolver.root:
            raise AlreadyExists("destination is the root directory")
        self._check_name(src.name)
        self._check_name(dst.name)

        st = await self._run("move", self._move_sync, src, dst)
        logger.info(f"Moved {self.resolver.relative(src)} -> {self.resolver.relative(dst)}")
        return _entry_from_stat(dst.name, st)

    def _move_sync(self, src: Path, dst: Path) -> os.stat_result:
        src_stat = os.lstat(src)
        if stat.S_ISDIR(src_stat.st_mode):
            if str(dst).startswith(str(src) + os.sep):
                raise InvalidPathInput(f"cannot move {src} into itself")
        else:
            self._check_extension(dst.name)

        # Not atomic against a concurrent writer at dst; last writer wins
        if os.path.lexists(dst):
            raise AlreadyExists(f"{dst} already exists")
        os.rename(src, dst)
        return os.lstat(dst)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_name(self, name: str):
        if name.startswith(TEMP_PREFIX):
            raise InvalidPathInput(f"reserved name {name!r}")

    def _check_extension(self, filename: str):
        """Apply the upload type policy"""
        ext = Path(filename).suffix.lower()

        if ext in self.blocked_extensions:
            raise ExtensionNotAllowed(f"blocked extension {ext!r}")

        if self.allowed_extensions and ext not in self.allowed_extensions:
            raise ExtensionNotAllowed(f"extension {ext!r} not in allow list")

    async def _run(self, task_id: str, func: Callable, *args):
        try:
            return await self.pool.submit_task(task_id, func, *args)
        except asyncio.TimeoutError:
            raise IOFailure(f"{task_id}: no result within {self.pool.config.task_timeout}s")
        except OSError as e:
            raise translate_os_error(e, task_id)
