"""Module that implements the file system interface for the local machine."""

import asyncio
import errno
import os
import os.path
import stat
from typing import Callable, List, Sequence, TypeVar
import uuid

import farside.constants as constants
from .backend import FileSystemBackend, MetadataResult
from .common import Entry, EntryType, Metadata

T = TypeVar("T")


class LocalFileSystem(FileSystemBackend):
    """
    File system backend for the machine farside runs on.

    Blocking os calls are executed in worker threads so that a slow disk or network
    mount never stalls the event loop.
    """

    def __init__(
        self, max_concurrent_requests: int = constants.MAX_CONCURRENT_REQUESTS
    ):
        """Instantiate with a bound on the number of concurrent batch operations."""
        self._max_concurrent_requests = max_concurrent_requests

    @staticmethod
    async def _run(fn: Callable[..., T], *args: object) -> T:
        return await asyncio.to_thread(fn, *args)

    #
    # Directory browsing
    #

    async def read_dir(self, path: str) -> List[Entry]:
        return await self._run(self._read_dir, path)

    @staticmethod
    def _read_dir(path: str) -> List[Entry]:
        entries = []

        with os.scandir(path) as it:
            for dir_entry in it:
                try:
                    entry_type = EntryType.from_mode(
                        dir_entry.stat(follow_symlinks=False).st_mode
                    )
                except FileNotFoundError:
                    # Vanished while listing
                    continue

                if entry_type == EntryType.SYMLINK:
                    entry = Entry.symlink(
                        dir_entry.path, dir_entry.name, os.path.isdir(dir_entry.path)
                    )
                else:
                    entry = Entry(dir_entry.path, dir_entry.name, entry_type)

                entries.append(entry)

        return sorted(entries, key=lambda e: e.name)

    async def get_metadata_batch(self, paths: Sequence[str]) -> List[MetadataResult]:
        semaphore = asyncio.Semaphore(self._max_concurrent_requests)

        async def fetch(path: str) -> MetadataResult:
            async with semaphore:
                try:
                    return await self.metadata(path)
                except OSError as e:
                    return e

        return list(await asyncio.gather(*[fetch(path) for path in paths]))

    async def exists(self, path: str) -> bool:
        return await self._run(os.path.exists, path)

    async def is_dir(self, path: str) -> bool:
        return await self._run(os.path.isdir, path)

    async def get_entry(self, path: str) -> Entry:
        return await self._run(self._get_entry, path)

    @staticmethod
    def _get_entry(path: str) -> Entry:
        st = os.stat(path, follow_symlinks=False)
        name = os.path.basename(os.path.normpath(path))

        entry_type = EntryType.from_mode(st.st_mode)

        if entry_type == EntryType.SYMLINK:
            entry = Entry.symlink(path, name, os.path.isdir(path))

            # Describe the target if there is one, the link itself otherwise
            try:
                st = os.stat(path)
            except OSError:
                pass
        else:
            entry = Entry(path, name, entry_type)

        return entry.with_metadata(Metadata.from_stat(path, st))

    async def canonicalize(self, path: str) -> str:
        return await self._run(lambda: os.path.realpath(path, strict=True))

    #
    # File contents
    #

    async def read_file(self, path: str) -> bytes:
        return await self._run(self._read_file, path)

    @staticmethod
    def _read_file(path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()

    async def read_range(self, path: str, offset: int, length: int) -> bytes:
        if offset < 0 or length < 0:
            raise OSError(errno.EINVAL, f"invalid range {offset}+{length}", path)

        return await self._run(self._read_range, path, offset, length)

    @staticmethod
    def _read_range(path: str, offset: int, length: int) -> bytes:
        with open(path, "rb") as f:
            f.seek(offset)
            return f.read(length)

    async def write_file(self, path: str, data: bytes) -> None:
        await self._run(self._write_file, path, data)

    @staticmethod
    def _write_file(path: str, data: bytes) -> None:
        """Write through a temporary file in the same directory and rename it."""
        # Replace the file a symlink points to rather than the link itself
        path = os.path.realpath(path)

        try:
            mode = stat.S_IMODE(os.stat(path).st_mode)
        except FileNotFoundError:
            mode = None

        temp_path = os.path.join(
            os.path.dirname(path), f".{os.path.basename(path)}.{uuid.uuid4().hex}.tmp"
        )

        # Created with the regular umask applied, like any new file
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            if mode is not None:
                os.chmod(temp_path, mode)

            os.replace(temp_path, path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass

            raise

    async def append_file(self, path: str, data: bytes) -> None:
        await self._run(self._append_file, path, data)

    @staticmethod
    def _append_file(path: str, data: bytes) -> None:
        with open(path, "ab") as f:
            f.write(data)

    async def set_file_length(self, path: str, length: int) -> None:
        await self._run(os.truncate, path, length)

    async def copy_file(self, src: str, dst: str) -> int:
        return await self._run(self._copy_file, src, dst)

    @classmethod
    def _copy_file(cls, src: str, dst: str) -> int:
        data = cls._read_file(src)
        cls._write_file(dst, data)

        return len(data)

    async def metadata(self, path: str) -> Metadata:
        return await self._run(self._metadata, path)

    @staticmethod
    def _metadata(path: str) -> Metadata:
        return Metadata.from_stat(path, os.stat(path))

    #
    # File system structure
    #

    async def create_dir(self, path: str, parents: bool = False) -> None:
        if parents:
            await self._run(lambda: os.makedirs(path, exist_ok=True))
        else:
            await self._run(os.mkdir, path)

    async def remove(self, path: str) -> None:
        await self._run(self._remove, path)

    @staticmethod
    def _remove(path: str) -> None:
        if stat.S_ISDIR(os.lstat(path).st_mode):
            os.rmdir(path)
        else:
            os.unlink(path)
