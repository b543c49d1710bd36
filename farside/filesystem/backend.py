"""Module defining the file system interface shared by the local and remote backends."""

from abc import ABC, abstractmethod
import asyncio
import errno
from typing import List, Optional, Sequence, Union

from .common import CopyOp, Entry, InsertOp, Metadata, PatchOp

# Result of a single path in a metadata batch
MetadataResult = Union[Metadata, OSError]


class FileSystemBackend(ABC):
    """
    Asynchronous file system interface for directory browsing and file contents.

    Operations may suspend on slow or network file systems and are safe to call
    concurrently without external locking. Failures are reported as OSError subclasses
    (FileNotFoundError, PermissionError, BrokenPipeError, ...) regardless of backend.
    """

    @property
    def connection_string(self) -> Optional[str]:
        """Describe where the files live, like user@host, or None for this machine."""
        return None

    #
    # Directory browsing
    #

    @abstractmethod
    async def read_dir(self, path: str) -> List[Entry]:
        """
        List the entries of a directory (non-recursive).

        Entries come without metadata for speed, use get_metadata_batch to fetch it for
        many entries at once.
        """

    @abstractmethod
    async def get_metadata_batch(self, paths: Sequence[str]) -> List[MetadataResult]:
        """
        Get the metadata of multiple paths concurrently.

        Returns a result per path in the same order as the input. A path that fails
        yields its OSError without affecting the others.
        """

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if a path exists."""

    @abstractmethod
    async def is_dir(self, path: str) -> bool:
        """
        Check if a path is a directory, following symlinks.

        Paths that are missing or can't be inspected are not directories. Only a lost
        connection to the files raises.
        """

    @abstractmethod
    async def get_entry(self, path: str) -> Entry:
        """Get a single entry, including its metadata."""

    @abstractmethod
    async def canonicalize(self, path: str) -> str:
        """Get the absolute path with all symlinks and relative components resolved."""

    #
    # File contents
    #

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        """Read the entire contents of a file."""

    @abstractmethod
    async def read_range(self, path: str, offset: int, length: int) -> bytes:
        """Read up to length bytes of a file starting at offset."""

    @abstractmethod
    async def write_file(self, path: str, data: bytes) -> None:
        """
        Replace the contents of a file, creating it if necessary.

        The new contents appear at once, readers never see a partially written file.
        Symlinks are written through, and an existing file keeps its permissions.
        """

    @abstractmethod
    async def append_file(self, path: str, data: bytes) -> None:
        """Append data to the end of a file, creating it if necessary."""

    @abstractmethod
    async def set_file_length(self, path: str, length: int) -> None:
        """Truncate an existing file, or extend it with zero bytes."""

    @abstractmethod
    async def copy_file(self, src: str, dst: str) -> int:
        """Copy the contents of a file and return the number of bytes copied."""

    async def write_patched(self, src: str, dst: str, ops: Sequence[PatchOp]) -> None:
        """
        Write dst from ranges of src combined with new data.

        This is how an editor saves a buffer that mostly consists of unchanged pieces of
        the file it was loaded from. The operations are applied in order, src and dst
        may be the same file. A copy range reaching past the end of src fails with
        EINVAL, in which case dst is left untouched.
        """
        for op in ops:
            if not isinstance(op, (CopyOp, InsertOp)):
                raise TypeError(f"unknown patch operation {op!r}")

        async def resolve(op: PatchOp) -> bytes:
            if isinstance(op, InsertOp):
                return op.data

            data = await self.read_range(src, op.offset, op.length)

            if len(data) != op.length:
                raise OSError(
                    errno.EINVAL,
                    f"range {op.offset}+{op.length} exceeds the source file",
                    src,
                )

            return data

        parts = await asyncio.gather(*[resolve(op) for op in ops])

        await self.write_file(dst, b"".join(parts))

    @abstractmethod
    async def metadata(self, path: str) -> Metadata:
        """Get the metadata of a path, following symlinks."""

    #
    # File system structure
    #

    @abstractmethod
    async def create_dir(self, path: str, parents: bool = False) -> None:
        """Create a directory, including missing parent directories if requested."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Remove a file, symlink or empty directory."""
