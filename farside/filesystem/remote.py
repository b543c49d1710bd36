"""Module that implements the file system interface on top of a host's agent."""

import asyncio
import contextlib
import errno
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import farside.constants as constants
from farside.rpc.channel import AgentChannel
from farside.rpc.errors import (
    AgentError,
    EncodingError,
    FarsideError,
    ProtocolError,
    TransportError,
)
from farside.rpc.protocol import (
    decode_base64,
    expect_object,
    ls_params,
    Method,
    mkdir_params,
    path_params,
    payload_field,
    read_params,
    stat_params,
    write_params,
)
from .backend import FileSystemBackend, MetadataResult
from .common import Entry, EntryType, Metadata


def to_os_error(e: FarsideError, path: Optional[str] = None) -> OSError:
    """
    Translate a failed agent call into the OSError a local call would have raised.

    The OSError constructor picks the matching subclass by errno, so an ENOENT from the
    agent becomes a FileNotFoundError, EACCES a PermissionError and so on.
    """
    if isinstance(e, AgentError):
        if isinstance(e.code, int):
            errnum: Optional[int] = e.code
        elif isinstance(e.code, str):
            errnum = getattr(errno, e.code, None)
        else:
            errnum = None

        if errnum is None:
            return OSError(e.message)
        else:
            return OSError(errnum, e.message, path)
    elif isinstance(e, (TransportError, ProtocolError)):
        return BrokenPipeError(errno.EPIPE, f"agent unavailable: {e}", path)
    elif isinstance(e, EncodingError):
        return OSError(errno.EIO, str(e), path)
    else:
        return OSError(str(e))


def _entry_type(attribs: Any) -> EntryType:
    value = payload_field(attribs, "type", str)

    try:
        return EntryType(value)
    except ValueError:
        raise ProtocolError(f"agent sent unknown entry type '{value}'")


class RemoteFileSystem(FileSystemBackend):
    """
    File system backend for a host reached through its agent.

    Every operation is a request on the shared agent channel, so any number of them can
    be in flight at once. Failures are translated to the same OSError subclasses that
    the local backend raises, a lost agent surfaces as BrokenPipeError.

    The agent only knows how to read and replace whole files or ranges of them, so
    appending, resizing and copying transfer the contents through this side.
    """

    def __init__(
        self,
        channel: AgentChannel,
        connection_string: Optional[str] = None,
        max_concurrent_requests: int = constants.MAX_CONCURRENT_REQUESTS,
    ):
        """Instantiate on top of a ready channel to an agent."""
        self._channel = channel
        self._connection_string = connection_string
        self._max_concurrent_requests = max_concurrent_requests

    @property
    def connection_string(self) -> Optional[str]:
        return self._connection_string

    @property
    def max_concurrent_requests(self) -> int:
        """Number of requests a batch operation keeps in flight at most."""
        return self._max_concurrent_requests

    async def close(self) -> None:
        """Close the underlying channel, which fails any requests still in flight."""
        await self._channel.close()

    @contextlib.asynccontextmanager
    async def _translate_errors(self, path: Optional[str]) -> AsyncIterator[None]:
        try:
            yield
        except ProtocolError as e:
            # An agent that sends results of the wrong shape can't be relied on for
            # anything else either
            await self._channel.close(e)
            raise to_os_error(e, path) from e
        except FarsideError as e:
            raise to_os_error(e, path) from e

    async def _call(self, method: Method, params: Dict[str, Any]) -> Dict[str, Any]:
        async with self._translate_errors(params.get("path")):
            return expect_object(await self._channel.request(method, params))

    #
    # Directory browsing
    #

    async def read_dir(self, path: str) -> List[Entry]:
        entries = []

        async with self._translate_errors(path):
            result = await self._channel.request(Method.LS, ls_params(path))

            for item in payload_field(result, "entries", list):
                entry_type = _entry_type(item)
                item_path = payload_field(item, "path", str)
                name = payload_field(item, "name", str)

                if entry_type == EntryType.SYMLINK:
                    entry = Entry.symlink(
                        item_path, name, bool(item.get("target_is_dir"))
                    )
                else:
                    entry = Entry(item_path, name, entry_type)

                entries.append(entry)

        return entries

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
        async with self._translate_errors(path):
            result = await self._channel.request(Method.EXISTS, path_params(path))
            return payload_field(result, "exists", bool)

    async def is_dir(self, path: str) -> bool:
        async with self._translate_errors(path):
            try:
                attribs = await self._channel.request(Method.STAT, stat_params(path))
            except AgentError:
                # Like os.path.isdir, anything that can't be inspected isn't a directory
                return False

            return _entry_type(attribs) == EntryType.DIRECTORY

    async def get_entry(self, path: str) -> Entry:
        name = os.path.basename(os.path.normpath(path))

        async with self._translate_errors(path):
            attribs = await self._channel.request(
                Method.STAT, stat_params(path, follow_symlinks=False)
            )
            entry_type = _entry_type(attribs)

            if entry_type == EntryType.SYMLINK:
                entry = Entry.symlink(path, name, bool(attribs.get("target_is_dir")))

                # Describe the target if there is one, the link itself otherwise
                try:
                    attribs = await self._channel.request(
                        Method.STAT, stat_params(path)
                    )
                except AgentError:
                    pass
            else:
                entry = Entry(path, name, entry_type)

            metadata = Metadata.from_agent(path, expect_object(attribs))

        return entry.with_metadata(metadata)

    async def canonicalize(self, path: str) -> str:
        async with self._translate_errors(path):
            result = await self._channel.request(Method.REALPATH, path_params(path))
            return payload_field(result, "path", str)

    #
    # File contents
    #

    async def read_file(self, path: str) -> bytes:
        return await self._read(path, None, None)

    async def read_range(self, path: str, offset: int, length: int) -> bytes:
        if offset < 0 or length < 0:
            raise OSError(errno.EINVAL, f"invalid range {offset}+{length}", path)

        return await self._read(path, offset, length)

    async def _read(
        self, path: str, offset: Optional[int], length: Optional[int]
    ) -> bytes:
        async with self._translate_errors(path):
            chunks, _ = await self._channel.request_with_data(
                Method.READ, read_params(path, offset, length)
            )

            return b"".join(
                decode_base64(payload_field(chunk, "data", str)) for chunk in chunks
            )

    async def write_file(self, path: str, data: bytes) -> None:
        await self._call(Method.WRITE, write_params(path, data))

    async def append_file(self, path: str, data: bytes) -> None:
        try:
            existing = await self.read_file(path)
        except FileNotFoundError:
            existing = b""

        await self.write_file(path, existing + data)

    async def set_file_length(self, path: str, length: int) -> None:
        if length < 0:
            raise OSError(errno.EINVAL, f"invalid file length {length}", path)

        data = await self.read_range(path, 0, length)

        await self.write_file(path, data + bytes(length - len(data)))

    async def copy_file(self, src: str, dst: str) -> int:
        data = await self.read_file(src)

        await self.write_file(dst, data)

        return len(data)

    async def metadata(self, path: str) -> Metadata:
        attribs = await self._call(Method.STAT, stat_params(path))
        return Metadata.from_agent(path, attribs)

    #
    # File system structure
    #

    async def create_dir(self, path: str, parents: bool = False) -> None:
        await self._call(Method.MKDIR, mkdir_params(path, parents))

    async def remove(self, path: str) -> None:
        await self._call(Method.RM, path_params(path))
