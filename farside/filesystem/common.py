"""Data structures shared by the file system backends."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
import os
import stat
from typing import Any, Dict, Optional, Union


class EntryType(Enum):
    """Type of a file system entry."""

    FILE = "file"
    DIRECTORY = "dir"
    SYMLINK = "symlink"

    @staticmethod
    def from_mode(mode: int) -> EntryType:
        """Classify an st_mode, where special files count as regular files."""
        if stat.S_ISDIR(mode):
            return EntryType.DIRECTORY
        elif stat.S_ISLNK(mode):
            return EntryType.SYMLINK
        else:
            return EntryType.FILE


@dataclass
class Metadata:
    """Metadata of a file system entry. Every field is optional."""

    size: Optional[int] = None

    # Modification time in seconds since the epoch
    modified: Optional[float] = None

    is_hidden: bool = False
    is_readonly: bool = False

    @staticmethod
    def from_stat(path: str, st: os.stat_result) -> Metadata:
        """Instantiate from the attributes of a local os.stat_result."""
        return Metadata(
            size=st.st_size,
            modified=st.st_mtime,
            is_hidden=is_hidden_name(os.path.basename(path)),
            is_readonly=not os.access(path, os.W_OK),
        )

    @staticmethod
    def from_agent(path: str, attribs: Dict[str, Any]) -> Metadata:
        """Instantiate from the result of an agent stat call."""
        return Metadata(
            size=attribs.get("size"),
            modified=attribs.get("mtime"),
            is_hidden=is_hidden_name(os.path.basename(path)),
            is_readonly=bool(attribs.get("readonly", False)),
        )


@dataclass(frozen=True)
class Entry:
    """
    A file or directory within a directory listing.

    Symlinks remember whether their target is a directory so that they can be treated
    like the thing they point to (for example to be expanded in a file tree). Exactly
    one of is_dir and is_file holds for any entry.
    """

    path: str
    name: str
    entry_type: EntryType
    metadata: Optional[Metadata] = None
    symlink_target_is_dir: bool = False

    @staticmethod
    def symlink(path: str, name: str, target_is_dir: bool) -> Entry:
        """Instantiate a symlink entry with knowledge of what it points to."""
        return Entry(path, name, EntryType.SYMLINK, symlink_target_is_dir=target_is_dir)

    def with_metadata(self, metadata: Metadata) -> Entry:
        """Copy the entry with the given metadata attached."""
        return dataclasses.replace(self, metadata=metadata)

    @property
    def is_dir(self) -> bool:
        """Check if this is a directory or a symlink to a directory."""
        return self.entry_type == EntryType.DIRECTORY or (
            self.entry_type == EntryType.SYMLINK and self.symlink_target_is_dir
        )

    @property
    def is_file(self) -> bool:
        """Check if this is a file or a symlink to something other than a directory."""
        return self.entry_type == EntryType.FILE or (
            self.entry_type == EntryType.SYMLINK and not self.symlink_target_is_dir
        )

    @property
    def is_symlink(self) -> bool:
        return self.entry_type == EntryType.SYMLINK


def is_hidden_name(name: str) -> bool:
    return name.startswith(".") and name not in (".", "..")


@dataclass(frozen=True)
class CopyOp:
    """Patch operation that copies a range of the source file."""

    offset: int
    length: int

    def __post_init__(self) -> None:
        if self.offset < 0 or self.length < 0:
            raise ValueError(f"invalid copy range {self.offset}+{self.length}")


@dataclass(frozen=True)
class InsertOp:
    """Patch operation that inserts new data."""

    data: bytes


# Single step of a patched write, see FileSystemBackend.write_patched
PatchOp = Union[CopyOp, InsertOp]
