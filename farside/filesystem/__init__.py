"""
Modules that give an editor one way of accessing files, wherever they live.

An editor that works on remote projects should not have to care whether the directory
tree it shows is on the local disk or on a server on the other side of the world. Every
place files can live is therefore exposed through the same asynchronous interface,
FileSystemBackend, with exactly two implementations:

* LocalFileSystem
    * Uses the os module directly, with blocking calls moved to worker threads.
* RemoteFileSystem
    * Forwards every call as a request to the agent running on the remote host.
    * Many requests can be in flight at once, which matters a lot when a directory with
    thousands of entries needs metadata over a high latency connection.

Both report failures with the same OSError subclasses, so FileNotFoundError means the
same thing no matter where the file was supposed to be. A remote host that disappears
mid-operation shows up as BrokenPipeError.
"""

from .backend import FileSystemBackend, MetadataResult
from .common import CopyOp, Entry, EntryType, InsertOp, Metadata, PatchOp
from .local import LocalFileSystem
from .remote import RemoteFileSystem, to_os_error

__all__ = [
    "FileSystemBackend",
    "MetadataResult",
    "CopyOp",
    "Entry",
    "EntryType",
    "InsertOp",
    "Metadata",
    "PatchOp",
    "LocalFileSystem",
    "RemoteFileSystem",
    "to_os_error",
]
