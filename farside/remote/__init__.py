"""
Modules that take care of reaching remote hosts and starting processes on them.

Remote hosts are reached with the system's OpenSSH client rather than a Python SSH
implementation, so that the user's existing ssh configuration (keys, agents, jump hosts,
known hosts) simply applies. One master connection per host is opened and every
process for that host is multiplexed over it.

File system access goes through the agent: a small self-contained Python program that
is sent as source code to the remote interpreter every time it is started. This means
that nothing has to be installed on the remote host apart from Python itself and that
the agent always matches the version of the client.
"""

from .commands import CommandOutput, run_command
from .connection import (
    AGENT_SOURCE,
    ConnectionParams,
    SshConnection,
    spawn_local_agent,
    start_agent,
)
from .spawner import (
    CommandNotFoundError,
    ConnectionUnavailableError,
    HandshakeTimeoutError,
    LocalProcessSpawner,
    ProcessSpawner,
    RemoteProcessSpawner,
    SpawnError,
    SpawnPermissionError,
    SpawnResult,
)

__all__ = [
    "AGENT_SOURCE",
    "CommandOutput",
    "run_command",
    "ConnectionParams",
    "SshConnection",
    "spawn_local_agent",
    "start_agent",
    "CommandNotFoundError",
    "ConnectionUnavailableError",
    "HandshakeTimeoutError",
    "LocalProcessSpawner",
    "ProcessSpawner",
    "RemoteProcessSpawner",
    "SpawnError",
    "SpawnPermissionError",
    "SpawnResult",
]
