"""Module that manages SSH sessions to remote hosts and the agents running on them."""

from __future__ import annotations

import asyncio
import collections
import contextlib
from dataclasses import dataclass
import inspect
import math
import os
import re
import shlex
import sys
import tempfile
from typing import Deque, List, Optional, Sequence

from farside.config import Config, RemoteConfig
from farside.filesystem.remote import RemoteFileSystem
from farside.logger import log
from farside.rpc.channel import AgentChannel
from farside.rpc.errors import DisconnectedError, FarsideError
from . import agent
from .spawner import (
    ConnectionUnavailableError,
    LocalProcessSpawner,
    ProcessSpawner,
    RemoteProcessSpawner,
    SpawnError,
    SpawnResult,
)

# Full source of the agent, passed inline to the interpreter on the target host.
AGENT_SOURCE = inspect.getsource(agent)


@dataclass
class ConnectionParams:
    """Parameters identifying an SSH destination and how to authenticate to it."""

    host: str
    user: Optional[str] = None
    port: Optional[int] = None

    # Private key used for authentication, defaults to ssh's own configuration
    identity_file: Optional[str] = None

    @property
    def destination(self) -> str:
        if self.user:
            return f"{self.user}@{self.host}"
        else:
            return self.host

    def ssh_options(self) -> List[str]:
        """Return the ssh command-line options for these parameters."""
        options = []

        if self.port is not None:
            options += ["-p", str(self.port)]

        if self.identity_file is not None:
            options += ["-i", os.path.expanduser(self.identity_file)]

        return options

    @staticmethod
    def parse(destination: str) -> ConnectionParams:
        """Parse a destination of the form [user@]host[:port]."""
        match = re.fullmatch(r"(?:([^@]+)@)?([^@:]+)(?::(\d+))?", destination)

        if not match:
            raise ValueError(f"invalid destination '{destination}'")

        user, host, port = match.groups()

        return ConnectionParams(host, user, int(port) if port else None)


class SshConnection:
    """
    Authenticated SSH session to a single remote host.

    The session is an OpenSSH master connection that all commands for the host are
    multiplexed over, so authentication only happens once. The agent is started lazily
    on first use and shared by everyone using the connection.

    A connection that has been closed or has lost its session is dead for good. There
    is no automatic reconnection, callers have to construct a new connection.
    """

    def __init__(self, params: ConnectionParams, config: Optional[RemoteConfig] = None):
        """
        Instantiate a connection. Nothing is started until it is first used.

        Without an explicit configuration the one in the user's home directory applies.
        """
        self.params = params
        self._config = config or Config.load_default().remote

        self._alive = True

        self._control_dir: Optional[tempfile.TemporaryDirectory] = None
        self._master: Optional[asyncio.subprocess.Process] = None
        self._master_stderr: Deque[str] = collections.deque(maxlen=20)
        self._tasks: List[asyncio.Task] = []

        self._agent: Optional[AgentChannel] = None
        self._channels: List[AgentChannel] = []

        self._connect_lock = asyncio.Lock()
        self._agent_lock = asyncio.Lock()

    async def __aenter__(self) -> SshConnection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def connection_string(self) -> str:
        """Return a human readable description of the destination, like user@host."""
        return self.params.destination

    @property
    def is_alive(self) -> bool:
        return self._alive

    @property
    def is_connected(self) -> bool:
        return self._alive and self._master is not None

    async def connect(self) -> None:
        """
        Establish the SSH session if that hasn't happened yet.

        Raises ConnectionUnavailableError if the connection is dead or ssh fails to
        connect within the configured timeout.
        """
        async with self._connect_lock:
            if not self._alive:
                raise ConnectionUnavailableError(
                    f"connection to {self.connection_string} is closed"
                )

            if self._master is not None:
                return

            self._control_dir = tempfile.TemporaryDirectory(prefix="farside_")

            command = self._base_ssh_command() + [
                "-o",
                "ControlMaster=yes",
                "-o",
                "ControlPersist=no",
                "-N",
                self.params.destination,
            ]

            log.debug(f"running {command}")

            try:
                master = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                    preexec_fn=ProcessSpawner._preexec,
                )
            except OSError as e:
                self._remove_control_dir()
                raise ConnectionUnavailableError(f"failed to start ssh: {e}")

            assert master.stderr is not None
            stderr_task = asyncio.get_running_loop().create_task(
                self._collect_stderr(master.stderr)
            )

            try:
                await asyncio.wait_for(
                    self._wait_for_master(master), self._config.connect_timeout
                )
            except BaseException as e:
                # Also covers cancellation so that no stray ssh process is left behind
                with contextlib.suppress(ProcessLookupError):
                    master.kill()

                await master.wait()
                await stderr_task

                self._remove_control_dir()

                if isinstance(e, asyncio.TimeoutError):
                    raise ConnectionUnavailableError(
                        f"timed out connecting to {self.connection_string}"
                    )
                else:
                    raise

            self._master = master
            self._tasks.append(stderr_task)
            self._tasks.append(
                asyncio.get_running_loop().create_task(self._watch_master(master))
            )

            log.debug(f"connected to {self.connection_string}")

    def ssh_command(
        self, remote_command: Sequence[str], working_dir: Optional[str] = None
    ) -> List[str]:
        """Return the command line that runs a command through the SSH session."""
        if self._control_dir is None:
            raise ConnectionUnavailableError(
                f"not connected to {self.connection_string}"
            )

        # ssh passes the command to the remote shell, so it needs to be escaped
        shell_command = " ".join(map(shlex.quote, remote_command))

        if working_dir is not None:
            shell_command = f"cd {shlex.quote(working_dir)} && {shell_command}"

        return self._base_ssh_command() + [
            "-o",
            "ControlMaster=no",
            "-T",
            self.params.destination,
            shell_command,
        ]

    async def agent_channel(self) -> AgentChannel:
        """Return the channel to the host's agent, starting it on first use."""
        async with self._agent_lock:
            if not self._alive:
                raise ConnectionUnavailableError(
                    f"connection to {self.connection_string} is closed"
                )

            if self._agent is not None:
                if self._agent.is_closed:
                    await self._mark_dead(
                        DisconnectedError(f"agent on {self.connection_string} exited")
                    )

                    raise ConnectionUnavailableError(
                        f"agent on {self.connection_string} is no longer running"
                    )

                return self._agent

            spawner = RemoteProcessSpawner(self, self._config.handshake_timeout)

            self._agent = await start_agent(spawner, self._config.python)
            self._channels.append(self._agent)

            return self._agent

    async def file_system(self) -> RemoteFileSystem:
        """Return a file system backend for the host, on top of its agent."""
        return RemoteFileSystem(
            await self.agent_channel(),
            self.connection_string,
            self._config.max_concurrent_requests,
        )

    async def close(self) -> None:
        """Shut down the agent and the SSH session for good."""
        await self._mark_dead(
            DisconnectedError(f"connection to {self.connection_string} closed")
        )

        if self._master is not None and self._master.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._master.terminate()

        for task in self._tasks:
            await task

        self._tasks.clear()
        self._remove_control_dir()

    async def _mark_dead(self, error: FarsideError) -> None:
        """Fail all channels built from this connection."""
        self._alive = False

        channels = self._channels
        self._channels = []

        for channel in channels:
            await channel.close(error)

    #
    # ssh process management
    #

    def _base_ssh_command(self) -> List[str]:
        assert self._control_dir is not None

        return (
            [
                "ssh",
                "-o",
                "BatchMode=yes",
                "-o",
                f"ConnectTimeout={math.ceil(self._config.connect_timeout)}",
                "-o",
                f"ControlPath={os.path.join(self._control_dir.name, 'control')}",
            ]
            + self._config.ssh_options
            + self.params.ssh_options()
        )

    async def _wait_for_master(self, master: asyncio.subprocess.Process) -> None:
        """Wait until the master connection accepts multiplexed sessions."""
        check_command = self._base_ssh_command() + [
            "-O",
            "check",
            self.params.destination,
        ]

        while True:
            if master.returncode is not None:
                detail = "; ".join(self._master_stderr)
                detail = detail or f"exit code {master.returncode}"

                raise ConnectionUnavailableError(
                    f"ssh to {self.connection_string} failed: {detail}"
                )

            check = await asyncio.create_subprocess_exec(
                *check_command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )

            if await check.wait() == 0:
                return

            await asyncio.sleep(0.1)

    async def _watch_master(self, master: asyncio.subprocess.Process) -> None:
        """Mark the connection dead as soon as the SSH session ends."""
        returncode = await master.wait()

        if self._alive:
            log.error(
                f"lost connection to {self.connection_string} (exit code {returncode})"
            )

            await self._mark_dead(
                DisconnectedError(f"connection to {self.connection_string} lost")
            )

    async def _collect_stderr(self, stream: asyncio.StreamReader) -> None:
        """Keep the most recent diagnostics of the master connection."""
        while True:
            line = await stream.readline()

            if not line:
                break

            text = line.decode(errors="replace").strip()

            if text:
                log.debug(f"ssh {self.connection_string}: {text}")
                self._master_stderr.append(text)

    def _remove_control_dir(self) -> None:
        if self._control_dir is not None:
            self._control_dir.cleanup()
            self._control_dir = None


async def start_agent(spawner: ProcessSpawner, interpreter: str) -> AgentChannel:
    """
    Start the agent with the given spawner and return a ready channel to it.

    Receiving the agent's ready message is the spawn handshake, so this fails with
    HandshakeTimeoutError if the agent does not announce itself in time.
    """
    channel: Optional[AgentChannel] = None

    async def handshake(result: SpawnResult) -> None:
        nonlocal channel

        channel = AgentChannel(result.stdout, result.stdin, result.process)
        channel.start()

        await channel.wait_ready()

    try:
        await spawner.spawn(
            interpreter, ["-u", "-c", AGENT_SOURCE], handshake=handshake
        )
    except SpawnError as e:
        if channel is not None:
            await channel.close(e)

        raise
    except BaseException:
        if channel is not None:
            await channel.close()

        raise

    assert channel is not None

    return channel


async def spawn_local_agent(config: Optional[RemoteConfig] = None) -> AgentChannel:
    """Start the agent on this machine with the current interpreter, without SSH."""
    config = config or RemoteConfig()
    spawner = LocalProcessSpawner(config.handshake_timeout)

    return await start_agent(spawner, sys.executable)
