"""Module for starting child processes on the local machine or on a remote host."""

from abc import ABC, abstractmethod
import asyncio
import contextlib
import ctypes
from dataclasses import dataclass
import signal
import sys
from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
    Set,
    TYPE_CHECKING,
)

import farside.constants as constants
from farside.logger import log
from farside.rpc.errors import FarsideError, TransportError

if TYPE_CHECKING:
    from .connection import SshConnection

# Strong references to stderr forwarding tasks, the event loop only keeps weak ones
_background_tasks: Set[asyncio.Task] = set()


class SpawnError(TransportError):
    """A process could not be started (generic I/O failure)."""


class ConnectionUnavailableError(SpawnError):
    """The connection needed to start a remote process is down or could not be made."""


class CommandNotFoundError(SpawnError):
    """The command to start does not exist."""


class SpawnPermissionError(SpawnError):
    """The command exists, but is not allowed to be executed."""


class HandshakeTimeoutError(SpawnError):
    """The process did not start or complete its handshake in time."""


@dataclass
class SpawnResult:
    """A started child process with its standard input/output as duplex stream."""

    stdin: asyncio.StreamWriter
    stdout: asyncio.StreamReader
    process: asyncio.subprocess.Process

    # Background task that forwards the process' stderr to the log
    stderr_task: Optional[asyncio.Task] = None


Handshake = Callable[[SpawnResult], Awaitable[Any]]


class ProcessSpawner(ABC):
    """
    Strategy for starting a child process whose stdin/stdout form a duplex stream.

    Starting the process and the optional handshake are bounded together by the
    handshake timeout, so a spawn never blocks indefinitely. The child is killed if
    the handshake times out or fails.
    """

    def __init__(self, handshake_timeout: float = constants.HANDSHAKE_TIMEOUT):
        """Instantiate the spawner with the bound for starting a process."""
        self.handshake_timeout = handshake_timeout

    async def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        working_dir: Optional[str] = None,
        handshake: Optional[Handshake] = None,
    ) -> SpawnResult:
        """
        Start a command and perform its handshake.

        The handshake is a coroutine function that receives the started process and
        should complete once the process is known to be functional, like an agent that
        sent its ready message.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.handshake_timeout

        try:
            result = await asyncio.wait_for(
                self._start(command, list(args), working_dir), self.handshake_timeout
            )
        except asyncio.TimeoutError:
            raise HandshakeTimeoutError(
                f"{command} did not start within {self.handshake_timeout} s"
            )

        if handshake is None:
            return result

        try:
            await asyncio.wait_for(handshake(result), max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            await self._kill(result.process)

            raise HandshakeTimeoutError(
                f"{command} did not complete its handshake within"
                f" {self.handshake_timeout} s"
            )
        except FarsideError as e:
            raise await self._handshake_failure(command, result.process, e) from e
        except BaseException:
            # Cancelled mid-handshake, nobody is left to own the process
            await self._kill(result.process)
            raise

        return result

    @abstractmethod
    async def _start(
        self, command: str, args: List[str], working_dir: Optional[str]
    ) -> SpawnResult:
        """Start the actual process."""

    def _exit_error(self, command: str, returncode: int, detail: str) -> SpawnError:
        """Turn the exit code of a process that failed its handshake into an error."""
        # Exit codes of the shell for commands that don't exist or can't be executed
        if returncode == 127:
            return CommandNotFoundError(f"{command}: command not found")
        elif returncode == 126:
            return SpawnPermissionError(f"{command}: permission denied")
        else:
            return SpawnError(f"{command} exited with code {returncode}: {detail}")

    async def _handshake_failure(
        self, command: str, process: asyncio.subprocess.Process, error: Exception
    ) -> SpawnError:
        """Determine why a started process failed its handshake."""
        try:
            # A process that failed to start properly usually exits right away
            returncode = await asyncio.wait_for(process.wait(), 1.0)
        except asyncio.TimeoutError:
            await self._kill(process)
            return SpawnError(f"{command} failed its handshake: {error}")

        return self._exit_error(command, returncode, str(error))

    @classmethod
    async def _exec(
        cls, command: str, args: List[str], working_dir: Optional[str]
    ) -> SpawnResult:
        """Start a process on this machine with piped standard streams."""
        log.debug(f"running {[command] + args}")

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=working_dir,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=constants.STREAM_LIMIT,
                preexec_fn=cls._preexec,
            )
        except FileNotFoundError as e:
            raise CommandNotFoundError(f"failed to start {command}: {e}")
        except PermissionError as e:
            raise SpawnPermissionError(f"failed to start {command}: {e}")
        except OSError as e:
            raise SpawnError(f"failed to start {command}: {e}")

        assert process.stdin is not None
        assert process.stdout is not None
        assert process.stderr is not None

        stderr_task = asyncio.get_running_loop().create_task(
            cls._log_stderr(command, process.stderr)
        )
        _background_tasks.add(stderr_task)
        stderr_task.add_done_callback(_background_tasks.discard)

        return SpawnResult(process.stdin, process.stdout, process, stderr_task)

    @staticmethod
    async def _log_stderr(name: str, stream: asyncio.StreamReader) -> None:
        """Forward diagnostics written to stderr by a child process to the log."""
        while True:
            chunk = await stream.read(64 * 1024)

            if not chunk:
                break

            for line in chunk.decode(errors="replace").splitlines():
                log.debug(f"{name}: {line}")

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        # https://bugs.python.org/issue40550
        with contextlib.suppress(ProcessLookupError):
            process.kill()

        await process.wait()

    @staticmethod
    def _preexec() -> None:
        """Terminate children if farside itself is terminated."""
        if sys.platform.startswith("linux"):
            # https://github.com/torvalds/linux/blob/master/include/uapi/linux/prctl.h
            PR_SET_PDEATHSIG = 1

            libc = ctypes.CDLL("libc.so.6")
            libc.prctl(PR_SET_PDEATHSIG, signal.SIGTERM)


class LocalProcessSpawner(ProcessSpawner):
    """Spawner that starts processes directly on the local machine."""

    async def _start(
        self, command: str, args: List[str], working_dir: Optional[str]
    ) -> SpawnResult:
        return await self._exec(command, args, working_dir)


class RemoteProcessSpawner(ProcessSpawner):
    """
    Spawner that starts processes on a remote host through an SSH connection.

    The resulting stream is tunneled through the connection's SSH session rather than
    being a direct pipe to the process.
    """

    def __init__(
        self,
        connection: "SshConnection",
        handshake_timeout: float = constants.HANDSHAKE_TIMEOUT,
    ):
        """Instantiate a spawner that uses (and if necessary opens) the connection."""
        super().__init__(handshake_timeout)

        self._connection = connection

    async def _start(
        self, command: str, args: List[str], working_dir: Optional[str]
    ) -> SpawnResult:
        if not self._connection.is_alive:
            raise ConnectionUnavailableError(
                f"connection to {self._connection.connection_string} is closed"
            )

        await self._connection.connect()

        ssh_command = self._connection.ssh_command([command] + args, working_dir)

        try:
            return await self._exec(ssh_command[0], ssh_command[1:], None)
        except CommandNotFoundError as e:
            raise ConnectionUnavailableError(f"ssh client unavailable: {e}")

    def _exit_error(self, command: str, returncode: int, detail: str) -> SpawnError:
        # ssh exits with 255 for its own failures
        if returncode == 255:
            return ConnectionUnavailableError(
                f"ssh to {self._connection.connection_string} failed: {detail}"
            )
        else:
            return super()._exit_error(command, returncode, detail)
