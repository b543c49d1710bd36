import asyncio
import os
import shlex
import sys

import pytest

from farside.remote.spawner import (
    CommandNotFoundError,
    ConnectionUnavailableError,
    HandshakeTimeoutError,
    LocalProcessSpawner,
    RemoteProcessSpawner,
    SpawnError,
    SpawnPermissionError,
)
from farside.rpc.errors import DisconnectedError


class StubConnection:
    """Connection that runs "remote" commands with the local shell instead of ssh."""

    connection_string = "stub@localhost"

    def __init__(self, alive=True, override=None):
        self.is_alive = alive
        self.connects = 0
        self._override = override

    async def connect(self):
        self.connects += 1

    def ssh_command(self, remote_command, working_dir=None):
        if self._override is not None:
            return ["sh", "-c", self._override]

        shell_command = " ".join(map(shlex.quote, remote_command))

        if working_dir is not None:
            shell_command = f"cd {shlex.quote(working_dir)} && {shell_command}"

        return ["sh", "-c", shell_command]


async def expect_line(result):
    line = await result.stdout.readline()

    if not line:
        raise DisconnectedError("process exited before writing a line")


async def communicate(result):
    result.stdin.close()
    output = await result.stdout.read()
    await result.process.wait()

    return output


def test_local_spawn(tmp_path):
    async def run():
        spawner = LocalProcessSpawner()
        result = await spawner.spawn(
            sys.executable,
            ["-c", "import os, sys; print(os.getcwd()); print(sys.stdin.read())"],
            working_dir=str(tmp_path),
        )

        result.stdin.write(b"input")
        output = await communicate(result)

        assert output.decode().splitlines() == [
            os.path.realpath(tmp_path),
            "input",
        ]
        assert result.process.returncode == 0

    asyncio.run(run())


def test_local_handshake():
    async def run():
        spawner = LocalProcessSpawner(handshake_timeout=5.0)
        result = await spawner.spawn(
            sys.executable,
            ["-c", "print('ready'); print('more')"],
            handshake=expect_line,
        )

        assert await communicate(result) == b"more\n"

    asyncio.run(run())


def test_local_command_not_found():
    async def run():
        with pytest.raises(CommandNotFoundError):
            await LocalProcessSpawner().spawn("farside-nonexistent-command")

    asyncio.run(run())


def test_local_permission_denied(tmp_path):
    script = tmp_path / "script"
    script.write_text("#!/bin/sh\necho hi\n")
    script.chmod(0o644)

    async def run():
        with pytest.raises(SpawnPermissionError):
            await LocalProcessSpawner().spawn(str(script))

    asyncio.run(run())


def test_local_invalid_working_dir(tmp_path):
    async def run():
        with pytest.raises(SpawnError):
            await LocalProcessSpawner().spawn(
                sys.executable, ["-c", "pass"], working_dir=str(tmp_path / "missing")
            )

    asyncio.run(run())


def test_handshake_timeout_kills_child():
    async def run():
        spawner = LocalProcessSpawner(handshake_timeout=0.2)
        started = []

        async def handshake(result):
            started.append(result)
            await expect_line(result)

        with pytest.raises(HandshakeTimeoutError):
            await spawner.spawn(
                sys.executable,
                ["-c", "import time; time.sleep(30)"],
                handshake=handshake,
            )

        assert len(started) == 1
        assert started[0].process.returncode is not None

    asyncio.run(run())


def test_cancelled_handshake_kills_child():
    async def run():
        spawner = LocalProcessSpawner(handshake_timeout=30.0)
        started = []

        async def handshake(result):
            started.append(result)
            await expect_line(result)

        task = asyncio.ensure_future(
            spawner.spawn(
                sys.executable,
                ["-c", "import time; time.sleep(30)"],
                handshake=handshake,
            )
        )

        for _ in range(500):
            if started:
                break
            await asyncio.sleep(0.01)

        assert started
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert started[0].process.returncode is not None

    asyncio.run(run())


def test_handshake_failure_exit_code():
    async def run():
        spawner = LocalProcessSpawner(handshake_timeout=5.0)

        with pytest.raises(CommandNotFoundError):
            await spawner.spawn("sh", ["-c", "exit 127"], handshake=expect_line)

        with pytest.raises(SpawnPermissionError):
            await spawner.spawn("sh", ["-c", "exit 126"], handshake=expect_line)

        with pytest.raises(SpawnError) as exc_info:
            await spawner.spawn("sh", ["-c", "exit 3"], handshake=expect_line)

        assert "code 3" in str(exc_info.value)

    asyncio.run(run())


def test_remote_spawn(tmp_path):
    async def run():
        connection = StubConnection()
        spawner = RemoteProcessSpawner(connection)

        result = await spawner.spawn("pwd", working_dir=str(tmp_path))

        assert (await communicate(result)).decode().strip() == str(tmp_path)
        assert connection.connects == 1

    asyncio.run(run())


def test_remote_spawn_quoting():
    async def run():
        spawner = RemoteProcessSpawner(StubConnection())

        result = await spawner.spawn("echo", ["a  b", "$HOME", "'quoted'"])

        assert await communicate(result) == b"a  b $HOME 'quoted'\n"

    asyncio.run(run())


def test_remote_dead_connection():
    async def run():
        connection = StubConnection(alive=False)

        with pytest.raises(ConnectionUnavailableError):
            await RemoteProcessSpawner(connection).spawn("true")

        assert connection.connects == 0

    asyncio.run(run())


def test_remote_exit_codes():
    async def run():
        spawner = RemoteProcessSpawner(StubConnection(), handshake_timeout=5.0)

        with pytest.raises(CommandNotFoundError):
            await spawner.spawn("farside-nonexistent-command", handshake=expect_line)

        spawner = RemoteProcessSpawner(
            StubConnection(override="echo 'connection refused' >&2; exit 255"),
            handshake_timeout=5.0,
        )

        with pytest.raises(ConnectionUnavailableError):
            await spawner.spawn("true", handshake=expect_line)

    asyncio.run(run())
