import asyncio
import os
import tempfile

import pytest

from farside.config import RemoteConfig
from farside.filesystem import RemoteFileSystem
from farside.remote.commands import run_command
from farside.remote.connection import (
    AGENT_SOURCE,
    ConnectionParams,
    spawn_local_agent,
    SshConnection,
    start_agent,
)
from farside.remote.spawner import (
    CommandNotFoundError,
    ConnectionUnavailableError,
    LocalProcessSpawner,
    SpawnError,
)
from farside.rpc.channel import ChannelState
from farside.rpc.errors import DisconnectedError
from farside.rpc.protocol import Method, path_params


def test_params_parse():
    assert ConnectionParams.parse("host") == ConnectionParams("host")
    assert ConnectionParams.parse("alice@host") == ConnectionParams("host", "alice")
    assert ConnectionParams.parse("alice@10.0.0.1:2222") == ConnectionParams(
        "10.0.0.1", "alice", 2222
    )


@pytest.mark.parametrize("destination", ["", "@host", "host:port", "a@b@c"])
def test_params_parse_invalid(destination):
    with pytest.raises(ValueError):
        ConnectionParams.parse(destination)


def test_params_destination():
    assert ConnectionParams("host").destination == "host"
    assert ConnectionParams("host", "bob").destination == "bob@host"


def test_params_ssh_options():
    assert ConnectionParams("host").ssh_options() == []

    params = ConnectionParams("host", port=22, identity_file="~/.ssh/id_test")
    assert params.ssh_options() == [
        "-p",
        "22",
        "-i",
        os.path.expanduser("~/.ssh/id_test"),
    ]


def test_connection_string():
    connection = SshConnection(ConnectionParams("host", "bob"), RemoteConfig())
    assert connection.connection_string == "bob@host"


def test_ssh_command_requires_connection():
    connection = SshConnection(ConnectionParams("host"), RemoteConfig())

    with pytest.raises(ConnectionUnavailableError):
        connection.ssh_command(["ls"])


def test_ssh_command_quoting():
    config = RemoteConfig(ssh_options=["-o", "ProxyJump=bastion"])
    connection = SshConnection(ConnectionParams("host", "bob", 2222), config)

    connection._control_dir = tempfile.TemporaryDirectory()

    try:
        command = connection.ssh_command(["echo", "a b", "$HOME"], "/my dir")

        assert command[0] == "ssh"
        assert "BatchMode=yes" in command
        assert "ProxyJump=bastion" in command
        assert command[command.index("-p") + 1] == "2222"
        assert command[-2] == "bob@host"
        assert command[-1] == "cd '/my dir' && echo 'a b' '$HOME'"

    finally:
        connection._control_dir.cleanup()


def test_connect_failure():
    # Fails both with and without an ssh client installed
    config = RemoteConfig(ssh_options=["-o", "ProxyCommand=false"], connect_timeout=5.0)

    async def run():
        connection = SshConnection(ConnectionParams("farside.invalid"), config)

        with pytest.raises(ConnectionUnavailableError):
            await connection.agent_channel()

        assert not connection.is_connected

        await connection.close()

    asyncio.run(run())


def test_closed_connection_refuses():
    async def run():
        connection = SshConnection(ConnectionParams("host"), RemoteConfig())
        await connection.close()

        assert not connection.is_alive

        with pytest.raises(ConnectionUnavailableError):
            await connection.connect()

        with pytest.raises(ConnectionUnavailableError):
            await connection.agent_channel()

    asyncio.run(run())


def test_agent_source():
    assert "def main():" in AGENT_SOURCE
    compile(AGENT_SOURCE, "agent", "exec")


def test_local_agent():
    async def run():
        channel = await spawn_local_agent(RemoteConfig())

        assert channel.state == ChannelState.READY
        assert await channel.request(Method.EXISTS, path_params("/")) == {
            "exists": True
        }

        await channel.close()

        with pytest.raises(DisconnectedError):
            await channel.request(Method.EXISTS, path_params("/"))

    asyncio.run(run())


def test_agent_missing_interpreter():
    async def run():
        with pytest.raises(CommandNotFoundError):
            await start_agent(LocalProcessSpawner(5.0), "farside-nonexistent-python")

    asyncio.run(run())


def test_agent_wrong_interpreter():
    async def run():
        # Exits without ever sending a ready message
        with pytest.raises(SpawnError):
            await start_agent(LocalProcessSpawner(5.0), "false")

    asyncio.run(run())


class RecordingSpawner(LocalProcessSpawner):
    """Local spawner that remembers the processes it started."""

    def __init__(self, handshake_timeout):
        super().__init__(handshake_timeout)
        self.results = []

    async def _start(self, command, args, working_dir):
        result = await super()._start(command, args, working_dir)
        self.results.append(result)
        return result


def test_agent_cancelled_during_handshake(tmp_path):
    # Starts fine but never announces itself
    interpreter = tmp_path / "silent-python"
    interpreter.write_text("#!/bin/sh\nexec sleep 30\n")
    os.chmod(interpreter, 0o755)

    async def run():
        spawner = RecordingSpawner(30.0)
        task = asyncio.ensure_future(start_agent(spawner, str(interpreter)))

        for _ in range(500):
            if spawner.results:
                break
            await asyncio.sleep(0.01)

        assert spawner.results
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert spawner.results[0].process.returncode is not None

    asyncio.run(run())


def test_file_system_uses_config(monkeypatch):
    async def run():
        config = RemoteConfig(max_concurrent_requests=3)
        connection = SshConnection(ConnectionParams("host", "alice"), config)

        channel = await spawn_local_agent(RemoteConfig())

        async def agent_channel():
            return channel

        monkeypatch.setattr(connection, "agent_channel", agent_channel)

        fs = await connection.file_system()

        assert fs.connection_string == "alice@host"
        assert fs.max_concurrent_requests == 3
        assert await fs.exists("/")

        await fs.close()
        assert channel.is_closed

    asyncio.run(run())


@pytest.mark.ssh
def test_ssh_session(ssh_host):
    async def run():
        params = ConnectionParams.parse(ssh_host)

        async with SshConnection(params, RemoteConfig()) as connection:
            channel = await connection.agent_channel()
            assert await connection.agent_channel() is channel

            output = await run_command(channel, "echo", ["hello world"])
            assert output.exit_code == 0
            assert output.stdout == b"hello world\n"

            fs = RemoteFileSystem(channel, connection.connection_string)
            home = (await run_command(channel, "pwd")).stdout.decode().strip()

            assert await fs.is_dir(home)

        assert channel.is_closed

        with pytest.raises(ConnectionUnavailableError):
            await connection.agent_channel()

    asyncio.run(run())
