"""Module that adds flags to pytest to enable certain extra tests."""

import asyncio
import json

import pytest

from farside.rpc.channel import AgentChannel


def pytest_addoption(parser):
    parser.addoption(
        "--ssh-host",
        action="store",
        default=None,
        help="Run SSH tests against this [user@]host[:port] (requires key based login)",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "ssh: mark test as requiring an SSH reachable host to run"
    )


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--ssh-host"):
        skip_ssh = pytest.mark.skip(reason="only runs with --ssh-host option")

        for item in items:
            if "ssh" in item.keywords:
                item.add_marker(skip_ssh)


@pytest.fixture
def ssh_host(request):
    return request.config.getoption("--ssh-host")


class ScriptedWriter:
    """Agent stdin that answers every request with the messages of a script."""

    def __init__(self, reader, respond):
        self.requests = []
        self._reader = reader
        self._respond = respond

    def write(self, data):
        request = json.loads(data)
        self.requests.append(request)

        for message in self._respond(request):
            self._reader.feed_data((json.dumps(message) + "\n").encode())

    async def drain(self):
        pass

    def close(self):
        pass


@pytest.fixture
def scripted_channel():
    """
    Factory for ready channels to an agent that is simulated by a function.

    The function receives each decoded request and returns the list of messages to
    answer it with.
    """

    async def start(respond):
        reader = asyncio.StreamReader()

        channel = AgentChannel(reader, ScriptedWriter(reader, respond))
        channel.start()

        reader.feed_data(b'{"ready": true, "version": "1.0.0"}\n')
        await channel.wait_ready()

        return channel

    return start
