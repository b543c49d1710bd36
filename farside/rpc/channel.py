"""Module implementing the request/response channel to a running agent."""

import asyncio
from dataclasses import dataclass, field
from enum import auto, Enum
import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from semver import VersionInfo

import farside.constants as constants
from farside.logger import log, summarize
from farside.rpc.errors import (
    AgentError,
    DisconnectedError,
    FarsideError,
    ProtocolError,
)
from farside.rpc.protocol import (
    decode_response,
    Method,
    Request,
    Response,
    ResponseKind,
)

DataConsumer = Callable[[Dict[str, Any]], None]


class ChannelState(Enum):
    """Lifecycle of a channel. CLOSED is terminal."""

    CREATED = auto()
    AWAITING_READY = auto()
    READY = auto()
    CLOSED = auto()


class RequestState(Enum):
    """Lifecycle of a single request within a channel."""

    PENDING = auto()
    STREAMING = auto()
    COMPLETED = auto()


@dataclass
class PendingRequest:
    """Correlation table entry for an in-flight request."""

    request: Request
    future: asyncio.Future
    chunks: List[Dict[str, Any]] = field(default_factory=list)
    consumer: Optional[DataConsumer] = None
    state: RequestState = RequestState.PENDING


class AgentChannel:
    """
    Logical duplex message pipe to one running agent instance.

    The channel owns the write half of the stream (all writes are serialized so request
    lines never interleave) and runs a single reader task that owns the read half and
    dispatches every incoming message to the request it belongs to. Any number of
    callers may have requests outstanding at the same time; each one only waits for its
    own response.

    Example:
    ```
    channel = AgentChannel(process.stdout, process.stdin, process)
    channel.start()
    await channel.wait_ready()
    result = await channel.request(Method.EXISTS, path_params("/tmp"))
    ```
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        process: Optional[asyncio.subprocess.Process] = None,
    ) -> None:
        """
        Instantiate a channel on top of a duplex byte stream.

        The writer needs write(), drain() and close() like asyncio.StreamWriter. If a
        process is given then it is owned by the channel and killed when it closes.
        """
        self._reader = reader
        self._writer = writer
        self._process = process

        self._state = ChannelState.CREATED
        self._ids = itertools.count(1)

        self._pending: Dict[int, PendingRequest] = {}
        self._write_lock = asyncio.Lock()

        self._ready: Optional[asyncio.Future] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._error: Optional[FarsideError] = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == ChannelState.CLOSED

    @property
    def pending_count(self) -> int:
        """Return the number of requests that have not received a response yet."""
        return len(self._pending)

    def start(self) -> None:
        """Start the reader task. Must be called from within the event loop."""
        if self._state != ChannelState.CREATED:
            raise RuntimeError(f"channel cannot be started in state {self._state.name}")

        loop = asyncio.get_running_loop()

        self._ready = loop.create_future()
        self._state = ChannelState.AWAITING_READY
        self._reader_task = loop.create_task(self._read_loop())

    async def wait_ready(self) -> Dict[str, Any]:
        """Wait for the agent's ready message and return its contents."""
        if self._state == ChannelState.CREATED:
            self.start()

        assert self._ready is not None

        return await asyncio.shield(self._ready)

    async def request(
        self,
        method: Union[Method, str],
        params: Optional[Dict[str, Any]] = None,
        on_data: Optional[DataConsumer] = None,
    ) -> Any:
        """
        Send a request and wait for its terminal response.

        Data messages received for the request are passed to on_data in arrival order.
        Returns the result value or raises AgentError for an error response. Raises the
        channel's fatal error (DisconnectedError/ProtocolError) immediately once the
        channel is closed.
        """
        pending = await self._submit(method, params or {}, on_data)
        return await self._wait(pending)

    async def request_with_data(
        self, method: Union[Method, str], params: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Dict[str, Any]], Any]:
        """Send a request and return all of its data chunks along with the result."""
        pending = await self._submit(method, params or {}, None)
        result = await self._wait(pending)

        return pending.chunks, result

    async def close(self, error: Optional[FarsideError] = None) -> None:
        """
        Close the channel and fail all pending requests.

        The owned agent process, if any, is killed. Closing is idempotent.
        """
        self._fail(error or DisconnectedError("channel closed"))

        if self._reader_task is not None and not self._reader_task.done():
            if self._reader_task is not asyncio.current_task():
                self._reader_task.cancel()

                try:
                    await self._reader_task
                except asyncio.CancelledError:
                    pass

        if self._process is not None and self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

            await self._process.wait()

    #
    # Send path
    #

    async def _submit(
        self,
        method: Union[Method, str],
        params: Dict[str, Any],
        on_data: Optional[DataConsumer],
    ) -> PendingRequest:
        """Register a new request in the correlation table and write it out."""
        self._raise_if_closed()

        if self._state != ChannelState.READY:
            await self.wait_ready()

        self._raise_if_closed()

        loop = asyncio.get_running_loop()

        request = Request(next(self._ids), method, params)
        pending = PendingRequest(request, loop.create_future(), consumer=on_data)

        self._pending[request.id] = pending

        try:
            async with self._write_lock:
                self._raise_if_closed()

                self._writer.write(request.to_json_line().encode())
                await self._writer.drain()
        except (OSError, RuntimeError) as e:
            # A failing write means the agent is gone
            error = DisconnectedError(f"failed to write to agent: {e}")
            self._fail(error)
            raise error
        except BaseException:
            # Includes cancellation while waiting for the lock or draining
            self._pending.pop(request.id, None)
            raise

        return pending

    async def _wait(self, pending: PendingRequest) -> Any:
        """Wait for the terminal response of a submitted request."""
        request = pending.request

        t_call = time.time()

        try:
            response: Response = await pending.future
        except asyncio.CancelledError:
            # The agent keeps working on it since there is no cancel method. A late
            # response for this id will simply be discarded.
            self._pending.pop(request.id, None)
            raise

        # Explicit check before logging because summarize is relatively slow
        if log.isEnabledFor(logging.DEBUG):
            t_millis = round((time.time() - t_call) * 1000)
            log.debug(
                f"agent::{request.method.value}({summarize(request.params, 80)})"
                f" - {t_millis} ms"
            )

        if response.kind == ResponseKind.ERROR:
            raise AgentError(response.payload["message"], response.payload.get("code"))

        return response.payload

    def _raise_if_closed(self) -> None:
        if self._state == ChannelState.CLOSED:
            assert self._error is not None
            raise self._error

    #
    # Receive path
    #

    async def _read_loop(self) -> None:
        """Read and dispatch messages until end of stream or a fatal error."""
        try:
            while True:
                line = await self._reader.readline()

                if not line:
                    self._fail(DisconnectedError("agent closed the connection"))
                    break

                if not line.strip():
                    continue

                try:
                    response = decode_response(line.decode("utf-8"))
                except UnicodeDecodeError as e:
                    raise ProtocolError(f"agent sent non UTF-8 data: {e}")

                self._dispatch(response)
        except asyncio.CancelledError:
            raise
        except FarsideError as e:
            self._fail(e)
        except ValueError as e:
            # Raised by readline for lines exceeding the stream limit
            self._fail(ProtocolError(f"agent sent an oversized line: {e}"))
        except OSError as e:
            self._fail(DisconnectedError(f"failed to read from agent: {e}"))

    def _dispatch(self, response: Response) -> None:
        """Route a single incoming message."""
        if response.kind == ResponseKind.READY:
            self._on_ready(response.payload)
            return

        if self._state != ChannelState.READY:
            raise ProtocolError(f"agent sent message {response.id} before ready")

        assert response.id is not None

        pending = self._pending.get(response.id)

        if pending is None:
            # Abandoned by its caller
            log.debug(f"discarding response for unknown request {response.id}")
            return

        if response.kind == ResponseKind.DATA:
            pending.state = RequestState.STREAMING
            pending.chunks.append(response.payload)

            if pending.consumer is not None:
                try:
                    pending.consumer(response.payload)
                except Exception as e:
                    # Only fails this request, later messages for it are discarded
                    del self._pending[response.id]

                    pending.state = RequestState.COMPLETED

                    if not pending.future.done():
                        pending.future.set_exception(e)
        else:
            del self._pending[response.id]

            pending.state = RequestState.COMPLETED

            if not pending.future.done():
                pending.future.set_result(response)

    def _on_ready(self, info: Dict[str, Any]) -> None:
        """Handle the unsolicited ready message of the agent."""
        assert self._ready is not None

        if self._state != ChannelState.AWAITING_READY:
            raise ProtocolError("agent sent more than one ready message")

        version = info.get("version", "")

        try:
            agent_major = VersionInfo.parse(str(version)).major
        except ValueError:
            raise ProtocolError(f"agent announced invalid protocol version '{version}'")

        if agent_major != VersionInfo.parse(constants.PROTOCOL_VERSION).major:
            raise ProtocolError(
                f"incompatible agent protocol {version},"
                f" expected {constants.PROTOCOL_VERSION}"
            )

        log.debug(f"agent ready: {summarize(info)}")

        self._state = ChannelState.READY
        self._ready.set_result(info)

    def _fail(self, error: FarsideError) -> None:
        """Move to the terminal closed state and fail everything outstanding."""
        if self._state == ChannelState.CLOSED:
            return

        if self._state != ChannelState.CREATED:
            log.debug(f"closing agent channel: {error}")

        self._state = ChannelState.CLOSED
        self._error = error

        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            # Nobody might be waiting for the ready message anymore
            self._ready.exception()

        pending = list(self._pending.values())
        self._pending.clear()

        for p in pending:
            p.state = RequestState.COMPLETED

            if not p.future.done():
                p.future.set_exception(error)

        try:
            self._writer.close()
        except (OSError, RuntimeError):
            pass
