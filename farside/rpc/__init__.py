"""
Line-based request/response protocol for talking to a farside agent.

farside reaches remote hosts by starting a tiny agent program on them and talking to it
over its standard input/output. That imposes a couple of requirements on the protocol:

* It must work over nothing more than a pair of byte streams
    * The stream may be a local pipe or a channel tunneled through an SSH session.
    * There is no port to listen on and no second connection to open.
* It must be implementable by a single self-contained script
    * The agent is sent as source code on every start, so it can only use the Python
    standard library on the remote host.
* Multiple requests must be able to be in flight at the same time
    * A file browser fetches metadata for a whole directory at once and latency is the
    bottleneck over the internet.
* Large file contents must be streamed
    * Reads arrive as a sequence of chunks rather than one huge message.

For that reason every message is a single line of JSON (JSON Lines). Requests carry an
increasing id, responses refer back to it, and binary payloads are base64 encoded. The
protocol module defines the messages and their encoding, while the channel module does
the correlation of responses with requests over a single stream.
"""

from .channel import AgentChannel, ChannelState, RequestState
from .errors import (
    AgentError,
    DisconnectedError,
    EncodingError,
    FarsideError,
    ProtocolError,
    TransportError,
)
from .protocol import (
    decode_base64,
    decode_response,
    encode_base64,
    ls_params,
    Method,
    mkdir_params,
    path_params,
    read_params,
    Request,
    Response,
    ResponseKind,
    spawn_params,
    stat_params,
    write_params,
)

__all__ = [
    "AgentChannel",
    "ChannelState",
    "RequestState",
    "AgentError",
    "DisconnectedError",
    "EncodingError",
    "FarsideError",
    "ProtocolError",
    "TransportError",
    "decode_base64",
    "decode_response",
    "encode_base64",
    "ls_params",
    "Method",
    "mkdir_params",
    "path_params",
    "read_params",
    "Request",
    "Response",
    "ResponseKind",
    "spawn_params",
    "stat_params",
    "write_params",
]
