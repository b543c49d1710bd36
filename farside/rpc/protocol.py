"""
Module defining the messages exchanged with the agent and their JSON Lines encoding.

Every message is a single JSON object on its own line. Requests carry an id, a method
and its parameters. The agent answers with any number of data messages for that id
followed by exactly one result or error message. One ready message without an id is
sent by the agent when it starts.

Binary payloads never travel raw: file contents are always base64 encoded inside the
JSON text.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import auto, Enum
import json
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from farside.rpc.errors import EncodingError, ProtocolError


class Method(str, Enum):
    """Methods understood by the agent."""

    LS = "ls"
    READ = "read"
    WRITE = "write"
    STAT = "stat"
    EXISTS = "exists"
    MKDIR = "mkdir"
    RM = "rm"
    REALPATH = "realpath"
    SPAWN = "spawn"


class ResponseKind(Enum):
    """Type of message sent by the agent."""

    READY = auto()
    DATA = auto()
    RESULT = auto()
    ERROR = auto()


@dataclass
class Request:
    """A single call to the agent."""

    id: int
    method: Method
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Also accepts plain strings, but only from the fixed vocabulary
        self.method = Method(self.method)

    def to_json_line(self) -> str:
        """Serialize the request into a newline terminated line of JSON."""
        obj = {"id": self.id, "method": self.method.value, "params": self.params}
        return json.dumps(obj, separators=(",", ":")) + "\n"


@dataclass
class Response:
    """A single message received from the agent."""

    kind: ResponseKind
    id: Optional[int] = None
    payload: Any = None

    def is_final(self) -> bool:
        """Check if this message terminates the request it belongs to."""
        return self.kind in (ResponseKind.RESULT, ResponseKind.ERROR)

    @property
    def is_ready(self) -> bool:
        return self.kind == ResponseKind.READY


def decode_response(line: str) -> Response:
    """
    Parse a single line received from the agent.

    Raises ProtocolError if the line is not a JSON object of one of the known response
    shapes, or if a non-ready message lacks an integer id.
    """
    try:
        obj = json.loads(line)
    except ValueError as e:
        raise ProtocolError(f"invalid JSON from agent: {e}")

    if not isinstance(obj, dict):
        kind = type(obj).__name__
        raise ProtocolError(f"expected JSON object from agent, got {kind}")

    if obj.get("ready") is True:
        return Response(ResponseKind.READY, None, obj)

    request_id = obj.get("id")

    # bool is a subclass of int but never a valid id
    if not isinstance(request_id, int) or isinstance(request_id, bool):
        raise ProtocolError(f"missing or invalid id in agent message: {line.strip()}")

    if "data" in obj:
        if not isinstance(obj["data"], dict):
            raise ProtocolError(f"data message {request_id} has no data object")

        return Response(ResponseKind.DATA, request_id, obj["data"])
    elif "result" in obj:
        return Response(ResponseKind.RESULT, request_id, obj["result"])
    elif "error" in obj:
        error = obj["error"]

        if not isinstance(error, dict) or not isinstance(error.get("message"), str):
            raise ProtocolError(f"error message {request_id} has no message")

        return Response(ResponseKind.ERROR, request_id, error)
    else:
        raise ProtocolError(f"unexpected agent message shape: {line.strip()}")


#
# Binary payloads
#


def encode_base64(data: bytes) -> str:
    """Encode bytes for embedding in a JSON message."""
    return base64.b64encode(data).decode("ascii")


def decode_base64(text: str) -> bytes:
    """Decode a base64 payload, raising EncodingError if it is malformed."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise EncodingError(f"invalid base64 payload: {e}")


#
# Parameter builders
#


def path_params(path: str) -> Dict[str, Any]:
    """Parameters for methods that only take a path (exists, rm, realpath)."""
    return {"path": path}


def ls_params(path: str) -> Dict[str, Any]:
    return {"path": path}


def read_params(
    path: str, offset: Optional[int] = None, length: Optional[int] = None
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"path": path}

    if offset is not None:
        params["offset"] = offset

    if length is not None:
        params["length"] = length

    return params


def stat_params(path: str, follow_symlinks: bool = True) -> Dict[str, Any]:
    return {"path": path, "follow_symlinks": follow_symlinks}


def write_params(path: str, data: bytes) -> Dict[str, Any]:
    return {"path": path, "data": encode_base64(data)}


def mkdir_params(path: str, parents: bool = False) -> Dict[str, Any]:
    params: Dict[str, Any] = {"path": path}

    if parents:
        params["parents"] = True

    return params


def spawn_params(
    command: str, args: Sequence[str] = (), cwd: Optional[str] = None
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"cmd": command, "args": list(args)}

    if cwd is not None:
        params["cwd"] = cwd

    return params


#
# Payload access
#


def expect_object(payload: Any) -> Dict[str, Any]:
    """Check that a result or data payload received from the agent is an object."""
    if not isinstance(payload, dict):
        kind = type(payload).__name__
        raise ProtocolError(f"expected object payload from agent, got {kind}")

    return payload


def payload_field(payload: Any, key: str, kind: Union[type, Tuple[type, ...]]) -> Any:
    """
    Get a field of a result or data payload and check its type.

    Raises ProtocolError if the payload is not an object, or if the field is missing or
    of another type. A bool is never accepted where a number is expected.
    """
    value = expect_object(payload).get(key)

    if not isinstance(value, kind) or (isinstance(value, bool) and kind is not bool):
        raise ProtocolError(f"agent sent a missing or invalid '{key}': {value!r}")

    return value
