"""Module for running short-lived commands through a host's agent."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from farside.rpc.channel import AgentChannel
from farside.rpc.errors import ProtocolError
from farside.rpc.protocol import decode_base64, Method, payload_field, spawn_params


@dataclass
class CommandOutput:
    """Exit code and captured output of a finished command."""

    exit_code: int
    stdout: bytes
    stderr: bytes


async def run_command(
    channel: AgentChannel,
    command: str,
    args: Sequence[str] = (),
    cwd: Optional[str] = None,
) -> CommandOutput:
    """
    Run a command to completion on the agent's host and capture its output.

    Unlike the spawners this doesn't provide interactive access to the process, the
    agent streams back whatever the command writes until it exits. Failing to start the
    command raises AgentError with the errno name as code. Output or a result of an
    unexpected shape closes the channel with ProtocolError.
    """
    output: Dict[str, List[bytes]] = {"stdout": [], "stderr": []}

    def on_data(chunk: Dict[str, Any]) -> None:
        stream = chunk.get("stream", "stdout")

        if stream not in output:
            raise ProtocolError(f"agent sent output of unknown stream {stream!r}")

        output[stream].append(decode_base64(payload_field(chunk, "data", str)))

    try:
        result = await channel.request(
            Method.SPAWN, spawn_params(command, args, cwd), on_data=on_data
        )
        exit_code = payload_field(result, "exit_code", int)
    except ProtocolError as e:
        await channel.close(e)
        raise

    return CommandOutput(
        exit_code=exit_code,
        stdout=b"".join(output["stdout"]),
        stderr=b"".join(output["stderr"]),
    )
