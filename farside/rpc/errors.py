"""
Exceptions raised by the agent protocol layer.

Transport and protocol errors are fatal to the channel they occur on: the channel is
closed and every pending or future request on it fails with the same error. Agent and
encoding errors only fail the request they belong to.
"""

from typing import Optional, Union


class FarsideError(Exception):
    """Base class of all errors raised by farside."""


class TransportError(FarsideError):
    """The byte stream to the agent could not be established or was lost."""


class DisconnectedError(TransportError):
    """The agent stream ended or was closed while requests were pending."""


class ProtocolError(FarsideError):
    """A message from the agent was malformed or had an unexpected shape."""


class AgentError(FarsideError):
    """A well-formed failure response returned by the agent for a single request."""

    def __init__(self, message: str, code: Optional[Union[str, int]] = None) -> None:
        """Instantiate with the message and (errno) code reported by the agent."""
        super().__init__(message, code)

        self.message = message
        self.code = code

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        else:
            return f"{self.message} ({self.code})"


class EncodingError(FarsideError, ValueError):
    """A binary payload was not valid base64."""
