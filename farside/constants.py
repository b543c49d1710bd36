"""Module defining various global constants."""

# farside version
VERSION = "1.0.0"

# Agent protocol
# The major version announced by the agent in its ready message must be identical to
# this one. Additive changes like new optional parameters only bump the minor version.
PROTOCOL_VERSION = "1.0.0"

# Default location of the configuration file.
CONFIG_PATH = "~/.farside/config"

# Interpreter used to start the agent on remote hosts.
AGENT_INTERPRETER = "python3"

# Upper bound in seconds for starting a process and completing its handshake.
HANDSHAKE_TIMEOUT = 10.0

# Upper bound in seconds for establishing the SSH session.
CONNECT_TIMEOUT = 10.0

# Maximum number of requests issued concurrently by batch operations.
MAX_CONCURRENT_REQUESTS = 32

# Line length limit of child process streams. Streamed read chunks are 64 KiB before
# base64 encoding, but a metadata-heavy listing can easily exceed asyncio's 64 KiB
# default.
STREAM_LIMIT = 16 * 1024 * 1024
