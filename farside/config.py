"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
import os
import shlex
from typing import List

import farside.constants as constants
from farside.logger import log


@dataclass
class RemoteConfig:
    """Configuration variables related to remote hosts and agent sessions."""

    python: str = constants.AGENT_INTERPRETER

    handshake_timeout: float = constants.HANDSHAKE_TIMEOUT
    connect_timeout: float = constants.CONNECT_TIMEOUT

    max_concurrent_requests: int = constants.MAX_CONCURRENT_REQUESTS

    # Extra arguments for every ssh invocation, like ["-o", "ProxyJump=bastion"]
    ssh_options: List[str] = field(default_factory=list)

    @staticmethod
    def load(section: SectionProxy) -> RemoteConfig:
        """Load overridden variables from a section within a config file."""
        config = RemoteConfig()

        config.python = section.get("python", fallback=config.python)

        config.handshake_timeout = section.getfloat(
            "handshake_timeout", fallback=config.handshake_timeout
        )
        config.connect_timeout = section.getfloat(
            "connect_timeout", fallback=config.connect_timeout
        )

        config.max_concurrent_requests = section.getint(
            "max_concurrent_requests", fallback=config.max_concurrent_requests
        )

        if config.max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")

        if "ssh_options" in section:
            config.ssh_options = shlex.split(section["ssh_options"])

        return config


@dataclass
class Config:
    """Configuration variables."""

    remote: RemoteConfig = field(default_factory=RemoteConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "remote" in parser:
                config.remote = RemoteConfig.load(parser["remote"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config

    @staticmethod
    def load_default() -> Config:
        """Load the configuration from the default location in the home directory."""
        return Config.load(os.path.expanduser(constants.CONFIG_PATH))
