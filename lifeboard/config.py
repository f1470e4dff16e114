"""
Server and session configuration.

Defaults live in module constants. Environment variables (``LIFEBOARD_*`` and
the conventional ``PORT``) override them, and command-line flags override the
environment.
"""

import argparse
import logging
import os
from dataclasses import dataclass, replace

from lifeboard.errors import ConfigurationError


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8765
DEFAULT_BOARD = "career_vs_college"

SPIN_DURATION_SECONDS = 1.0
SPIN_MIN = 1
SPIN_MAX = 10
SETTLE_DELAY_SECONDS = 0.5     # pause after a move before the turn passes

STARTING_MONEY = 1000
LANDING_REWARD = 10


@dataclass(frozen=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    board: str = DEFAULT_BOARD
    spin_duration: float = SPIN_DURATION_SECONDS
    spin_min: int = SPIN_MIN
    spin_max: int = SPIN_MAX
    settle_delay: float = SETTLE_DELAY_SECONDS
    starting_money: int = STARTING_MONEY
    landing_reward: int = LANDING_REWARD
    log_level: str = "INFO"

    def __post_init__(self):
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Invalid port: {self.port}")
        if self.spin_duration < 0:
            raise ConfigurationError("spin_duration must not be negative")
        if self.settle_delay < 0:
            raise ConfigurationError("settle_delay must not be negative")
        if self.spin_min < 1 or self.spin_max < self.spin_min:
            raise ConfigurationError(
                f"Invalid spin range: {self.spin_min}-{self.spin_max}"
            )
        if logging.getLevelName(self.log_level.upper()) not in (
            logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL,
        ):
            raise ConfigurationError(f"Unknown log level: {self.log_level}")

    @classmethod
    def from_env(cls, environ=None):
        """Build a config from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        kwargs = {}

        port = env.get("LIFEBOARD_PORT", env.get("PORT"))
        try:
            if port is not None:
                kwargs["port"] = int(port)
            if "LIFEBOARD_SPIN_DURATION" in env:
                kwargs["spin_duration"] = float(env["LIFEBOARD_SPIN_DURATION"])
            if "LIFEBOARD_SETTLE_DELAY" in env:
                kwargs["settle_delay"] = float(env["LIFEBOARD_SETTLE_DELAY"])
            if "LIFEBOARD_STARTING_MONEY" in env:
                kwargs["starting_money"] = int(env["LIFEBOARD_STARTING_MONEY"])
            if "LIFEBOARD_LANDING_REWARD" in env:
                kwargs["landing_reward"] = int(env["LIFEBOARD_LANDING_REWARD"])
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment setting: {e}") from e

        if "LIFEBOARD_HOST" in env:
            kwargs["host"] = env["LIFEBOARD_HOST"]
        if "LIFEBOARD_BOARD" in env:
            kwargs["board"] = env["LIFEBOARD_BOARD"]
        if "LIFEBOARD_LOG_LEVEL" in env:
            kwargs["log_level"] = env["LIFEBOARD_LOG_LEVEL"]

        return cls(**kwargs)


def build_arg_parser():
    parser = argparse.ArgumentParser(
        description="Run the authoritative host for a two-player path board game.",
    )
    parser.add_argument("--host", help="Interface to bind")
    parser.add_argument("--port", type=int, help="Websocket port")
    parser.add_argument("--board", help="Built-in board name or path to a board JSON file")
    parser.add_argument("--spin-duration", type=float, help="Seconds before a spin is revealed")
    parser.add_argument("--settle-delay", type=float, help="Seconds between a move and the turn change")
    parser.add_argument("--starting-money", type=int)
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--list-boards", action="store_true", help="Print the built-in boards and exit")
    parser.add_argument("--describe-board", action="store_true", help="Print the selected board and exit")
    return parser


def parse_args(argv=None, environ=None):
    """Return ``(config, args)`` with command-line flags applied over the environment."""
    args = build_arg_parser().parse_args(argv)
    config = ServerConfig.from_env(environ)

    overrides = {
        "host": args.host,
        "port": args.port,
        "board": args.board,
        "spin_duration": args.spin_duration,
        "settle_delay": args.settle_delay,
        "starting_money": args.starting_money,
        "log_level": args.log_level,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        config = replace(config, **overrides)
    return config, args
