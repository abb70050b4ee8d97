"""
ESM Agent Entry Point

Parses the command line, merges configuration, sets up logging, constructs the agent
and runs it until an interrupt requests shutdown.
Usage: esm [-config-file PATH]... [-config-dir PATH]...
       python -m esm
"""

import argparse
import json
import sys
from collections.abc import Callable, Sequence
from logging import Logger
from typing import Any, TextIO

from dotenv import load_dotenv

from esm.agent import Agent
from esm.config import ConfigSource, EffectiveConfig, default_config, format_duration, merge
from esm.errors import (
    AgentConstructError,
    AgentRunError,
    ConfigError,
    ESMError,
    FlagParseError,
)
from esm.logger import LogConfig, setup_logging
from esm.signals import ShutdownSignal, SignalCoordinator

AgentFactory = Callable[[EffectiveConfig, Logger], Any]

DESCRIPTION = "A config file is optional, and can be either HCL or JSON format."


class _AppendSource(argparse.Action):
    """Append a ConfigSource of kind ``const`` to one shared, ordered list."""

    def __call__(self, parser, namespace, values, option_string=None):
        sources = list(getattr(namespace, self.dest, None) or [])
        sources.append(ConfigSource(self.const, values))
        setattr(namespace, self.dest, sources)


class _FlagParser(argparse.ArgumentParser):
    def error(self, message: str):
        raise FlagParseError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _FlagParser(
        prog="esm", usage="esm [options]", description=DESCRIPTION, allow_abbrev=False
    )
    parser.add_argument(
        "-config-file",
        "--config-file",
        dest="sources",
        action=_AppendSource,
        const="file",
        metavar="PATH",
        help="A config file to use. Can be either .hcl or .json format. "
        "Can be specified multiple times.",
    )
    parser.add_argument(
        "-config-dir",
        "--config-dir",
        dest="sources",
        action=_AppendSource,
        const="dir",
        metavar="PATH",
        help="A directory to look for .hcl or .json config files in. "
        "Can be specified multiple times.",
    )
    return parser


def parse_flags(argv: Sequence[str] | None = None) -> list[ConfigSource]:
    """
    Parse command-line flags into the ordered list of configuration sources.

    ``-config-file`` and ``-config-dir`` share one list, so their relative order on the
    command line is kept.

    Raises:
        FlagParseError: On unknown flags or missing values
    """
    args = build_parser().parse_args(argv)
    return list(args.sources or [])


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def print_banner(config: EffectiveConfig, out: TextIO) -> None:
    """Print the startup summary straight to the terminal, ahead of any buffered logs."""
    if config.datacenter:
        datacenter = _quote(config.datacenter)
    else:
        datacenter = "(default)"

    lines = [
        "ESM running!",
        f"            Datacenter: {datacenter}",
        f"               Service: {_quote(config.service)}",
        f"            Leader Key: {_quote(config.leader_key)}",
        f"Node Reconnect Timeout: {_quote(format_duration(config.node_reconnect_timeout))}",
        "",
        "Log data will now stream in as it occurs:",
        "",
    ]
    out.write("\n".join(lines) + "\n")
    out.flush()


def main(
    argv: Sequence[str] | None = None,
    agent_factory: AgentFactory = Agent,
    stdout: TextIO | None = None,
) -> int:
    """
    Main entry point for the ESM agent.

    Args:
        argv: Command-line arguments without the program name (defaults to sys.argv[1:])
        agent_factory: Callable building the agent from (config, logger)
        stdout: Terminal stream for the banner and logs (defaults to sys.stdout)

    Returns:
        Process exit status: 0 after a clean shutdown or -h, 1 on flag, config or log setup errors

    Raises:
        AgentConstructError: If the agent cannot be constructed
        AgentRunError: If the agent's run loop fails
    """
    # Load environment variables
    load_dotenv()
    out = stdout if stdout is not None else sys.stdout

    try:
        sources = parse_flags(argv)
    except FlagParseError as e:
        print(e, file=sys.stderr)
        print(build_parser().format_help(), file=sys.stderr)
        return 1
    except SystemExit as e:
        # -h: argparse has printed the usage and asked to exit
        return e.code if isinstance(e.code, int) else 0

    try:
        config = merge(default_config(), sources)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 1

    log_config = LogConfig(
        log_level=config.log_level,
        enable_syslog=config.enable_syslog,
        syslog_facility=config.syslog_facility,
        log_json=config.log_json,
    )
    logger, gated_writer, ok = setup_logging(log_config, stream=out)
    if not ok:
        return 1

    try:
        agent = agent_factory(config, logger)
    except ESMError:
        raise
    except Exception as e:
        raise AgentConstructError(f"Failed to construct agent: {e!s}") from e

    # Set up shutdown and signal handling
    shutdown = ShutdownSignal()
    coordinator = SignalCoordinator(shutdown, logger)
    coordinator.start()
    coordinator.install()

    try:
        print_banner(config, out)
        gated_writer.release()

        try:
            agent.run(shutdown)
        except ESMError:
            raise
        except Exception as e:
            raise AgentRunError(f"Agent run failed: {e!s}") from e
    finally:
        coordinator.close()

    logger.info("ESM agent stopped")
    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
