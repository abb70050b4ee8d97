"""
ESM Error Module

Exception hierarchy shared by the bootstrap, configuration, logging and agent layers.
"""


class ESMError(Exception):
    """Base exception for all ESM errors."""

    pass


class FlagParseError(ESMError):
    """Raised when the command line cannot be parsed."""

    pass


class ConfigError(ESMError):
    """
    Raised when a configuration source is invalid or cannot be read.

    Attributes:
        path: Path of the offending configuration source
    """

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Error loading config from {path}: {reason}")


class LogSetupError(ESMError):
    """Raised when the log level, facility or syslog target is unusable."""

    pass


class AgentConstructError(ESMError):
    """Custom exception for agent construction failures (e.g. Redis unreachable)."""

    pass


class AgentRunError(ESMError):
    """Raised when the agent's run loop terminates with an error."""

    pass


class ShutdownAlreadyFiredError(ESMError):
    """Raised when a one-shot shutdown notification is fired a second time."""

    pass
