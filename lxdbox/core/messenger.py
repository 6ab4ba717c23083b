"""User-facing progress output.

The core never prints directly; it reports through a Messenger so that the
host decides how (and whether) text reaches the user.
"""
from abc import ABC, abstractmethod
from typing import Optional

from rich.console import Console
from rich.markup import escape

LEVELS = ("info", "warn", "error", "detail")


class Messenger(ABC):
    """Narrow output interface consumed by the driver, composer, and runner."""

    @abstractmethod
    def say(self, level: str, message: str) -> None:
        """Emit a message at one of LEVELS."""

    def info(self, message: str) -> None:
        self.say("info", message)

    def warn(self, message: str) -> None:
        self.say("warn", message)

    def error(self, message: str) -> None:
        self.say("error", message)

    def detail(self, message: str) -> None:
        self.say("detail", message)


class ConsoleMessenger(Messenger):
    """Messenger writing `==> machine: text` lines to a rich console."""

    STYLES = {
        "info": "bold",
        "warn": "yellow",
        "error": "red",
        "detail": "dim",
    }

    def __init__(self, machine_name: str, console: Optional[Console] = None):
        self.machine_name = machine_name
        self.console = console or Console()

    def say(self, level: str, message: str) -> None:
        if level not in LEVELS:
            raise ValueError(f"Unknown message level: {level}")

        style = self.STYLES[level]
        prefix = "   " if level == "detail" else "==>"
        self.console.print(
            f"[{style}]{prefix} {escape(self.machine_name)}: {escape(message)}[/{style}]"
        )


class NullMessenger(Messenger):
    """Messenger that records nothing; used when no host output is wanted."""

    def say(self, level: str, message: str) -> None:
        if level not in LEVELS:
            raise ValueError(f"Unknown message level: {level}")
