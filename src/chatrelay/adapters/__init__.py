"""Chat platform adapters."""

from chatrelay.adapters.console import CONSOLE_ADAPTER_KEY, ConsoleAdapter

__all__ = ["CONSOLE_ADAPTER_KEY", "ConsoleAdapter"]
