"""Terminal adapter for running the bridge locally."""

from __future__ import annotations

import asyncio
import itertools
import logging
import sys
from typing import TYPE_CHECKING, Callable

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

if TYPE_CHECKING:
    from chatrelay.flow.incoming import IncomingFlow

logger = logging.getLogger(__name__)

CONSOLE_ADAPTER_KEY = "console"


class ConsoleAdapter:
    """Renders bridge messages as rich panels and reads prompts from stdin.

    Edits re-render the whole message; the terminal keeps the history.
    """

    def __init__(
        self,
        console: Console | None = None,
        *,
        chat_id: str = "local",
        sender_id: str = "console",
        read_line: Callable[[], str] | None = None,
    ) -> None:
        self.console = console or Console()
        self.chat_id = chat_id
        self.sender_id = sender_id
        self.messages: dict[str, str] = {}
        self._read_line = read_line or sys.stdin.readline
        self._outgoing_ids = itertools.count(1)
        self._incoming_ids = itertools.count(1)

    def _render(self, message_id: str, text: str, *, edited: bool = False) -> None:
        title = f"{message_id} (edited)" if edited else message_id
        style = "dim" if edited else "cyan"
        self.console.print(Panel(Markdown(text), title=title, title_align="left", border_style=style))

    async def send_message(self, chat_id: str, text: str) -> str | None:
        message_id = f"out-{next(self._outgoing_ids)}"
        self.messages[message_id] = text
        self._render(message_id, text)
        return message_id

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> bool:
        if message_id not in self.messages:
            logger.warning("edit of unknown console message id=%s", message_id)
            return False
        if self.messages[message_id] == text:
            return True
        self.messages[message_id] = text
        self._render(message_id, text, edited=True)
        return True

    async def read_loop(self, flow: IncomingFlow) -> None:
        """Feed stdin lines into ``flow`` until EOF."""
        self.console.print("[bold]chatrelay[/bold] console ready. Type a prompt, /new for a new session, Ctrl-D to quit.")
        while True:
            line = await asyncio.to_thread(self._read_line)
            if not line:
                logger.info("console input closed")
                return
            text = line.rstrip("\n")
            if not text.strip():
                continue
            await flow.handle(
                self.chat_id,
                text,
                message_id=f"in-{next(self._incoming_ids)}",
                sender_id=self.sender_id,
            )
