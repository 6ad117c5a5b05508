from __future__ import annotations

from typing import Optional

import questionary
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from .errors import SetupCancelledError


def _require_answer(answer: Optional[object], label: str):
    # questionary returns None when the prompt is interrupted (Ctrl-C / EOF)
    if answer is None:
        raise SetupCancelledError(f"Setup cancelled at prompt: {label}")
    return answer


class ConsoleInteraction:
    """Terminal implementation of the operator channel used by setup()."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self._console = console or Console(stderr=True)

    def prompt_text(self, label: str) -> str:
        return str(_require_answer(questionary.text(label).ask(), label))

    def prompt_secret(self, label: str) -> str:
        return str(_require_answer(questionary.password(label).ask(), label))

    def prompt_confirm(self, question: str) -> bool:
        return bool(_require_answer(questionary.confirm(question, default=False).ask(), question))

    def notify(self, message: str) -> None:
        panel = Panel(
            Text(message),
            border_style="yellow",
            padding=(1, 2),
            expand=False,
        )
        self._console.print(panel)


__all__ = ["ConsoleInteraction"]
