"""Terminal presentation surface built on rich."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from typing import TextIO

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text

from clinbox.core.models import (
    AnalysisState,
    Command,
    FailureChoice,
    MessageContent,
    OutcomeKind,
    Priority,
    ReplyDecision,
    SessionSummary,
)

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 500

COMMAND_KEYS: dict[str, Command] = {
    "a": Command.ARCHIVE,
    "d": Command.DELETE,
    "t": Command.TASK,
    "r": Command.REPLY,
    "o": Command.OPEN,
    "v": Command.VIEW,
    "s": Command.SKIP,
    "q": Command.QUIT,
}

FAILURE_KEYS: dict[str, FailureChoice] = {
    "r": FailureChoice.RETRY,
    "s": FailureChoice.SKIP,
    "q": FailureChoice.QUIT,
}

PRIORITY_STYLES: dict[Priority, str] = {
    Priority.URGENT: "bold red",
    Priority.ACTIONABLE: "bold yellow",
    Priority.INFORMATIVE: "bold blue",
}

HELP_LINE = (
    "[green]a[/green]rchive  [red]d[/red]elete  [cyan]t[/cyan]ask  "
    "[magenta]r[/magenta]eply  [blue]o[/blue]pen  [blue]v[/blue]iew  "
    "[dim]s[/dim]kip  [dim]q[/dim]uit"
)

SUMMARY_LABELS: dict[OutcomeKind, str] = {
    OutcomeKind.ARCHIVED: "Archived",
    OutcomeKind.DELETED: "Deleted",
    OutcomeKind.TASK_CREATED: "Tasks created",
    OutcomeKind.REPLIED: "Replied",
    OutcomeKind.SKIPPED: "Skipped",
    OutcomeKind.FAILED: "Failed",
}

CTRL_C = "\x03"
CTRL_D = "\x04"
ENTER_KEYS = ("\r", "\n")


def read_key() -> str:
    """Read one keypress from the terminal without waiting for Enter."""
    import termios
    import tty

    fd = sys.stdin.fileno()
    old_settings = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        return sys.stdin.read(1)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


def default_key_reader() -> Callable[[], str] | None:
    """Single-keypress input on a POSIX terminal, otherwise None for line prompts."""
    if os.name == "posix" and sys.stdin.isatty():
        return read_key
    return None


class ConsoleSurface:
    """Renders one message at a time and reads single-letter commands.

    On a terminal, commands and failure choices are read as single
    keypresses. With an explicit ``stream``, or when stdin is not a TTY,
    they fall back to line prompts. End of input on any prompt is treated
    as quit so a closed terminal never leaves a half-decided item behind.
    """

    def __init__(
        self,
        console: Console | None = None,
        stream: TextIO | None = None,
        key_reader: Callable[[], str] | None = None,
    ) -> None:
        self.console = console or Console()
        self._stream = stream
        if key_reader is None and stream is None:
            key_reader = default_key_reader()
        self._key_reader = key_reader

    def render(
        self,
        content: MessageContent,
        analysis: AnalysisState,
        position: int,
        total: int,
    ) -> None:
        """Show the header, analysis panel, body preview and key help."""
        self.console.rule(f"[bold cyan]Email {position}/{total}[/bold cyan]")

        header = Table(show_header=False, box=None, padding=(0, 1))
        header.add_column("Field", style="bold")
        header.add_column("Value")
        header.add_row("From:", Text(content.sender))
        header.add_row("Subject:", Text(content.subject))
        header.add_row("Date:", content.date.strftime("%Y-%m-%d %H:%M"))
        self.console.print(header)

        self.console.print(self._analysis_panel(analysis))
        self.console.print(
            Panel(
                Text(content.truncated_body(PREVIEW_CHARS)),
                title="Preview",
                border_style="dim",
            )
        )
        self.console.print(HELP_LINE)

    def ask_command(self) -> Command:
        """Read one command key. Unknown keys are rejected and asked again."""
        if self._key_reader is not None:
            key = self._ask_key(self._key_reader, "Action", list(COMMAND_KEYS), default=None)
        else:
            key = self._ask("Action", list(COMMAND_KEYS), default=None)
        if key is None:
            return Command.QUIT
        return COMMAND_KEYS[key]

    def show_full(self, content: MessageContent) -> None:
        """Print the whole body and wait for Enter."""
        self.console.print(
            Panel(
                Text(content.body or content.snippet),
                title=Text(content.subject),
                subtitle=Text(content.sender),
                border_style="blue",
            )
        )
        self._ask("Press Enter to go back", None, default="")

    def confirm_task(self, title: str, subject: str) -> bool:
        """Preview the task and ask for confirmation. End of input declines."""
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Task:", Text(title))
        table.add_row("From email:", Text(subject))
        self.console.print(Panel(table, title="New Task", border_style="cyan"))
        try:
            return Confirm.ask(
                "Create this task?", default=True, console=self.console, stream=self._stream
            )
        except EOFError:
            return False

    def review_draft(self, content: MessageContent, draft: str) -> ReplyDecision:
        """Let the user send, edit or cancel a generated reply."""
        body = draft
        while True:
            self.console.print(
                Panel(
                    Text(body),
                    title=Text(f"Reply to {content.sender_name()}"),
                    subtitle=Text(content.reply_subject()),
                    border_style="magenta",
                )
            )
            choice = self._ask("[s]end, [e]dit or [c]ancel", ["s", "e", "c"], default="s")
            if choice == "s":
                return ReplyDecision(send=True, body=body)
            if choice == "e":
                edited = self._ask("New reply text (use \\n for line breaks)", None, default=body)
                if edited:
                    body = edited.replace("\\n", "\n")
                continue
            return ReplyDecision(send=False)

    def ask_failure(self, action: str, error: str) -> FailureChoice:
        """Show a failed action and ask to retry (default), skip or quit."""
        self.console.print(
            Panel(Text(error), title=f"Failed to {action}", border_style="red")
        )
        prompt = "[r]etry, [s]kip or [q]uit"
        if self._key_reader is not None:
            key = self._ask_key(self._key_reader, prompt, list(FAILURE_KEYS), default="r")
        else:
            key = self._ask(prompt, list(FAILURE_KEYS), default="r")
        if key is None:
            return FailureChoice.QUIT
        return FAILURE_KEYS[key]

    def notify(self, message: str) -> None:
        """Confirm a completed action."""
        self.console.print(f"[green]{message}[/green]", highlight=False)

    def warn(self, message: str) -> None:
        """Report a problem that does not stop the session."""
        self.console.print(f"[yellow]{message}[/yellow]", highlight=False)

    def show_summary(self, summary: SessionSummary) -> None:
        """Print per-outcome counts for the session."""
        table = Table(title="Session Summary")
        table.add_column("Outcome", style="bold")
        table.add_column("Count", justify="right")
        for kind, label in SUMMARY_LABELS.items():
            table.add_row(label, str(summary.count(kind)))
        table.add_row("Processed", str(summary.total()), style="bold")
        self.console.print(table)
        if summary.quit:
            self.console.print("[dim]Progress saved. Run again to resume.[/dim]")

    def _analysis_panel(self, analysis: AnalysisState) -> Panel:
        if analysis.is_failed:
            return Panel(
                Text(f"AI analysis unavailable: {analysis.reason}"),
                title="Analysis",
                border_style="red",
            )
        if analysis.result is None:
            return Panel("[dim]Analyzing...[/dim]", title="Analysis", border_style="yellow")

        result = analysis.result
        style = PRIORITY_STYLES[result.priority]
        lines = Text()
        lines.append(result.priority.value.upper(), style=style)
        lines.append(f" | {result.category}")
        if result.estimated_minutes is not None:
            lines.append(f" | ~{result.estimated_minutes} min")
        lines.append(f"\n{result.summary}")
        if result.suggested_action:
            lines.append(f"\n-> {result.suggested_action}", style="italic")
        return Panel(lines, title="Analysis", border_style=style.split()[-1])

    def _ask(self, prompt: str, choices: list[str] | None, default: str | None) -> str | None:
        try:
            if default is None:
                answer = Prompt.ask(
                    Text(prompt),
                    choices=choices,
                    show_choices=False,
                    console=self.console,
                    stream=self._stream,
                )
            else:
                answer = Prompt.ask(
                    Text(prompt),
                    choices=choices,
                    default=default,
                    show_choices=False,
                    show_default=False,
                    console=self.console,
                    stream=self._stream,
                )
        except EOFError:
            logger.debug("End of input at prompt %r", prompt)
            return None
        return answer.lower() if choices else answer

    def _ask_key(
        self, reader: Callable[[], str], prompt: str, keys: list[str], default: str | None
    ) -> str | None:
        """Read single keypresses until one of ``keys`` arrives.

        Enter picks ``default`` when there is one. Ctrl-D quits, Ctrl-C
        interrupts as it would at a line prompt.
        """
        self.console.print(Text(f"{prompt}: "), end="")
        while True:
            key = reader()
            if key == CTRL_C:
                self.console.print()
                raise KeyboardInterrupt
            if key in ("", CTRL_D):
                self.console.print()
                logger.debug("End of input at prompt %r", prompt)
                return None
            if key in ENTER_KEYS and default is not None:
                key = default
            key = key.lower()
            if key in keys:
                self.console.print(key, highlight=False)
                return key
            logger.debug("Ignoring key %r at prompt %r", key, prompt)
