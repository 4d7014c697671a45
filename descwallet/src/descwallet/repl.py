"""
Interactive wallet shell.

Each line is split into arguments (quoted strings stay whole) and handed to
the same typer commands the one-shot CLI runs. The wallet and its backend
connection stay open for the whole session.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Callable

import typer
from loguru import logger

REPL_LINE_SPLIT_RE = re.compile(r""""([^"]*)"|'([^']*)'|([^\s"']+)""")

PROMPT = ">> "


def split_line(line: str) -> list[str]:
    """Split a REPL line into arguments, keeping quoted text as one argument."""
    return [
        next(group for group in match.groups() if group is not None)
        for match in REPL_LINE_SPLIT_RE.finditer(line)
    ]


def run_repl(
    command: Any,
    state: Any,
    input_fn: Callable[[str], str] = input,
) -> None:
    """
    Read-eval-print loop over `command`.

    `state` is the CLI state object shared with every command; its `runner`
    attribute holds the event loop for the session. `exit` or end of input
    leaves the loop.
    """
    with asyncio.Runner() as runner:
        state.runner = runner
        try:
            while True:
                try:
                    line = input_fn(PROMPT)
                except KeyboardInterrupt:
                    typer.echo("")
                    continue
                except EOFError:
                    break

                args = split_line(line)
                if not args:
                    continue
                if args == ["exit"]:
                    break

                logger.debug(f"repl command: {args}")
                try:
                    command.main(args, prog_name="", standalone_mode=False, obj=state)
                except typer.TyperException as e:
                    typer.echo(e.format_message(), err=True)
                except typer.Abort:
                    typer.echo("Aborted", err=True)
        finally:
            state.close()
            state.runner = None
    typer.echo("Exiting REPL")
