"""
Console entry point for `qobuz-queue`.
Turns uncaught library errors into readable panels and exit codes.
"""

import asyncio
import logging
import os
import sys

import typer
from rich.console import Console

from qobuz_queue.cli.app import app
from qobuz_queue.cli.formatters import format_error_with_suggestions
from qobuz_queue.exceptions import QobuzQueueError


def main() -> None:
    """Run the Typer app with top-level error reporting."""
    if os.name == "nt":
        try:
            sys.stdout.reconfigure(encoding="utf-8")
            sys.stderr.reconfigure(encoding="utf-8")
        except (TypeError, AttributeError):
            pass

    log = logging.getLogger("qobuz_queue")
    console = Console()

    try:
        app()
    except (typer.Exit, typer.Abort):
        pass
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print(
            "\n[yellow]⚠️  Stopped by user. Unfinished jobs stay queued.[/yellow]"
        )
        sys.exit(0)
    except QobuzQueueError as e:
        console.print(f"\n{format_error_with_suggestions(e)}")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n{format_error_with_suggestions(e, {'type': 'Unexpected'})}")
        log.debug("Full traceback:", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
