"""
Progress reporting for polling loops.

The waiter calls ``on_poll_start`` before each describe call and
``on_poll_end`` after it. Reporters are purely observational; the waiter
swallows anything they raise.
"""
import json
import logging
from typing import Any, Dict, Optional

import click

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Base reporter. Every hook is a no-op."""

    def on_poll_start(self, attempt: int, description: str) -> None:
        pass

    def on_poll_end(self, attempt: int, response: Optional[Dict[str, Any]], done: bool) -> None:
        pass


class DotProgressReporter(ProgressReporter):
    """Prints the description once, then one dot per poll."""

    def __init__(self, err: bool = True):
        self.err = err
        self._started = False

    def on_poll_start(self, attempt: int, description: str) -> None:
        if not self._started:
            click.echo(f"⏳ {description}", nl=False, err=self.err)
            self._started = True

    def on_poll_end(self, attempt: int, response: Optional[Dict[str, Any]], done: bool) -> None:
        click.echo(".", nl=False, err=self.err)
        if done:
            click.echo("", err=self.err)
            self._started = False


class DebugProgressReporter(ProgressReporter):
    """Logs every poll and the response that ended it."""

    def on_poll_start(self, attempt: int, description: str) -> None:
        logger.debug(f"Poll #{attempt}: {description}")

    def on_poll_end(self, attempt: int, response: Optional[Dict[str, Any]], done: bool) -> None:
        if response is not None:
            logger.debug(f"Poll #{attempt} response: {json.dumps(response, default=str)}")
        if done:
            logger.debug(f"Polling finished after {attempt} attempt(s)")


def select_reporter(quiet: bool = False, debug: bool = False) -> ProgressReporter:
    """Pick the reporter for the output mode; debug wins over quiet."""
    if debug:
        return DebugProgressReporter()
    if quiet:
        return ProgressReporter()
    return DotProgressReporter()
