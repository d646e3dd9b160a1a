"""Operator confirmation for changes that are not applied automatically."""

from typing import Protocol

import click

from eb_converge.utils.logging import get_logger

logger = get_logger(__name__)


class Confirmer(Protocol):
    """Anything that can answer a yes/no question about a pending change."""

    def confirm(self, summary: str) -> bool:
        ...


class PromptConfirmer:
    """Blocks on a terminal prompt."""

    def confirm(self, summary: str) -> bool:
        click.echo(summary)
        return click.confirm("Apply these changes?", default=False)


class StaticConfirmer:
    """Returns a fixed answer. Used for --yes/--no-input and in tests."""

    def __init__(self, answer: bool):
        self.answer = answer
        self.prompts = []

    def confirm(self, summary: str) -> bool:
        self.prompts.append(summary)
        logger.info(f"Auto-{'approved' if self.answer else 'declined'}: {summary.splitlines()[0]}")
        return self.answer
