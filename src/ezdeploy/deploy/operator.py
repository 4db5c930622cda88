"""Operator interaction at the deploy-key suspend points."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Protocol

import click

from ezdeploy.lib.errors import OperatorAbortError


class PromptKind(str, Enum):
    """What the deploy-key flow is waiting for."""

    ACKNOWLEDGE_KEY = "acknowledge_key"
    CHOOSE_RECOVERY = "choose_recovery"


class OperatorAnswer(str, Enum):
    """Answers an operator can give at a suspend point."""

    CONTINUE = "continue"
    RETRY = "retry"
    REGENERATE = "regenerate"
    ABORT = "abort"


class Operator(Protocol):
    """Source of answers for deploy-key prompts."""

    def answer(
        self, prompt: PromptKind, public_key: str, instructions: str
    ) -> OperatorAnswer: ...


class ClickOperator:
    """Interactive operator reading answers from the terminal."""

    def answer(
        self, prompt: PromptKind, public_key: str, instructions: str
    ) -> OperatorAnswer:
        if prompt == PromptKind.ACKNOWLEDGE_KEY:
            click.echo()
            click.secho("=============== SSH DEPLOY KEY ===============", fg="cyan")
            click.echo(public_key)
            click.secho("==============================================", fg="cyan")
            click.echo(instructions)
            try:
                click.prompt(
                    "Press Enter after adding the key",
                    default="",
                    show_default=False,
                )
            except click.Abort as e:
                raise OperatorAbortError() from e
            return OperatorAnswer.CONTINUE

        click.secho("Deploy key was not accepted by the Git host.", fg="yellow")
        click.echo(instructions)
        choice = click.prompt(
            "[r]etry, re[g]enerate key, or [q]uit",
            type=click.Choice(["r", "g", "q"], case_sensitive=False),
            default="r",
        )
        return {
            "r": OperatorAnswer.RETRY,
            "g": OperatorAnswer.REGENERATE,
            "q": OperatorAnswer.ABORT,
        }[choice.lower()]


class ScriptedOperator:
    """Operator replaying canned answers, for tests and unattended runs.

    When the script runs out, ``ACKNOWLEDGE_KEY`` prompts are answered with
    CONTINUE and recovery prompts with ABORT.
    """

    def __init__(self, answers: Iterable[OperatorAnswer] = ()) -> None:
        self._answers = list(answers)
        self.prompts: list[PromptKind] = []

    def answer(
        self, prompt: PromptKind, public_key: str, instructions: str
    ) -> OperatorAnswer:
        self.prompts.append(prompt)
        if self._answers:
            return self._answers.pop(0)
        if prompt == PromptKind.ACKNOWLEDGE_KEY:
            return OperatorAnswer.CONTINUE
        return OperatorAnswer.ABORT
