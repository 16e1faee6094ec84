"""Operator decisions for verification issues.

This is the only module that talks to the terminal during a run. Issues are
handled as one batch: interactively (one prompt per issue, in a single
session) or automatically, where every issue is skipped.
"""

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from enum import Enum

import click

from dotfiles_installer.verification import IssueStatus, VerificationIssue, format_issues

logger = logging.getLogger("dotfiles_installer")

RULE = "━" * 56


class InstallationAborted(Exception):
    """Raised when the operator quits during issue resolution."""


class ChoiceKind(str, Enum):
    SKIP = "skip"
    REPLACE = "replace"


@dataclass(frozen=True)
class Choice:
    kind: ChoiceKind
    identifier: str = ""
    replacement: str = ""

    @classmethod
    def skip(cls) -> "Choice":
        return cls(kind=ChoiceKind.SKIP)

    @classmethod
    def replace(cls, identifier: str, replacement: str) -> "Choice":
        return cls(kind=ChoiceKind.REPLACE, identifier=identifier, replacement=replacement)


class UserChoices:
    """Decisions keyed by package name.

    A package can have several issues (one per missing identifier). Each
    replacement is kept per identifier; a single skip drops the whole
    package.
    """

    def __init__(self) -> None:
        self._skipped: dict[str, None] = {}
        self._replacements: dict[str, dict[str, str]] = {}

    def __len__(self) -> int:
        return len(set(self._skipped) | set(self._replacements))

    def __iter__(self) -> Iterator[str]:
        return iter(dict.fromkeys([*self._replacements, *self._skipped]))

    def store(self, package: str, choice: Choice) -> None:
        if choice.kind is ChoiceKind.SKIP:
            self._skipped[package] = None
            self._replacements.pop(package, None)
        elif package not in self._skipped:
            self._replacements.setdefault(package, {})[choice.identifier] = choice.replacement

    def should_skip(self, package: str) -> bool:
        return package in self._skipped

    def apply(self, package: str, identifiers: Sequence[str]) -> tuple[str, ...]:
        """Substitute every chosen replacement into a package's identifiers."""
        replacements = self._replacements.get(package, {})
        return tuple(replacements.get(item, item) for item in identifiers)

    @property
    def skipped(self) -> list[str]:
        return list(self._skipped)

    @property
    def replaced(self) -> dict[str, dict[str, str]]:
        return {package: dict(mapping) for package, mapping in self._replacements.items()}


def prompt_issue(issue: VerificationIssue) -> Choice:
    """Ask what to do about one issue."""
    click.echo()
    click.echo(f"Package not found: {issue.package} ({issue.backend.value})")
    click.echo(f"   Tried: {issue.identifier}")

    alternatives = list(issue.alternatives) if issue.status is IssueStatus.FUZZY else []
    if alternatives:
        click.echo("   Available alternatives:")
        for index, alternative in enumerate(alternatives, start=1):
            click.echo(f"     [{index}] {alternative}")
        question = f"   Choose [1-{len(alternatives)}/s/q]"
    else:
        click.echo("   No alternatives available")
        question = "   Choice [s/q]"
    click.echo("     [s] Skip this package")
    click.echo("     [q] Quit installation")

    answer = click.prompt(question, default="s", show_default=False).strip().lower()

    if answer == "q":
        raise InstallationAborted("Installation cancelled by user")
    if answer in ("s", ""):
        return Choice.skip()
    if answer.isdigit() and 1 <= int(answer) <= len(alternatives):
        return Choice.replace(issue.identifier, alternatives[int(answer) - 1])

    click.echo("   Invalid choice, skipping package")
    return Choice.skip()


def resolve_interactive(issues: Sequence[VerificationIssue]) -> UserChoices:
    """Prompt for every issue in one session."""
    choices = UserChoices()
    if not issues:
        return choices

    click.echo()
    click.echo(RULE)
    click.echo("Package Verification Issues")
    click.echo(RULE)
    packages = len({issue.package for issue in issues})
    click.echo(f"\nFound {len(issues)} issue(s) in {packages} package(s) that need attention.")

    for issue in issues:
        if choices.should_skip(issue.package):
            click.echo(f"\n{issue.package} is already skipped; not asking about {issue.identifier}")
            continue
        choices.store(issue.package, prompt_issue(issue))

    click.echo()
    click.echo(RULE)
    click.echo("User choices collected")
    click.echo(RULE)
    return choices


def resolve_non_interactive(issues: Sequence[VerificationIssue]) -> UserChoices:
    """Skip every issue, still listing them for visibility."""
    choices = UserChoices()
    if not issues:
        return choices

    click.echo()
    click.echo("Non-interactive mode: skipping problematic packages")
    click.echo(format_issues(issues))
    for package in dict.fromkeys(issue.package for issue in issues):
        choices.store(package, Choice.skip())
        click.echo(f"  -> Skipping: {package}")
    return choices


def resolve_issues(issues: Sequence[VerificationIssue], interactive: bool) -> UserChoices:
    if interactive:
        return resolve_interactive(issues)
    return resolve_non_interactive(issues)


def print_choices_summary(choices: UserChoices) -> None:
    if not len(choices):
        return

    click.echo()
    click.echo("User Choices Summary:")
    for package in choices.skipped:
        click.echo(f"  Skipped: {package}")
    replaced = choices.replaced
    for package, mapping in replaced.items():
        for identifier, replacement in mapping.items():
            click.echo(f"  Replaced: {package}: {identifier} -> {replacement}")
    click.echo(f"\n  Total skipped: {len(choices.skipped)}")
    click.echo(f"  Total replaced: {sum(len(mapping) for mapping in replaced.values())}")
