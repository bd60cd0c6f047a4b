"""Parse shell-style descriptor commands into explicit command specs.

Descriptor ``build`` and ``install`` lines look like shell, but they are never
handed to a shell. Each line is tokenized with :mod:`shlex`, ``$VAR`` and
``${VAR}`` references are expanded per token from the build variables, and a
trailing ``> path`` (or ``>> path``) becomes a stdout redirect. Pipes, command
chaining and unknown variables are rejected up front so a descriptor never
depends on behavior the process runner does not provide.
"""

from __future__ import annotations

import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from string import Template

from stagepack.errors import DescriptorError

_SHELL_OPERATORS = {"|", "||", "&&", ";", "&", "<", "2>", "2>&1", "&>"}


@dataclass(frozen=True, slots=True)
class CommandSpec:
    argv: tuple[str, ...]
    source: str
    cwd: Path | None = None
    stdout: Path | None = None
    append: bool = False

    @property
    def program(self) -> str:
        return self.argv[0]


def _expand(token: str, variables: Mapping[str, str], source: str) -> str:
    try:
        return Template(token).substitute(variables)
    except KeyError as exc:
        raise DescriptorError(f"undefined variable ${exc.args[0]} in command: {source}") from exc
    except ValueError as exc:
        raise DescriptorError(f"invalid variable reference in command: {source}") from exc


def _split_redirect(tokens: list[str], source: str) -> tuple[list[str], str | None, bool]:
    for index, token in enumerate(tokens):
        if token in {">", ">>"}:
            if index != len(tokens) - 2:
                raise DescriptorError(f"redirect must be followed by exactly one path: {source}")
            return tokens[:index], tokens[index + 1], token == ">>"
        if token.startswith(">") and token not in _SHELL_OPERATORS:
            if index != len(tokens) - 1:
                raise DescriptorError(f"redirect must end the command: {source}")
            append = token.startswith(">>")
            target = token[2:] if append else token[1:]
            return tokens[:index], target, append
    return tokens, None, False


def parse_command(
    text: str,
    variables: Mapping[str, str],
    *,
    cwd: Path | None = None,
) -> CommandSpec:
    """Turn one descriptor line into a :class:`CommandSpec`."""
    source = text.strip()
    if not source:
        raise DescriptorError("empty command")
    try:
        tokens = shlex.split(source, comments=False, posix=True)
    except ValueError as exc:
        raise DescriptorError(f"cannot parse command {source!r}: {exc}") from exc

    for token in tokens:
        if token in _SHELL_OPERATORS:
            raise DescriptorError(f"shell operator {token!r} not supported: {source}")

    argv_tokens, redirect, append = _split_redirect(tokens, source)
    if not argv_tokens:
        raise DescriptorError(f"command has no program: {source}")

    argv = tuple(_expand(token, variables, source) for token in argv_tokens)
    stdout: Path | None = None
    if redirect is not None:
        target = _expand(redirect, variables, source)
        if not target:
            raise DescriptorError(f"redirect target is empty: {source}")
        stdout = Path(target)
        if not stdout.is_absolute() and cwd is not None:
            stdout = cwd / stdout
    return CommandSpec(argv=argv, source=source, cwd=cwd, stdout=stdout, append=append)


def parse_commands(
    lines: list[str],
    variables: Mapping[str, str],
    *,
    cwd: Path | None = None,
) -> list[CommandSpec]:
    return [parse_command(line, variables, cwd=cwd) for line in lines]
