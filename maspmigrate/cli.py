"""A command-line runner dispatching to named sub-commands."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence


@dataclass
class SubCommand:
    """A sub-command: its description, option setup and entry point."""

    description: str
    entrypoint: Callable[[argparse.Namespace], Any]
    configure: Callable[[argparse.ArgumentParser], None] | None = None


class Runner:
    """Parses the command line and runs the selected sub-command."""

    def __init__(self, sub_commands: Mapping[str, SubCommand], prog: str | None = None) -> None:
        self.prog = prog if prog is not None else sys.argv[0]
        self._sub_commands = dict(sub_commands)
        self._parsers: dict[str, argparse.ArgumentParser] = {}
        for name, sub in self._sub_commands.items():
            parser = argparse.ArgumentParser(
                prog=f"{self.prog} {name}",
                description=sub.description,
            )
            if sub.configure is not None:
                sub.configure(parser)
            self._parsers[name] = parser

    def usage(self) -> str:
        """Return the top-level usage text listing every sub-command."""
        text = f"Usage of {self.prog}:\n"
        if not self._sub_commands:
            return text
        rows = sorted(
            (name, f"{self.prog} {name}", sub.description)
            for name, sub in self._sub_commands.items()
        )
        width = max(len(invocation) for _, invocation, _ in rows) + 6
        lines = [f"  {invocation}".ljust(width) + desc for _, invocation, desc in rows]
        return text + "\n" + "\n".join(lines) + "\n"

    def run(self, argv: Sequence[str] | None = None) -> None:
        """Run the sub-command named first in ``argv``; always exits."""
        args = list(sys.argv[1:] if argv is None else argv)
        if not args or args[0] not in self._sub_commands:
            sys.stderr.write(self.usage())
            raise SystemExit(1)
        name = args[0]
        namespace = self._parsers[name].parse_args(args[1:])
        try:
            self._sub_commands[name].entrypoint(namespace)
        except Exception as exc:  # report any failure of the sub-command
            print(f"error: {exc}", file=sys.stderr)
            raise SystemExit(1) from exc
        raise SystemExit(0)