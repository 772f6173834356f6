"""Shell quoting and filename helpers for generated workload scripts.

Every user-supplied value that ends up in a ``sh -c`` script goes through
``quote`` so it is a single literal word to the shell, whatever it contains.

Example:
    >>> quote("$(whoami)/USDT")
    "'$(whoami)/USDT'"
    >>> sanitize_strategy_filename("my cool strategy!")
    'MyCoolStrategy'
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable

DEFAULT_STRATEGY_NAME = "MyStrategy"

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9\s]")


def quote(value: object) -> str:
    """Quote *value* as one POSIX shell word."""
    return shlex.quote(str(value))


def quote_all(values: Iterable[object]) -> str:
    """Quote each value and join with spaces."""
    return " ".join(quote(v) for v in values)


def join_command(argv: Iterable[object]) -> str:
    """Render an argv list as a shell command line."""
    return shlex.join(str(a) for a in argv)


def sanitize_strategy_filename(name: str) -> str:
    """Turn a display name into a Python-class-like file stem.

    Characters other than ASCII letters, digits and whitespace are dropped.
    A single word keeps its casing with the first letter upper-cased;
    several words become PascalCase.
    """
    cleaned = _INVALID_NAME_CHARS.sub("", name or "")
    words = cleaned.split()
    if not words:
        return DEFAULT_STRATEGY_NAME
    if len(words) == 1:
        word = words[0]
        return word[0].upper() + word[1:]
    return "".join(w[0].upper() + w[1:].lower() for w in words)
