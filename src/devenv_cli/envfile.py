from __future__ import annotations

import io
import logging
import re
from pathlib import Path
from typing import Iterable, Mapping

import click
from dotenv import dotenv_values


LOGGER = logging.getLogger(__name__)

ENV_ASSIGNMENT_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*=")


def parse_env_lines(lines: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=value`` lines from an overlay file.

    Only lines whose key is a shell identifier starting at column 0 are
    considered; blank lines, ``#`` comments, ``export`` statements and indented
    assignments are ignored. Each accepted line is decoded by python-dotenv, so
    quoting and trailing `` # comments`` follow dotenv rules. Values are taken
    literally, without ``${VAR}`` expansion. When a key repeats, the last
    assignment wins.
    """
    parsed: dict[str, str] = {}
    for line_number, raw_line in enumerate(lines, start=1):
        line = raw_line.rstrip("\n").rstrip("\r")
        if ENV_ASSIGNMENT_PATTERN.match(line) is None:
            if line.strip() and not line.startswith("#"):
                LOGGER.debug("Ignoring overlay line %d: not a KEY=value assignment.", line_number)
            continue
        # One line per stream keeps an unbalanced quote from swallowing the rest of the file.
        values = dotenv_values(stream=io.StringIO(line), interpolate=False)
        if not values:
            LOGGER.debug("Ignoring overlay line %d: value could not be parsed.", line_number)
            continue
        for key, value in values.items():
            parsed[key] = value if value is not None else ""
    return parsed


def read_env_file(path: Path) -> dict[str, str]:
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeError) as exc:
        raise click.ClickException(f"Unable to read environment file {path}: {exc}") from exc
    return parse_env_lines(content.splitlines())


def merge_environment(environ: Mapping[str, str], overlay: Mapping[str, str]) -> dict[str, str]:
    # Variables already exported by the caller take precedence over the overlay.
    merged = dict(overlay)
    merged.update(environ)
    return merged
