from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import click

from devenv_cli.compose import (
    CLAUDE_COMMAND,
    ENV_FILE_NAME,
    LaunchConfig,
    LaunchOptions,
    build_compose_command,
    resolve_launch_config,
)
from devenv_cli.platforms import DOCKER_SOCKET_PATH, HostPlatform, current_host


LOGGER = logging.getLogger("devenv_cli")
LOGGER.addHandler(logging.NullHandler())

SUCCESS = 25
logging.addLevelName(SUCCESS, "OK")

LOG_LEVEL_ENV = "DEVENV_LOG_LEVEL"
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")
INTERRUPT_EXIT_CODE = 130
COMMAND_OVERRIDE_META_KEY = "devenv_cli.command_override"
DOCKER_INSTALL_URL = "https://docs.docker.com/get-docker/"
COMPOSE_INSTALL_URL = "https://docs.docker.com/compose/install/"

_LEVEL_TAGS: dict[int, tuple[str, str | None]] = {
    logging.DEBUG: ("[DEBUG]", "white"),
    logging.INFO: ("[INFO] ", "blue"),
    SUCCESS: ("[OK]   ", "green"),
    logging.WARNING: ("[WARN] ", "yellow"),
    logging.ERROR: ("[ERROR]", "red"),
}

USAGE_EXAMPLES = """\b
Examples:
  claude-devenv                     Start bash in the dev environment
  claude-devenv --claude            Start Claude Code directly
  claude-devenv --build --claude    Rebuild image and start Claude Code
  claude-devenv --profile database  Start with database services
  claude-devenv --down              Stop the environment
"""


class _ClickEchoHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        tag, color = _LEVEL_TAGS.get(record.levelno, (f"[{record.levelname}]", None))
        click.echo(f"{click.style(tag, fg=color, bold=True)} {message}", err=record.levelno >= logging.WARNING)


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def _configure_launcher_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = _ClickEchoHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


class LaunchUsageError(click.UsageError):
    exit_code = 1

    def show(self, file: Any = None) -> None:
        click.echo(f"Error: {self.format_message()}", file=file, err=file is None)
        if self.ctx is not None:
            click.echo("", file=file, err=file is None)
            click.echo(self.ctx.get_help(), file=file, err=file is None)


def _last_command_override(args: list[str]) -> str | None:
    """Return the command chosen by the last ``--claude`` or ``--shell`` token.

    Click groups repeated options by their first appearance, so the order
    between ``-s zsh -c -s fish`` is lost once parsing is done. Values of
    ``--shell`` and ``--profile`` are skipped the same way click consumes them.
    """
    override: str | None = None
    tokens = iter(args)
    for token in tokens:
        if token == "--":
            break
        if token == "--claude":
            override = CLAUDE_COMMAND
        elif token == "--shell":
            override = next(tokens, None)
        elif token.startswith("--shell="):
            override = token.partition("=")[2]
        elif token == "--profile":
            next(tokens, None)
        elif token.startswith("-") and not token.startswith("--"):
            for index, flag in enumerate(token[1:], start=1):
                if flag == "c":
                    override = CLAUDE_COMMAND
                elif flag in ("s", "p"):
                    value = token[index + 1 :] or next(tokens, None)
                    if flag == "s":
                        override = value
                    break
    return override


class LauncherCommand(click.Command):
    """Reports every argument problem with the full usage text and exit code 1."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        ctx.meta[COMMAND_OVERRIDE_META_KEY] = _last_command_override(args)
        try:
            return super().parse_args(ctx, args)
        except LaunchUsageError:
            raise
        except click.UsageError as exc:
            raise LaunchUsageError(exc.format_message(), ctx=ctx) from exc


def _validate_shell(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    if value is not None and not value.strip():
        raise LaunchUsageError("Option '--shell' requires a shell name.", ctx=ctx)
    return value


def _validate_profiles(ctx: click.Context, param: click.Parameter, value: tuple[str, ...]) -> tuple[str, ...]:
    for profile in value:
        if not str(profile).strip():
            raise LaunchUsageError("Option '--profile' requires a profile name.", ctx=ctx)
    return value


def _run(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=False, text=True, capture_output=True)


def _check_prerequisites(host: HostPlatform) -> list[str]:
    """Verify docker, the daemon and compose; return the compose executable tokens."""
    if shutil.which("docker") is None:
        raise click.ClickException(f"Docker is not installed or not in PATH.\nInstall Docker: {DOCKER_INSTALL_URL}")

    if _run(["docker", "info"]).returncode != 0:
        raise click.ClickException(
            "Docker daemon is not running.\nPlease start Docker Desktop or the Docker service and try again."
        )

    if _run(["docker", "compose", "version"]).returncode == 0:
        compose_command = ["docker", "compose"]
    elif shutil.which("docker-compose") is not None and _run(["docker-compose", "version"]).returncode == 0:
        compose_command = ["docker-compose"]
        LOGGER.warning("Using standalone docker-compose. Consider upgrading to the Docker Compose plugin.")
    else:
        raise click.ClickException(f"Docker Compose is not available.\nInstall the Compose plugin: {COMPOSE_INSTALL_URL}")

    if host.docker_socket_unreadable():
        LOGGER.warning("Docker socket (%s) exists but is not readable.", DOCKER_SOCKET_PATH)
        LOGGER.warning("You may need to add your user to the 'docker' group or run with sudo.")

    version_lines = _run(["docker", "--version"]).stdout.strip().splitlines()
    LOGGER.log(SUCCESS, "Prerequisites satisfied (%s)", version_lines[0] if version_lines else "docker")
    return compose_command


def _ensure_claude_home(claude_home: Path) -> None:
    if claude_home.is_dir():
        return
    LOGGER.info("Creating Claude home directory: %s", claude_home)
    try:
        claude_home.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise click.ClickException(f"Unable to create Claude home directory {claude_home}: {exc}") from exc


def _print_banner(config: LaunchConfig, options: LaunchOptions) -> None:
    border = "=" * 58
    click.echo("")
    click.echo(click.style(border, fg="blue", bold=True))
    click.echo(click.style("Claude Code Development Environment".center(58), fg="blue", bold=True))
    click.echo(click.style(border, fg="blue", bold=True))
    click.echo("")
    LOGGER.info("Project directory : %s", config.project_dir)
    LOGGER.info("Launcher directory: %s", config.launcher_dir)
    LOGGER.info("Claude home       : %s", config.claude_home)
    LOGGER.info("OAuth port        : %s", config.oauth_port)
    if options.profiles:
        LOGGER.info("Profiles enabled  : %s", " ".join(options.profiles))
    if options.command_override:
        LOGGER.info("Command override  : %s", options.command_override)
    LOGGER.info("Mode              : %s", options.mode)
    click.echo("")


def _raise_keyboard_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


@contextmanager
def _sigterm_as_interrupt() -> Iterator[None]:
    previous = signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _execute(host: HostPlatform, command: list[str], config: LaunchConfig, options: LaunchOptions, *, prog: str) -> int:
    LOGGER.debug("Running: %s", " ".join(command))
    try:
        with _sigterm_as_interrupt():
            return host.run(command, env=config.environment)
    except KeyboardInterrupt:
        click.echo("")
        LOGGER.warning("Caught interrupt, cleaning up...")
        if options.detach:
            LOGGER.info("Containers may still be running. Use '%s --down' to stop them.", prog)
        return INTERRUPT_EXIT_CODE


@click.command(
    cls=LauncherCommand,
    help="Launch the Claude Code development environment.",
    epilog=USAGE_EXAMPLES,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--build", "-b", is_flag=True, default=False, help="Force rebuild the Docker image")
@click.option(
    "--claude",
    "-c",
    is_flag=True,
    default=False,
    expose_value=False,
    help="Start Claude Code directly (instead of bash)",
)
@click.option("--detach", "-d", is_flag=True, default=False, help="Run in detached/background mode")
@click.option(
    "--profile",
    "-p",
    "profiles",
    multiple=True,
    metavar="NAME",
    callback=_validate_profiles,
    help="Enable a compose profile (e.g., database); repeatable",
)
@click.option(
    "--shell",
    "-s",
    default=None,
    metavar="SHELL",
    expose_value=False,
    callback=_validate_shell,
    help="Use a different shell (default: bash)",
)
@click.option("--down", is_flag=True, default=False, help="Stop and remove the environment")
@click.pass_context
def main(ctx: click.Context, build: bool, detach: bool, profiles: tuple[str, ...], down: bool) -> None:
    _configure_launcher_logging(os.environ.get(LOG_LEVEL_ENV, "info"))
    options = LaunchOptions(
        build=build,
        detach=detach,
        down=down,
        command_override=ctx.meta.get(COMMAND_OVERRIDE_META_KEY),
        profiles=tuple(profiles),
    )

    host = current_host()
    compose_command = _check_prerequisites(host)
    if host.is_wsl():
        LOGGER.info("Windows Subsystem for Linux (WSL) detected.")

    launcher_dir = host.launcher_dir()
    env_path = launcher_dir / ENV_FILE_NAME
    if env_path.is_file():
        LOGGER.info("Loading environment from %s", env_path)
    else:
        LOGGER.info("No .env file found at %s, continuing with defaults.", env_path)

    config = resolve_launch_config(
        host=host,
        environ=dict(os.environ),
        launcher_dir=launcher_dir,
        project_dir=Path.cwd().resolve(),
    )
    _ensure_claude_home(config.claude_home)
    command = build_compose_command(compose_command, config, options)

    if options.down:
        LOGGER.info("Stopping and removing containers...")
        returncode = _execute(host, command, config, options, prog=ctx.command_path)
        if returncode == 0:
            LOGGER.log(SUCCESS, "Environment stopped.")
        else:
            LOGGER.error("Stopping the environment failed with exit code %d.", returncode)
        ctx.exit(returncode)

    _print_banner(config, options)
    LOGGER.info("Starting environment...")
    ctx.exit(_execute(host, command, config, options, prog=ctx.command_path))


if __name__ == "__main__":
    main()
