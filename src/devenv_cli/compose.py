from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from devenv_cli.envfile import merge_environment, read_env_file
from devenv_cli.platforms import COMPOSE_FILE_NAME, HostPlatform, SshForwarding

ENV_FILE_NAME = ".env"
SERVICE_NAME = "dev"
CLAUDE_COMMAND = "claude"
CLAUDE_HOME_ENV = "CLAUDE_HOME"
CLAUDE_HOME_DIR_NAME = ".claude"
OAUTH_PORT_ENV = "CLAUDE_OAUTH_PORT"
DEFAULT_OAUTH_PORT = "7777"


@dataclass(frozen=True)
class LaunchOptions:
    build: bool = False
    detach: bool = False
    down: bool = False
    command_override: str | None = None
    profiles: tuple[str, ...] = ()

    @property
    def mode(self) -> str:
        if self.down:
            return "down"
        if self.detach:
            return "detached (background)"
        return "interactive"


@dataclass(frozen=True)
class LaunchConfig:
    launcher_dir: Path
    project_dir: Path
    compose_file: Path
    env_file: Path | None
    claude_home: Path
    oauth_port: str
    overlay: Mapping[str, str] = field(default_factory=dict)
    environment: Mapping[str, str] = field(default_factory=dict)
    ssh: SshForwarding | None = None


def resolve_launch_config(
    *,
    host: HostPlatform,
    environ: Mapping[str, str],
    launcher_dir: Path,
    project_dir: Path,
) -> LaunchConfig:
    """Read the process environment and the overlay file once.

    The returned config carries the complete environment for the compose child
    process. Nothing here writes to ``os.environ``.
    """
    env_path = launcher_dir / ENV_FILE_NAME
    env_file: Path | None = env_path if env_path.is_file() else None
    overlay = read_env_file(env_path) if env_file is not None else {}

    environment = merge_environment(environ, overlay)
    home = host.home_dir(environment)
    claude_home_value = str(environment.get(CLAUDE_HOME_ENV, "")).strip()
    claude_home = Path(claude_home_value).expanduser() if claude_home_value else home / CLAUDE_HOME_DIR_NAME
    oauth_port = str(environment.get(OAUTH_PORT_ENV, "")).strip() or DEFAULT_OAUTH_PORT

    environment["PROJECT_DIR"] = str(project_dir)
    environment["HOME"] = str(home)
    environment[CLAUDE_HOME_ENV] = str(claude_home)
    environment[OAUTH_PORT_ENV] = oauth_port

    return LaunchConfig(
        launcher_dir=launcher_dir,
        project_dir=project_dir,
        compose_file=launcher_dir / COMPOSE_FILE_NAME,
        env_file=env_file,
        claude_home=claude_home,
        oauth_port=oauth_port,
        overlay=overlay,
        environment=environment,
        ssh=host.detect_ssh_forwarding(environment),
    )


def build_compose_command(
    compose_command: Iterable[str],
    config: LaunchConfig,
    options: LaunchOptions,
) -> list[str]:
    command = [str(part) for part in compose_command]
    command.extend(["-f", str(config.compose_file)])
    if config.env_file is not None:
        command.extend(["--env-file", str(config.env_file)])
    for profile in options.profiles:
        command.extend(["--profile", profile])

    if options.down:
        command.extend(["down", "--remove-orphans"])
        return command

    # Compose only accepts --build as an option of the up/run verbs.
    build_flags = ["--build"] if options.build else []

    if options.detach:
        command.extend(["up", "-d", *build_flags])
        return command

    command.extend(["run", "--rm", *build_flags, "--service-ports"])
    if config.ssh is not None:
        command.extend(config.ssh.run_args())
    command.append(SERVICE_NAME)
    if options.command_override:
        command.append(options.command_override)
    return command
