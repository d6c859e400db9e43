from __future__ import annotations

import abc
import logging
import os
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

LOGGER = logging.getLogger(__name__)

COMPOSE_FILE_NAME = "docker-compose.yml"
CONTAINER_SSH_AUTH_SOCK = "/tmp/ssh-agent.sock"
DOCKER_SOCKET_PATH = "/var/run/docker.sock"
PROC_VERSION_PATH = "/proc/version"
WSL_SSH_BRIDGE_DOCS_URL = "https://stuartleeks.com/posts/wsl-ssh-key-forward-to-windows/"


@dataclass(frozen=True)
class SshForwarding:
    host_socket: str
    container_socket: str = CONTAINER_SSH_AUTH_SOCK

    def run_args(self) -> list[str]:
        return [
            "-v",
            f"{self.host_socket}:{self.container_socket}",
            "-e",
            f"SSH_AUTH_SOCK={self.container_socket}",
        ]


def _is_socket(path: str) -> bool:
    try:
        return stat.S_ISSOCK(os.stat(path).st_mode)
    except OSError:
        return False


class HostPlatform(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        """The identifier of the host family (e.g., 'posix', 'windows')."""
        pass

    @abc.abstractmethod
    def home_dir(self, environ: Mapping[str, str]) -> Path:
        """Returns the user's home directory on the host."""
        pass

    @abc.abstractmethod
    def detect_ssh_forwarding(self, environ: Mapping[str, str]) -> SshForwarding | None:
        """Returns the agent socket forwarding for the run container, if any."""
        pass

    def is_wsl(self) -> bool:
        return False

    def docker_socket_unreadable(self) -> bool:
        return False

    def launcher_dir(self) -> Path:
        """Directory holding the compose file, the overlay file and the shims."""
        package_dir = Path(__file__).resolve().parent
        for parent in package_dir.parents:
            if (parent / COMPOSE_FILE_NAME).is_file():
                return parent
        fallback = Path.cwd().resolve()
        LOGGER.warning(
            "No %s found above %s; using the current directory %s instead.",
            COMPOSE_FILE_NAME,
            package_dir,
            fallback,
        )
        return fallback

    def run(self, command: Iterable[str], *, env: Mapping[str, str]) -> int:
        # The child inherits the terminal; interrupts reach it directly and the
        # launcher only waits for it to finish.
        process = subprocess.Popen(list(command), env=dict(env))
        return process.wait()


class PosixHost(HostPlatform):
    def __init__(self, *, proc_version_path: str = PROC_VERSION_PATH, docker_socket_path: str = DOCKER_SOCKET_PATH) -> None:
        self.proc_version_path = proc_version_path
        self.docker_socket_path = docker_socket_path

    @property
    def name(self) -> str:
        return "posix"

    def home_dir(self, environ: Mapping[str, str]) -> Path:
        home = str(environ.get("HOME", "")).strip()
        return Path(home) if home else Path.home()

    def is_wsl(self) -> bool:
        try:
            version = Path(self.proc_version_path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return False
        lowered = version.lower()
        return "microsoft" in lowered or "wsl" in lowered

    def docker_socket_unreadable(self) -> bool:
        return os.path.exists(self.docker_socket_path) and not os.access(self.docker_socket_path, os.R_OK)

    def detect_ssh_forwarding(self, environ: Mapping[str, str]) -> SshForwarding | None:
        agent_socket = str(environ.get("SSH_AUTH_SOCK", "")).strip()
        if agent_socket and _is_socket(agent_socket):
            LOGGER.info("SSH agent detected, enabling forwarding into the container.")
            return SshForwarding(host_socket=agent_socket)
        if self.is_wsl():
            LOGGER.warning("SSH agent forwarding in WSL may require npiperelay or a socat bridge.")
            LOGGER.warning("See: %s", WSL_SSH_BRIDGE_DOCS_URL)
        else:
            LOGGER.info("No SSH agent socket found, SSH forwarding disabled.")
        return None


class WindowsHost(HostPlatform):
    @property
    def name(self) -> str:
        return "windows"

    def home_dir(self, environ: Mapping[str, str]) -> Path:
        for key in ("USERPROFILE", "HOME"):
            value = str(environ.get(key, "")).strip()
            if value:
                return Path(value)
        return Path.home()

    def detect_ssh_forwarding(self, environ: Mapping[str, str]) -> SshForwarding | None:
        LOGGER.debug("Relying on Docker Desktop's named-pipe relay for SSH agent access.")
        return None


def current_host() -> HostPlatform:
    if os.name == "nt":
        return WindowsHost()
    return PosixHost()
