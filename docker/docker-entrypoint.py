#!/usr/bin/env python3

from __future__ import annotations

import grp
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path


LOGGER = logging.getLogger("entrypoint")

CERTS_DIR = Path("/certs")
CERT_DEST_DIR = Path("/usr/local/share/ca-certificates/custom")
CA_BUNDLE_PATH = "/etc/ssl/certs/ca-certificates.crt"
CA_BUNDLE_ENV_VARS = (
    "NODE_EXTRA_CA_CERTS",
    "REQUESTS_CA_BUNDLE",
    "SSL_CERT_FILE",
    "CURL_CA_BUNDLE",
    "GIT_SSL_CAINFO",
)
DOCKER_SOCKET_PATH = Path("/var/run/docker.sock")
WORKSPACE_PATH = Path("/workspace")
CUSTOM_ENTRYPOINT_PATH = Path("/usr/local/bin/custom-entrypoint.sh")
KNOWN_HOSTS_SEED = ("github.com", "gitlab.com", "bitbucket.org")
PUBLIC_SSH_FILE_NAMES = {"known_hosts", "authorized_keys", "config"}
BASHRC_D_SNIPPET = """
# Source all scripts in ~/.bashrc.d/
if [ -d "$HOME/.bashrc.d" ]; then
    for script in "$HOME/.bashrc.d"/*.sh; do
        [ -f "$script" ] && source "$script"
    done
fi
"""


def _run(command: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=check, text=True, capture_output=True)


def _user_name() -> str:
    return os.environ.get("USER_NAME", "").strip() or "developer"


def _setup_bashrc(home: Path) -> None:
    bashrc_d = home / ".bashrc.d"
    bashrc_d.mkdir(parents=True, exist_ok=True)

    bashrc = home / ".bashrc"
    try:
        existing = bashrc.read_text(encoding="utf-8")
    except FileNotFoundError:
        existing = ""
    if "bashrc.d" in existing:
        return
    with bashrc.open("a", encoding="utf-8") as handle:
        handle.write(BASHRC_D_SNIPPET)


def _collect_certificates(certs_dir: Path) -> list[tuple[Path, str]]:
    if not certs_dir.is_dir():
        return []
    certificates: list[tuple[Path, str]] = []
    for cert in sorted(certs_dir.glob("*.pem")):
        if cert.is_file():
            certificates.append((cert, f"{cert.stem}.crt"))
    for cert in sorted(certs_dir.glob("*.crt")):
        if cert.is_file():
            certificates.append((cert, cert.name))
    return certificates


def _install_proxy_certs(home: Path, *, certs_dir: Path = CERTS_DIR, cert_dest: Path = CERT_DEST_DIR) -> int:
    certificates = _collect_certificates(certs_dir)
    if not certificates:
        return 0

    LOGGER.info("Installing corporate proxy certificates...")
    _run(["sudo", "mkdir", "-p", str(cert_dest)])
    for source, target_name in certificates:
        _run(["sudo", "cp", str(source), str(cert_dest / target_name)])
        LOGGER.info("  Installed: %s", target_name)

    _run(["sudo", "update-ca-certificates"], check=False)
    for name in CA_BUNDLE_ENV_VARS:
        os.environ[name] = CA_BUNDLE_PATH

    # Rewritten, not appended, on every start.
    profile_script = home / ".bashrc.d" / "proxy-certs.sh"
    profile_script.parent.mkdir(parents=True, exist_ok=True)
    profile_script.write_text(
        "".join(f'export {name}="{CA_BUNDLE_PATH}"\n' for name in CA_BUNDLE_ENV_VARS),
        encoding="utf-8",
    )
    LOGGER.info("Installed %d certificate(s) and configured CA bundles.", len(certificates))
    return len(certificates)


def _setup_git_config(home: Path) -> None:
    host_gitconfig = home / ".gitconfig-host"
    gitconfig = home / ".gitconfig"
    if not host_gitconfig.is_file():
        return
    if gitconfig.exists() or gitconfig.is_symlink():
        LOGGER.info("Git config already exists, skipping host config link.")
        return
    LOGGER.info("Linking host git configuration...")
    gitconfig.symlink_to(host_gitconfig)


def _ssh_file_mode(file_name: str) -> int:
    if file_name.endswith(".pub") or file_name in PUBLIC_SSH_FILE_NAMES:
        return 0o644
    return 0o600


def _relax_agent_socket(agent_socket: str) -> None:
    socket_path = Path(agent_socket)
    if not socket_path.is_socket():
        return
    LOGGER.info("SSH agent socket detected at %s", agent_socket)
    if not os.access(socket_path, os.R_OK):
        LOGGER.warning("SSH agent socket is not readable. Trying to fix...")
        _run(["sudo", "chmod", "777", str(socket_path.parent)], check=False)


def _setup_ssh(home: Path) -> None:
    agent_socket = os.environ.get("SSH_AUTH_SOCK", "").strip()
    if agent_socket:
        _relax_agent_socket(agent_socket)

    ssh_host_dir = home / ".ssh-host"
    ssh_dir = home / ".ssh"
    if not ssh_host_dir.is_dir() or not any(ssh_host_dir.iterdir()):
        return

    LOGGER.info("Setting up SSH keys from host mount...")
    ssh_dir.mkdir(parents=True, exist_ok=True)
    ssh_dir.chmod(0o700)
    for item in sorted(ssh_host_dir.iterdir()):
        if not item.is_file():
            continue
        target = ssh_dir / item.name
        shutil.copyfile(item, target)
        target.chmod(_ssh_file_mode(item.name))

    known_hosts = ssh_dir / "known_hosts"
    if not known_hosts.exists():
        result = _run(["ssh-keyscan", *KNOWN_HOSTS_SEED], check=False)
        with known_hosts.open("a", encoding="utf-8") as handle:
            handle.write(result.stdout or "")
        known_hosts.chmod(0o644)

    LOGGER.info("SSH keys configured.")


def _docker_group_gid() -> int:
    try:
        return grp.getgrnam("docker").gr_gid
    except KeyError:
        return 999


def _setup_docker_socket(*, socket_path: Path = DOCKER_SOCKET_PATH) -> None:
    if not socket_path.is_socket():
        return
    try:
        socket_gid = socket_path.stat().st_gid
    except OSError:
        return

    if socket_gid == 0:
        _run(["sudo", "chmod", "666", str(socket_path)], check=False)
        return
    if socket_gid != _docker_group_gid():
        LOGGER.info("Adjusting Docker socket group (host GID: %d)...", socket_gid)
        _run(["sudo", "groupmod", "-g", str(socket_gid), "docker"], check=False)


def _setup_workspace(user_name: str, *, workspace: Path = WORKSPACE_PATH) -> None:
    if not workspace.is_dir():
        return
    try:
        owner = workspace.stat().st_uid
    except OSError:
        return
    if owner == 0:
        LOGGER.info("Fixing workspace ownership...")
        _run(["sudo", "chown", f"{user_name}:{user_name}", str(workspace)], check=False)


def _parse_env_dump(output: str) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for entry in output.split("\0"):
        key, separator, value = entry.partition("=")
        if separator and key:
            parsed[key] = value
    return parsed


def _run_custom_entrypoint(*, script: Path = CUSTOM_ENTRYPOINT_PATH) -> None:
    if not script.is_file() or not os.access(script, os.X_OK):
        return
    LOGGER.info("Running custom entrypoint extension...")
    # The extension is sourced by bash; whatever it exports is carried into the final command.
    result = _run(["bash", "-c", 'source "$1" >&2 && env -0', "custom-entrypoint", str(script)], check=False)
    if result.stderr:
        sys.stderr.write(result.stderr)
    if result.returncode != 0:
        raise RuntimeError(
            "Custom entrypoint failed: "
            f"script={str(script)!r} exit_code={result.returncode} stderr={(result.stderr or '').strip()!r}"
        )
    os.environ.update(_parse_env_dump(result.stdout))


def _configure_logging() -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("[entrypoint] %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(logging.INFO)
    LOGGER.propagate = False


def main(argv: list[str]) -> None:
    _configure_logging()
    command = list(argv) or ["bash"]
    user_name = _user_name()
    home = Path(f"/home/{user_name}")

    LOGGER.info("Initializing Claude Code development environment...")
    _setup_bashrc(home)
    _install_proxy_certs(home)
    _setup_git_config(home)
    _setup_ssh(home)
    _setup_docker_socket()
    _setup_workspace(user_name)
    _run_custom_entrypoint()

    LOGGER.info("Environment ready. Starting: %s", " ".join(command))
    sys.stdout.flush()
    os.execvp(command[0], command)


if __name__ == "__main__":
    main(sys.argv[1:])
