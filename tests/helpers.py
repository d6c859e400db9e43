from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Iterable, Mapping

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from devenv_cli.platforms import HostPlatform, SshForwarding


class FakeHost(HostPlatform):
    def __init__(
        self,
        root: Path,
        home: Path,
        *,
        returncode: int = 0,
        ssh: SshForwarding | None = None,
        run_error: BaseException | None = None,
        wsl: bool = False,
    ) -> None:
        self.root = root
        self.home = home
        self.returncode = returncode
        self.ssh = ssh
        self.run_error = run_error
        self.wsl = wsl
        self.calls: list[tuple[list[str], dict[str, str]]] = []

    @property
    def name(self) -> str:
        return "fake"

    def home_dir(self, environ: Mapping[str, str]) -> Path:
        return self.home

    def detect_ssh_forwarding(self, environ: Mapping[str, str]) -> SshForwarding | None:
        return self.ssh

    def is_wsl(self) -> bool:
        return self.wsl

    def launcher_dir(self) -> Path:
        return self.root

    def run(self, command: Iterable[str], *, env: Mapping[str, str]) -> int:
        self.calls.append((list(command), dict(env)))
        if self.run_error is not None:
            raise self.run_error
        return self.returncode


def completed(command: list[str], returncode: int = 0, stdout: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr="")
