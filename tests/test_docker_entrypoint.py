from __future__ import annotations

import importlib.util
import os
import stat
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import call, patch

from helpers import ROOT


DOCKER_ENTRYPOINT = ROOT / "docker" / "docker-entrypoint.py"


class _FakeStatPath:
    def __init__(self, path: str, *, is_socket: bool = False, is_dir: bool = False, st_gid: int = 0, st_uid: int = 0) -> None:
        self.path = path
        self._is_socket = is_socket
        self._is_dir = is_dir
        self._stat = SimpleNamespace(st_gid=st_gid, st_uid=st_uid)

    def is_socket(self) -> bool:
        return self._is_socket

    def is_dir(self) -> bool:
        return self._is_dir

    def stat(self) -> SimpleNamespace:
        return self._stat

    def __str__(self) -> str:
        return self.path


@unittest.skipIf(os.name == "nt", "the container entrypoint targets Linux")
class DockerEntrypointTests(unittest.TestCase):
    @staticmethod
    def _load_entrypoint_module():
        spec = importlib.util.spec_from_file_location("devenv_docker_entrypoint", DOCKER_ENTRYPOINT)
        if spec is None or spec.loader is None:
            raise RuntimeError("Failed to load docker entrypoint module for tests.")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    def setUp(self) -> None:
        self.module = self._load_entrypoint_module()
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.home = self.tmp_path / "home" / "developer"
        self.home.mkdir(parents=True)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_setup_bashrc_adds_sourcing_block_once(self) -> None:
        (self.home / ".bashrc").write_text("alias ll='ls -la'\n", encoding="utf-8")

        self.module._setup_bashrc(self.home)
        self.module._setup_bashrc(self.home)

        content = (self.home / ".bashrc").read_text(encoding="utf-8")
        self.assertTrue((self.home / ".bashrc.d").is_dir())
        self.assertEqual(content.count("# Source all scripts in ~/.bashrc.d/"), 1)
        self.assertTrue(content.startswith("alias ll='ls -la'\n"))

    def test_install_proxy_certs_copies_pem_and_crt_files(self) -> None:
        certs_dir = self.tmp_path / "certs"
        certs_dir.mkdir()
        (certs_dir / "corp-root.pem").write_text("pem", encoding="utf-8")
        (certs_dir / "proxy.crt").write_text("crt", encoding="utf-8")
        (certs_dir / "README.md").write_text("ignored", encoding="utf-8")
        cert_dest = Path("/usr/local/share/ca-certificates/custom")

        with patch.object(self.module, "_run", return_value=SimpleNamespace(returncode=0)) as run_mock, patch.dict(
            os.environ, {}, clear=False
        ):
            installed = self.module._install_proxy_certs(self.home, certs_dir=certs_dir, cert_dest=cert_dest)
            installed_again = self.module._install_proxy_certs(self.home, certs_dir=certs_dir, cert_dest=cert_dest)
            self.assertEqual(os.environ["REQUESTS_CA_BUNDLE"], "/etc/ssl/certs/ca-certificates.crt")
            self.assertEqual(os.environ["NODE_EXTRA_CA_CERTS"], "/etc/ssl/certs/ca-certificates.crt")

        self.assertEqual((installed, installed_again), (2, 2))
        run_mock.assert_has_calls(
            [
                call(["sudo", "mkdir", "-p", str(cert_dest)]),
                call(["sudo", "cp", str(certs_dir / "corp-root.pem"), str(cert_dest / "corp-root.crt")]),
                call(["sudo", "cp", str(certs_dir / "proxy.crt"), str(cert_dest / "proxy.crt")]),
                call(["sudo", "update-ca-certificates"], check=False),
            ]
        )
        profile_script = (self.home / ".bashrc.d" / "proxy-certs.sh").read_text(encoding="utf-8")
        self.assertEqual(profile_script.count("export SSL_CERT_FILE="), 1)
        self.assertEqual(len(profile_script.splitlines()), 5)

    def test_install_proxy_certs_is_noop_without_certificates(self) -> None:
        with patch.object(self.module, "_run") as run_mock:
            installed = self.module._install_proxy_certs(self.home, certs_dir=self.tmp_path / "missing")

        self.assertEqual(installed, 0)
        run_mock.assert_not_called()

    def test_setup_git_config_links_host_config_once(self) -> None:
        host_gitconfig = self.home / ".gitconfig-host"
        host_gitconfig.write_text("[user]\n\tname = Dev\n", encoding="utf-8")

        self.module._setup_git_config(self.home)
        self.module._setup_git_config(self.home)

        gitconfig = self.home / ".gitconfig"
        self.assertTrue(gitconfig.is_symlink())
        self.assertEqual(gitconfig.resolve(), host_gitconfig.resolve())

    def test_setup_git_config_keeps_existing_config(self) -> None:
        (self.home / ".gitconfig-host").write_text("[user]\n\tname = Host\n", encoding="utf-8")
        (self.home / ".gitconfig").write_text("[user]\n\tname = Local\n", encoding="utf-8")

        self.module._setup_git_config(self.home)

        self.assertFalse((self.home / ".gitconfig").is_symlink())
        self.assertIn("Local", (self.home / ".gitconfig").read_text(encoding="utf-8"))

    def test_setup_ssh_copies_keys_with_restricted_permissions(self) -> None:
        ssh_host = self.home / ".ssh-host"
        ssh_host.mkdir()
        (ssh_host / "id_ed25519").write_text("private", encoding="utf-8")
        (ssh_host / "id_ed25519.pub").write_text("public", encoding="utf-8")
        (ssh_host / "config").write_text("Host *\n", encoding="utf-8")
        (ssh_host / "sockets").mkdir()

        keyscan = SimpleNamespace(returncode=0, stdout="github.com ssh-ed25519 AAAAC3Nza\n")
        with patch.object(self.module, "_run", return_value=keyscan) as run_mock, patch.dict(
            os.environ, {"SSH_AUTH_SOCK": ""}, clear=False
        ):
            self.module._setup_ssh(self.home)

        ssh_dir = self.home / ".ssh"
        self.assertEqual(stat.S_IMODE(ssh_dir.stat().st_mode), 0o700)
        self.assertEqual(stat.S_IMODE((ssh_dir / "id_ed25519").stat().st_mode), 0o600)
        self.assertEqual(stat.S_IMODE((ssh_dir / "id_ed25519.pub").stat().st_mode), 0o644)
        self.assertEqual(stat.S_IMODE((ssh_dir / "config").stat().st_mode), 0o644)
        self.assertFalse((ssh_dir / "sockets").exists())
        self.assertIn("github.com", (ssh_dir / "known_hosts").read_text(encoding="utf-8"))
        run_mock.assert_called_once_with(["ssh-keyscan", "github.com", "gitlab.com", "bitbucket.org"], check=False)

    def test_setup_ssh_keeps_mounted_known_hosts(self) -> None:
        ssh_host = self.home / ".ssh-host"
        ssh_host.mkdir()
        (ssh_host / "known_hosts").write_text("example.com ssh-rsa AAAA\n", encoding="utf-8")

        with patch.object(self.module, "_run") as run_mock, patch.dict(os.environ, {"SSH_AUTH_SOCK": ""}, clear=False):
            self.module._setup_ssh(self.home)

        run_mock.assert_not_called()
        self.assertEqual(
            (self.home / ".ssh" / "known_hosts").read_text(encoding="utf-8"),
            "example.com ssh-rsa AAAA\n",
        )

    def test_docker_socket_group_is_aligned_with_host_gid(self) -> None:
        socket_path = _FakeStatPath("/var/run/docker.sock", is_socket=True, st_gid=1234)
        with patch.object(self.module, "_run") as run_mock, patch.object(self.module, "_docker_group_gid", return_value=999):
            self.module._setup_docker_socket(socket_path=socket_path)

        run_mock.assert_called_once_with(["sudo", "groupmod", "-g", "1234", "docker"], check=False)

    def test_root_owned_docker_socket_is_opened_up(self) -> None:
        socket_path = _FakeStatPath("/var/run/docker.sock", is_socket=True, st_gid=0)
        with patch.object(self.module, "_run") as run_mock:
            self.module._setup_docker_socket(socket_path=socket_path)

        run_mock.assert_called_once_with(["sudo", "chmod", "666", "/var/run/docker.sock"], check=False)

    def test_matching_docker_socket_group_is_left_alone(self) -> None:
        socket_path = _FakeStatPath("/var/run/docker.sock", is_socket=True, st_gid=999)
        with patch.object(self.module, "_run") as run_mock, patch.object(self.module, "_docker_group_gid", return_value=999):
            self.module._setup_docker_socket(socket_path=socket_path)
            self.module._setup_docker_socket(socket_path=_FakeStatPath("/missing.sock"))

        run_mock.assert_not_called()

    def test_root_owned_workspace_is_chowned(self) -> None:
        with patch.object(self.module, "_run") as run_mock:
            self.module._setup_workspace("developer", workspace=_FakeStatPath("/workspace", is_dir=True, st_uid=0))
            self.module._setup_workspace("developer", workspace=_FakeStatPath("/workspace", is_dir=True, st_uid=1000))

        run_mock.assert_called_once_with(["sudo", "chown", "developer:developer", "/workspace"], check=False)

    def test_custom_entrypoint_exports_are_imported(self) -> None:
        script = self.tmp_path / "custom-entrypoint.sh"
        script.write_text("export FOO=bar\n", encoding="utf-8")
        script.chmod(0o755)
        dump = SimpleNamespace(returncode=0, stdout="FOO=bar\0MULTI=line1\nline2\0", stderr="")

        with patch.object(self.module, "_run", return_value=dump), patch.dict(os.environ, {}, clear=False):
            self.module._run_custom_entrypoint(script=script)
            self.assertEqual(os.environ["FOO"], "bar")
            self.assertEqual(os.environ["MULTI"], "line1\nline2")

    def test_custom_entrypoint_failure_raises(self) -> None:
        script = self.tmp_path / "custom-entrypoint.sh"
        script.write_text("exit 3\n", encoding="utf-8")
        script.chmod(0o755)
        failed = SimpleNamespace(returncode=3, stdout="", stderr="boom")

        with patch.object(self.module, "_run", return_value=failed):
            with self.assertRaises(RuntimeError):
                self.module._run_custom_entrypoint(script=script)

    def test_non_executable_custom_entrypoint_is_skipped(self) -> None:
        script = self.tmp_path / "custom-entrypoint.sh"
        script.write_text("export FOO=bar\n", encoding="utf-8")
        script.chmod(0o644)

        with patch.object(self.module, "_run") as run_mock:
            self.module._run_custom_entrypoint(script=script)

        run_mock.assert_not_called()

    def test_main_runs_setup_steps_then_execs_command(self) -> None:
        step_names = [
            "_setup_bashrc",
            "_install_proxy_certs",
            "_setup_git_config",
            "_setup_ssh",
            "_setup_docker_socket",
            "_setup_workspace",
            "_run_custom_entrypoint",
        ]
        patchers = [patch.object(self.module, name) for name in step_names]
        mocks = [patcher.start() for patcher in patchers]
        for patcher in patchers:
            self.addCleanup(patcher.stop)

        with patch.object(self.module.os, "execvp") as execvp_mock, patch.dict(
            os.environ, {"USER_NAME": "developer"}, clear=False
        ):
            self.module.main([])
            self.module.main(["claude", "--continue"])

        for mock in mocks:
            self.assertEqual(mock.call_count, 2)
        mocks[0].assert_called_with(Path("/home/developer"))
        execvp_mock.assert_has_calls(
            [
                call("bash", ["bash"]),
                call("claude", ["claude", "--continue"]),
            ]
        )


if __name__ == "__main__":
    unittest.main()
