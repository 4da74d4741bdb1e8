import os
import stat

import pytest

import debian_bootstrap as db

KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIExampleKeyBody me@laptop"


def make_config(**kwargs):
    kwargs.setdefault("path", "bootstrap.conf")
    return db.BootstrapConfig(**kwargs)


def clone_with_installer(cmd):
    """Side effect for the recorder: make `git clone` leave a checkout behind."""
    if "clone" in cmd:
        target = cmd[-1]
        os.makedirs(os.path.join(target, ".git"))
        with open(os.path.join(target, "install.sh"), "w") as f:
            f.write("#!/bin/sh\n")


class TestPackageManager:
    def test_runs_apt_non_interactively(self, recorder):
        pm = db.PackageManager()
        pm.update()
        pm.upgrade()
        pm.install_utilities()
        pm.autoremove()

        assert recorder.commands == [
            ["apt-get", "update"],
            [
                "apt-get",
                "-y",
                "-o",
                "Dpkg::Options::=--force-confdef",
                "-o",
                "Dpkg::Options::=--force-confold",
                "full-upgrade",
            ],
            ["apt-get", "install", "-y"] + db.UTILITIES,
            ["apt-get", "-y", "autoremove"],
        ]
        for _, kwargs in recorder.calls:
            assert kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"
            assert kwargs["dry_run"] is False

    def test_utilities_include_what_later_steps_need(self):
        for package in ("git", "sudo", "openssh-server"):
            assert package in db.UTILITIES


class TestDotfiles:
    def test_clones_then_runs_installer_as_user(self, recorder, homes):
        recorder.side_effect = clone_with_installer
        config = make_config(dotfiles_repo="https://example.com/dotfiles.git")
        target = str(homes / "alice" / ".dotfiles")

        db.DotfilesInstaller(config).install_for("alice")

        assert recorder.commands == [
            ["sudo", "-u", "alice", "-H", "--", "git", "clone",
             "https://example.com/dotfiles.git", target],
            ["sudo", "-u", "alice", "-H", "--", "bash",
             os.path.join(target, "install.sh")],
        ]
        assert recorder.calls[1][1]["cwd"] == target

    def test_pulls_existing_checkout(self, recorder, homes):
        target = homes / "alice" / ".dotfiles"
        (target / ".git").mkdir(parents=True)
        (target / "setup").mkdir()
        (target / "setup" / "run.sh").write_text("#!/bin/sh\n")
        config = make_config(
            dotfiles_repo="https://example.com/dotfiles.git",
            dotfiles_installer="setup/run.sh",
        )

        db.DotfilesInstaller(config).install_for("alice")

        assert recorder.commands[0] == [
            "sudo", "-u", "alice", "-H", "--",
            "git", "-C", str(target), "pull", "--ff-only",
        ]
        assert recorder.commands[1][-1] == str(target / "setup" / "run.sh")

    def test_refuses_to_clone_over_a_plain_directory(self, recorder, homes):
        (homes / "alice" / ".dotfiles").mkdir(parents=True)
        config = make_config(dotfiles_repo="https://example.com/dotfiles.git")

        with pytest.raises(db.SetupError, match="not a git checkout"):
            db.DotfilesInstaller(config).install_for("alice")
        assert recorder.calls == []

    def test_missing_installer_fails(self, recorder, homes):
        (homes / "alice" / ".dotfiles" / ".git").mkdir(parents=True)
        config = make_config(dotfiles_repo="https://example.com/dotfiles.git")

        with pytest.raises(db.SetupError, match="installer .* not found"):
            db.DotfilesInstaller(config).install_for("alice")

    def test_failure_for_admin_still_installs_for_non_admin(self, recorder, homes):
        recorder.side_effect = clone_with_installer
        recorder.fail_when = lambda cmd: cmd[2] == "alice"
        config = make_config(
            dotfiles_repo="https://example.com/dotfiles.git",
            admin_user="alice",
            non_admin_user="deploy",
        )

        with pytest.raises(db.SetupError, match="Dotfiles failed for: alice"):
            db.DotfilesInstaller(config).install_all()

        deploy_cmds = [cmd for cmd in recorder.commands if cmd[2] == "deploy"]
        assert [cmd[5] for cmd in deploy_cmds] == ["git", "bash"]

    def test_without_admin_only_the_non_admin_is_served(self, recorder, homes):
        recorder.side_effect = clone_with_installer
        config = make_config(
            dotfiles_repo="https://example.com/dotfiles.git", non_admin_user="deploy"
        )

        db.DotfilesInstaller(config).install_all()

        assert {cmd[2] for cmd in recorder.commands} == {"deploy"}

    def test_creates_missing_non_admin_account(self, recorder, homes, monkeypatch):
        monkeypatch.setattr(db, "user_exists", lambda user: False)
        recorder.side_effect = clone_with_installer
        config = make_config(
            dotfiles_repo="https://example.com/dotfiles.git", non_admin_user="deploy"
        )

        db.DotfilesInstaller(config).install_all()

        assert recorder.commands[0] == ["useradd", "-m", "-s", "/bin/bash", "deploy"]


    def test_account_failure_still_installs_for_admin(self, recorder, homes, monkeypatch):
        monkeypatch.setattr(db, "user_exists", lambda user: user != "deploy")
        recorder.side_effect = clone_with_installer
        recorder.fail_when = lambda cmd: cmd[0] == "useradd"
        config = make_config(
            dotfiles_repo="https://example.com/dotfiles.git",
            admin_user="alice",
            non_admin_user="deploy",
        )

        with pytest.raises(db.SetupError, match="Dotfiles failed for: deploy"):
            db.DotfilesInstaller(config).install_all()

        alice_cmds = [cmd for cmd in recorder.commands if cmd[2] == "alice"]
        assert [cmd[5] for cmd in alice_cmds] == ["git", "bash"]

    def test_executable_installer_runs_with_its_own_interpreter(self, recorder, homes):
        target = homes / "alice" / ".dotfiles"
        (target / ".git").mkdir(parents=True)
        installer = target / "install.py"
        installer.write_text("#!/usr/bin/env python3\n")
        installer.chmod(0o755)
        config = make_config(
            dotfiles_repo="https://example.com/dotfiles.git",
            dotfiles_installer="install.py",
        )

        db.DotfilesInstaller(config).install_for("alice")

        assert recorder.commands[-1] == [
            "sudo", "-u", "alice", "-H", "--", str(installer),
        ]


class TestSSHKeys:
    @pytest.fixture
    def ssh_dir(self, homes):
        path = homes / "deploy" / ".ssh"
        path.mkdir(parents=True)
        return path

    def provisioner(self, **kwargs):
        return db.SSHKeyProvisioner(make_config(non_admin_user="deploy", **kwargs))

    def test_generates_key_pair_as_user(self, recorder, ssh_dir):
        self.provisioner().provision()

        keygen = recorder.commands[-1]
        assert keygen[:5] == ["sudo", "-u", "deploy", "-H", "--"]
        assert keygen[5:9] == ["ssh-keygen", "-q", "-t", "ed25519"]
        assert keygen[keygen.index("-N") + 1] == ""
        assert keygen[keygen.index("-C") + 1] == f"deploy@{db.AppConfig.HOSTNAME}"
        assert keygen[-1] == str(ssh_dir / "id_ed25519")
        assert ["chmod", "700", str(ssh_dir)] in recorder.commands
        assert ["chown", "deploy:", str(ssh_dir)] in recorder.commands

    def test_keeps_existing_key_pair(self, recorder, ssh_dir):
        (ssh_dir / "id_ed25519").write_text("private")
        prov = self.provisioner()

        assert prov.has_key()
        prov.provision(replace_existing=False)

        assert (ssh_dir / "id_ed25519").read_text() == "private"
        assert not any("ssh-keygen" in cmd for cmd in recorder.commands)

    def test_replaces_existing_key_pair(self, recorder, ssh_dir):
        (ssh_dir / "id_ed25519").write_text("private")
        (ssh_dir / "id_ed25519.pub").write_text("public")

        self.provisioner().provision(replace_existing=True)

        assert not (ssh_dir / "id_ed25519").exists()
        assert not (ssh_dir / "id_ed25519.pub").exists()
        assert any("ssh-keygen" in cmd for cmd in recorder.commands)

    def test_has_key_is_false_for_missing_account(self, monkeypatch):
        monkeypatch.setattr(db, "user_exists", lambda user: False)
        assert not self.provisioner().has_key()

    def test_installs_authorized_key_once(self, recorder, ssh_dir):
        authorized = ssh_dir / "authorized_keys"
        authorized.write_text("ssh-rsa AAAAB3NzaC1yc2E other@host")

        self.provisioner(non_admin_authorized_key=KEY).provision()
        self.provisioner(non_admin_authorized_key=KEY).provision()

        assert authorized.read_text().splitlines() == [
            "ssh-rsa AAAAB3NzaC1yc2E other@host",
            KEY,
        ]
        assert stat.S_IMODE(authorized.stat().st_mode) == 0o600
        assert recorder.commands.count(["chown", "deploy:", str(authorized)]) == 1

    def test_key_with_other_comment_counts_as_present(self, recorder, ssh_dir):
        authorized = ssh_dir / "authorized_keys"
        authorized.write_text(KEY.replace("me@laptop", "renamed") + "\n")

        prov = self.provisioner(non_admin_authorized_key=KEY)
        assert prov.add_authorized_key(str(authorized), KEY) is False
        assert authorized.read_text().count("ssh-ed25519") == 1

    def test_dry_run_writes_nothing(self, recorder, ssh_dir):
        prov = db.SSHKeyProvisioner(
            make_config(non_admin_user="deploy", non_admin_authorized_key=KEY),
            dry_run=True,
        )
        prov.provision()

        assert not (ssh_dir / "authorized_keys").exists()
        assert all(kwargs.get("dry_run") for _, kwargs in recorder.calls)

    def test_existing_ssh_dir_is_handed_to_the_user(self, recorder, ssh_dir):
        self.provisioner().provision()

        mkdir = recorder.commands.index(
            ["sudo", "-u", "deploy", "-H", "--", "mkdir", "-p", "-m", "700",
             str(ssh_dir)]
        )
        chown = recorder.commands.index(["chown", "deploy:", str(ssh_dir)])
        keygen = next(
            i for i, cmd in enumerate(recorder.commands) if "ssh-keygen" in cmd
        )
        assert mkdir < chown < keygen

    def test_refuses_symlinked_authorized_keys(self, recorder, ssh_dir, tmp_path):
        elsewhere = tmp_path / "shadow"
        elsewhere.write_text("root:x:0:0\n")
        (ssh_dir / "authorized_keys").symlink_to(elsewhere)
        prov = self.provisioner(non_admin_authorized_key=KEY)

        with pytest.raises(db.SetupError, match="symbolic link"):
            prov.add_authorized_key(str(ssh_dir / "authorized_keys"), KEY)

        assert elsewhere.read_text() == "root:x:0:0\n"

    def test_refuses_symlinked_ssh_dir(self, recorder, homes, tmp_path):
        (homes / "deploy").mkdir(parents=True)
        (homes / "deploy" / ".ssh").symlink_to(tmp_path)

        with pytest.raises(db.SetupError, match="symbolic link"):
            self.provisioner().provision()
        assert recorder.calls == []
