import subprocess

import pytest

import debian_bootstrap as db


class CommandRecorder:
    """Stands in for run_command and remembers every command it was given."""

    def __init__(self):
        self.calls = []
        self.fail_when = None
        self.side_effect = None

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append((cmd, kwargs))
        if self.fail_when and self.fail_when(cmd):
            raise db.ExecutionError(f"Command failed (code 1): {' '.join(cmd)}")
        if self.side_effect and not kwargs.get("dry_run"):
            self.side_effect(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    @property
    def commands(self):
        return [cmd for cmd, _ in self.calls]


@pytest.fixture(autouse=True)
def _fresh_status():
    db.reset_status()
    yield
    db.reset_status()


@pytest.fixture
def recorder(monkeypatch):
    rec = CommandRecorder()
    monkeypatch.setattr(db, "run_command", rec)
    return rec


@pytest.fixture
def homes(tmp_path, monkeypatch):
    """Point every account at a home directory under tmp_path."""
    root = tmp_path / "home"

    def get_user_home(user):
        path = root / user
        path.mkdir(parents=True, exist_ok=True)
        return str(path)

    monkeypatch.setattr(db, "user_exists", lambda user: True)
    monkeypatch.setattr(db, "get_user_home", get_user_home)
    return root


@pytest.fixture
def write_config(tmp_path):
    def _write(text, name="bootstrap.conf"):
        path = tmp_path / name
        path.write_text(text)
        return str(path)

    return _write


@pytest.fixture
def os_release(tmp_path, monkeypatch):
    def _write(version_id="13", distro="debian", codename="trixie"):
        path = tmp_path / "os-release"
        path.write_text(
            f'PRETTY_NAME="Debian GNU/Linux {version_id} ({codename})"\n'
            f'NAME="Debian GNU/Linux"\n'
            f'VERSION_ID="{version_id}"\n'
            f"VERSION_CODENAME={codename}\n"
            f"ID={distro}\n"
        )
        monkeypatch.setattr(db.AppConfig, "OS_RELEASE_FILE", str(path))
        return str(path)

    return _write


@pytest.fixture
def sshd_config(tmp_path, monkeypatch):
    path = tmp_path / "sshd_config"
    path.write_text(
        "Include /etc/ssh/sshd_config.d/*.conf\n"
        "\n"
        "#Port 22\n"
        "#AddressFamily any\n"
        "KbdInteractiveAuthentication no\n"
        "UsePAM yes\n"
    )
    monkeypatch.setattr(db.AppConfig, "SSHD_CONFIG", str(path))
    return path

