#!/usr/bin/env python3
"""
Debian Headless Server Bootstrap Utility
----------------------------------------

Applies a configuration file to a freshly installed headless Debian Trixie
server. The configuration is a flat file of shell-style variable assignments;
every optional step is enabled by the presence of its variable.

Steps:
  • Update package lists, run a full upgrade and install a fixed set of utilities
  • Move the SSH daemon to a custom port (SSH_PORT)
  • Clone and apply a dotfiles repository for the admin and non-admin user (DOTFILES_REPO)
  • Generate an SSH key pair for the non-admin user (NON_ADMIN_USER)
  • Install an authorized key for the non-admin user (NON_ADMIN_AUTHORIZED_KEY)

Example configuration:

    SSH_PORT=2222
    DOTFILES_REPO="https://github.com/example/dotfiles.git"
    NON_ADMIN_USER=deploy
    NON_ADMIN_AUTHORIZED_KEY="ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAA... me@laptop"

Requires root privileges (except with --dry-run).
Version: 1.0.0
"""

import datetime
import gzip
import logging
import os
import platform
import pwd
import re
import shlex
import shutil
import signal
import socket
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import click
import pyfiglet
from rich.align import Align
from rich.box import ROUNDED
from rich.console import Console, Group
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.prompt import Confirm
from rich.style import Style
from rich.table import Table
from rich.text import Text
from rich.theme import Theme
from rich.traceback import install as install_rich_traceback


# ----------------------------------------------------------------
# Configuration & Constants
# ----------------------------------------------------------------
@dataclass
class AppConfig:
    """Global application configuration."""

    # Application info
    VERSION: str = "1.0.0"
    APP_NAME: str = "Debian Bootstrap"
    APP_SUBTITLE: str = "Headless Server Bootstrap Utility"

    # System info
    HOSTNAME: str = socket.gethostname()

    # Target release
    DEBIAN_ID: str = "debian"
    DEBIAN_VERSION_ID: str = "13"
    DEBIAN_CODENAME: str = "trixie"

    # Paths and files
    OS_RELEASE_FILE: str = "/etc/os-release"
    SSHD_CONFIG: str = "/etc/ssh/sshd_config"
    LOG_FILE: str = "/var/log/debian_bootstrap.log"
    MAX_LOG_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Per-user layout
    DOTFILES_DIR: str = ".dotfiles"
    DEFAULT_DOTFILES_INSTALLER: str = "install.sh"
    SSH_KEY_TYPE: str = "ed25519"

    # Terminal dimensions
    TERM_WIDTH: int = shutil.get_terminal_size().columns

    # Operation settings
    COMMAND_TIMEOUT: int = 3600  # seconds, a full upgrade can be slow


# Utilities installed on every server
UTILITIES: List[str] = [
    "sudo",
    "curl",
    "wget",
    "git",
    "vim",
    "tmux",
    "htop",
    "tree",
    "ncdu",
    "rsync",
    "unzip",
    "jq",
    "bash-completion",
    "ca-certificates",
    "openssh-server",
]

# Variables understood in the configuration file
CONFIG_KEYS: List[str] = [
    "SSH_PORT",
    "DOTFILES_REPO",
    "DOTFILES_INSTALLER",
    "ADMIN_USER",
    "NON_ADMIN_USER",
    "NON_ADMIN_AUTHORIZED_KEY",
]

SSH_KEY_TYPES: Tuple[str, ...] = (
    "ssh-ed25519",
    "ssh-rsa",
    "ssh-dss",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
)

ASSIGNMENT_RE = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*\$?$")
SSHD_PORT_RE = re.compile(
    r"^\s*(#\s*)?Port(?:\s+|\s*=\s*)\d+\s*(#.*)?$", re.IGNORECASE
)
SSHD_MATCH_RE = re.compile(r"^\s*Match(\s|$)", re.IGNORECASE)
# Characters that make a following $ start an expansion
EXPANSION_RE = re.compile(r"[\w{(@*#?$!-]")

# Global status report dictionary
SETUP_STATUS: Dict[str, Dict[str, str]] = {}

STATUS_TASKS: List[str] = [
    "preflight",
    "package_update",
    "system_upgrade",
    "utilities_install",
    "autoremove",
    "ssh_port",
    "dotfiles",
    "ssh_keys",
]


def reset_status() -> None:
    """Mark every task as pending."""
    SETUP_STATUS.clear()
    for task in STATUS_TASKS:
        SETUP_STATUS[task] = {"status": "pending", "message": ""}


reset_status()


# ----------------------------------------------------------------
# Nord-Themed Colors and Rich Console
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette for consistent theming throughout the application."""

    # Polar Night (dark background)
    POLAR_NIGHT_4: str = "#4C566A"

    # Snow Storm (light text)
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"

    # Frost (blue accents)
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"

    # Aurora (other accents)
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"
    PURPLE: str = "#B48EAD"


console = Console(
    theme=Theme(
        {
            "info": f"bold {NordColors.FROST_2}",
            "warning": f"bold {NordColors.YELLOW}",
            "error": f"bold {NordColors.RED}",
            "success": f"bold {NordColors.GREEN}",
            "step": f"{NordColors.FROST_2}",
            "skipped": f"{NordColors.POLAR_NIGHT_4}",
            "path": f"italic {NordColors.FROST_1}",
        }
    )
)

logger = logging.getLogger("debian_bootstrap")


# ----------------------------------------------------------------
# Custom Exceptions
# ----------------------------------------------------------------
class SetupError(Exception):
    """Base exception for bootstrap errors."""

    pass


class ConfigurationError(SetupError):
    """Raised when the configuration file is invalid."""

    pass


class ExecutionError(SetupError):
    """Raised when command execution fails."""

    pass


class PermissionError(SetupError):
    """Raised when insufficient permissions are detected."""

    pass


class AbortedError(SetupError):
    """Raised when the operator declines to continue."""

    pass


# ----------------------------------------------------------------
# Logging and Banner Helpers
# ----------------------------------------------------------------
def setup_logging(log_file: str = AppConfig.LOG_FILE, debug: bool = False) -> None:
    """
    Configure the bootstrap logger with a file handler.

    The log file is rotated to a gzip archive once it grows past
    AppConfig.MAX_LOG_SIZE. With debug enabled the log is also mirrored on
    the console through a RichHandler.

    Args:
        log_file: Path of the log file
        debug: Whether to log at DEBUG level and mirror to the console

    Raises:
        OSError: If the log file cannot be opened
    """
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    if os.path.exists(log_file) and os.path.getsize(log_file) > AppConfig.MAX_LOG_SIZE:
        ts = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
        rotated = f"{log_file}.{ts}.gz"
        try:
            with open(log_file, "rb") as fin, gzip.open(rotated, "wb") as fout:
                shutil.copyfileobj(fin, fout)
            open(log_file, "w").close()
            console.print(f"Rotated log file to [path]{rotated}[/path]")
        except OSError as e:
            console.print(f"[warning]Failed to rotate log file: {e}[/warning]")

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )
    logger.addHandler(file_handler)

    if debug:
        logger.addHandler(RichHandler(rich_tracebacks=True, console=console))

    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.info("Logging initialized: %s", log_file)


def create_header() -> Panel:
    """
    Create an ASCII art header using Pyfiglet with a Nord-themed gradient.

    Returns:
        Panel: A Rich Panel containing the styled header.
    """
    adjusted_width = min(AppConfig.TERM_WIDTH - 10, 80)
    ascii_art = ""
    for font in ("slant", "small", "standard"):
        try:
            ascii_art = pyfiglet.Figlet(font=font, width=adjusted_width).renderText(
                AppConfig.APP_NAME
            )
        except pyfiglet.FigletError as e:
            logger.debug(f"Font {font} failed: {e}")
            continue
        if ascii_art.strip():
            break

    if not ascii_art.strip():
        ascii_art = f"=== {AppConfig.APP_NAME} ===\n"

    colors = [
        NordColors.FROST_1,
        NordColors.FROST_2,
        NordColors.FROST_3,
        NordColors.FROST_4,
    ]
    styled_text = ""
    lines = [line for line in ascii_art.splitlines() if line.strip()]
    for i, line in enumerate(lines):
        styled_text += f"[bold {colors[i % len(colors)]}]{escape(line)}[/]\n"

    border = f"[{NordColors.FROST_3}]{'━' * max(10, min(60, adjusted_width - 5))}[/]"
    return Panel(
        Text.from_markup(f"{border}\n{styled_text}{border}"),
        border_style=Style(color=NordColors.FROST_1),
        padding=(1, 2),
        box=ROUNDED,
        title=f"[bold {NordColors.SNOW_STORM_2}]v{AppConfig.VERSION}[/]",
        title_align="right",
        subtitle=f"[bold {NordColors.SNOW_STORM_1}]{AppConfig.APP_SUBTITLE}[/]",
        subtitle_align="center",
    )


def print_message(
    text: str, style: str = NordColors.FROST_2, prefix: str = "•"
) -> None:
    """
    Print a styled message to the console and log it.

    Args:
        text: The message to print
        style: The color to use
        prefix: Symbol to prefix the message with
    """
    console.print(f"[{style}]{prefix} {escape(text)}[/{style}]")
    logger.info(text)


def print_step(text: str) -> None:
    print_message(text, NordColors.FROST_3, "➜")


def print_success(text: str) -> None:
    console.print(f"[{NordColors.GREEN}]✓ {escape(text)}[/{NordColors.GREEN}]")
    logger.info(f"SUCCESS: {text}")


def print_warning(text: str) -> None:
    console.print(f"[{NordColors.YELLOW}]⚠ {escape(text)}[/{NordColors.YELLOW}]")
    logger.warning(text)


def print_error(text: str) -> None:
    console.print(f"[{NordColors.RED}]✗ {escape(text)}[/{NordColors.RED}]")
    logger.error(text)


def print_section(title: str) -> None:
    """Print a section header using the Pyfiglet small font."""
    console.print()
    try:
        console.print(
            pyfiglet.figlet_format(title, font="small"),
            style=f"bold {NordColors.FROST_2}",
            markup=False,
        )
    except pyfiglet.FigletError:
        console.print(f"[bold {NordColors.FROST_1}]== {title.upper()} ==[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * 60}[/]")
    logger.info(f"--- {title} ---")


def status_report() -> None:
    """Display a table reporting the status of all bootstrap tasks."""
    print_section("Status Report")

    icons = {
        "success": "✓",
        "failed": "✗",
        "pending": "?",
        "in_progress": "⋯",
        "skipped": "-",
    }
    styles = {
        "success": "success",
        "failed": "error",
        "in_progress": "warning",
        "skipped": "skipped",
    }

    table = Table(
        show_header=True,
        header_style=f"bold {NordColors.FROST_1}",
        border_style=NordColors.FROST_3,
        box=ROUNDED,
        title=f"[bold {NordColors.FROST_2}]Debian Bootstrap Status[/]",
        title_justify="center",
        expand=True,
    )
    table.add_column("Task", style=f"bold {NordColors.FROST_2}")
    table.add_column("Status", style=f"bold {NordColors.FROST_3}", justify="center")
    table.add_column("Message", style=f"{NordColors.SNOW_STORM_1}", ratio=3)

    status_counts = {status: 0 for status in icons}
    for task, data in SETUP_STATUS.items():
        st = data["status"]
        status_counts[st] = status_counts.get(st, 0) + 1
        table.add_row(
            task.replace("_", " ").title(),
            f"[{styles.get(st, 'step')}]{icons.get(st, '?')} {st.upper()}[/]",
            escape(data["message"]),
        )

    summary = Text()
    summary.append("Status Summary: ", style=f"bold {NordColors.FROST_3}")
    summary.append(
        f"{status_counts['success']} Succeeded", style=f"bold {NordColors.GREEN}"
    )
    summary.append(" | ")
    summary.append(f"{status_counts['failed']} Failed", style=f"bold {NordColors.RED}")
    summary.append(" | ")
    summary.append(
        f"{status_counts['skipped']} Skipped", style=f"bold {NordColors.POLAR_NIGHT_4}"
    )

    console.print(
        Panel(
            Group(table, Align.center(summary)),
            border_style=Style(color=NordColors.FROST_4),
            padding=(0, 1),
            box=ROUNDED,
        )
    )


def confirm(prompt: str, assume_yes: bool = False, default: bool = False) -> bool:
    """
    Ask the operator a yes/no question.

    Args:
        prompt: The question to ask
        assume_yes: Answer yes without prompting (unattended runs)
        default: Answer used when the operator just presses enter, or when
            stdin is closed

    Returns:
        True if the answer is yes
    """
    if assume_yes:
        logger.info(f"{prompt} -> yes (assumed)")
        return True
    try:
        answer = Confirm.ask(
            f"[bold {NordColors.FROST_3}]{escape(prompt)}[/]",
            default=default,
            console=console,
        )
    except EOFError:
        console.print()
        logger.warning(f"{prompt} -> no input available, using default")
        answer = default
    logger.info(f"{prompt} -> {'yes' if answer else 'no'}")
    return answer


# ----------------------------------------------------------------
# Command Execution Helpers
# ----------------------------------------------------------------
def run_command(
    cmd: List[str],
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    check: bool = True,
    capture_output: bool = True,
    timeout: int = AppConfig.COMMAND_TIMEOUT,
    dry_run: bool = False,
) -> subprocess.CompletedProcess:
    """
    Execute a system command with error handling.

    Args:
        cmd: Command to execute
        env: Environment variables
        cwd: Working directory for the command
        check: Whether to raise an exception on non-zero exit
        capture_output: Whether to capture stdout/stderr
        timeout: Command timeout in seconds
        dry_run: Log the command instead of executing it

    Returns:
        subprocess.CompletedProcess object

    Raises:
        ExecutionError: If the command fails, times out or cannot be started
    """
    cmd_str = " ".join(shlex.quote(part) for part in cmd)

    if dry_run:
        print_message(f"[dry-run] {cmd_str}", NordColors.PURPLE, "»")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    logger.debug(f"Executing: {cmd_str}")
    try:
        return subprocess.run(
            cmd,
            env=env or os.environ.copy(),
            cwd=cwd,
            check=check,
            text=True,
            capture_output=capture_output,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        error_msg = f"Command failed (code {e.returncode}): {cmd_str}"
        if e.stdout:
            error_msg += f"\nOutput: {e.stdout.strip()}"
        if e.stderr:
            error_msg += f"\nError: {e.stderr.strip()}"
        logger.error(error_msg)
        raise ExecutionError(error_msg) from e
    except subprocess.TimeoutExpired as e:
        error_msg = f"Command timed out after {timeout} seconds: {cmd_str}"
        logger.error(error_msg)
        raise ExecutionError(error_msg) from e
    except OSError as e:
        error_msg = f"Error executing command: {cmd_str}: {e}"
        logger.error(error_msg)
        raise ExecutionError(error_msg) from e


def run_as_user(
    user: str, cmd: List[str], dry_run: bool = False, **kwargs: Any
) -> subprocess.CompletedProcess:
    """Run a command as another user with that user's HOME."""
    return run_command(
        ["sudo", "-u", user, "-H", "--"] + cmd, dry_run=dry_run, **kwargs
    )


def run_with_progress(
    desc: str, func: Callable, *args, task_name: Optional[str] = None, **kwargs
) -> Any:
    """
    Run a function with a Rich spinner and status tracking.

    Args:
        desc: Description of the task
        func: Function to run
        *args: Arguments to pass to the function
        task_name: Key in SETUP_STATUS to update
        **kwargs: Keyword arguments to pass to the function

    Returns:
        The return value of the function
    """
    if task_name:
        SETUP_STATUS[task_name] = {
            "status": "in_progress",
            "message": f"{desc} in progress...",
        }

    start = time.time()
    try:
        with Progress(
            SpinnerColumn(spinner_name="dots", style=f"bold {NordColors.FROST_1}"),
            TextColumn(f"[bold {NordColors.FROST_2}]{{task.description}}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(desc, total=None)
            result = func(*args, **kwargs)
    except Exception as e:
        elapsed = time.time() - start
        print_error(f"{desc} failed in {elapsed:.2f}s: {e}")
        if task_name:
            SETUP_STATUS[task_name] = {
                "status": "failed",
                "message": f"{desc} failed: {e}",
            }
        raise

    elapsed = time.time() - start
    print_success(f"{desc} completed in {elapsed:.2f}s")
    if task_name:
        SETUP_STATUS[task_name] = {
            "status": "success",
            "message": f"{desc} succeeded in {elapsed:.2f}s.",
        }
    return result


def signal_handler(signum: int, frame: Optional[Any]) -> None:
    """Exit with a signal-specific code when interrupted."""
    try:
        sig_name = signal.Signals(signum).name
    except ValueError:
        sig_name = f"signal {signum}"

    console.print()
    print_warning(f"Process interrupted by {sig_name}")
    sys.exit(128 + signum)


# ----------------------------------------------------------------
# Utility Functions
# ----------------------------------------------------------------
class Utils:
    """Utility methods for common operations."""

    @staticmethod
    def command_exists(cmd: str) -> bool:
        return shutil.which(cmd) is not None

    @staticmethod
    def backup_file(fp: str) -> Optional[str]:
        """
        Backup a file with a timestamp suffix.

        Args:
            fp: Path to the file to backup

        Returns:
            Path to the backup file, or None if there was nothing to back up

        Raises:
            OSError: If the copy fails
        """
        if not os.path.isfile(fp):
            return None
        ts = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
        backup = f"{fp}.bak.{ts}"
        shutil.copy2(fp, backup)
        logger.info(f"Backed up {fp} to {backup}")
        return backup


def user_exists(user: str) -> bool:
    try:
        pwd.getpwnam(user)
    except KeyError:
        return False
    return True


def get_user_home(user: str) -> str:
    """
    Look up a user's home directory.

    Raises:
        SetupError: If the account does not exist
    """
    try:
        return pwd.getpwnam(user).pw_dir
    except KeyError:
        raise SetupError(f"User {user} does not exist") from None


def ensure_user(user: str, dry_run: bool = False) -> None:
    """Create a login account with a home directory if it is missing."""
    if user_exists(user):
        logger.info(f"User {user} already exists.")
        return
    print_step(f"Creating user {user}")
    run_command(["useradd", "-m", "-s", "/bin/bash", user], dry_run=dry_run)


def resolve_home(user: str, dry_run: bool = False) -> str:
    # An account created during a dry run does not exist yet.
    if dry_run and not user_exists(user):
        return os.path.join("/home", user)
    return get_user_home(user)


# ----------------------------------------------------------------
# Configuration File
# ----------------------------------------------------------------
@dataclass
class BootstrapConfig:
    """Settings read from the configuration file."""

    path: str
    ssh_port: Optional[int] = None
    dotfiles_repo: Optional[str] = None
    dotfiles_installer: str = AppConfig.DEFAULT_DOTFILES_INSTALLER
    admin_user: Optional[str] = None
    non_admin_user: Optional[str] = None
    non_admin_authorized_key: Optional[str] = None

    def summary_rows(self) -> List[Tuple[str, str]]:
        """Rows describing the configuration, one per variable."""
        unset = "(not set)"
        key = self.non_admin_authorized_key
        if key and len(key) > 48:
            key = f"{key[:24]}...{key[-20:]}"
        return [
            ("SSH_PORT", str(self.ssh_port) if self.ssh_port else unset),
            ("DOTFILES_REPO", self.dotfiles_repo or unset),
            ("DOTFILES_INSTALLER", self.dotfiles_installer),
            ("ADMIN_USER", self.admin_user or unset),
            ("NON_ADMIN_USER", self.non_admin_user or unset),
            ("NON_ADMIN_AUTHORIZED_KEY", key or unset),
        ]


def strip_shell_comment(value: str) -> str:
    """
    Return the value of an assignment without its trailing comment.

    As in the shell, ``#`` only starts a comment at the beginning of an
    unquoted word, so ``repo.git#main`` keeps its fragment.

    Raises:
        ValueError: If the value relies on parameter expansion or command
            substitution, which only single quotes keep literal
    """
    quote: Optional[str] = None
    escaped = False
    word_start = False
    for i, char in enumerate(value):
        if escaped:
            if quote == '"' and char in "$`":
                raise ValueError(
                    f"escaped {char} inside double quotes is not supported, "
                    "use single quotes for a literal value"
                )
            escaped = False
            word_start = False
            continue
        if quote == "'":
            if char == "'":
                quote = None
        elif char == "\\":
            escaped = True
        elif char == "`" or (
            char == "$" and EXPANSION_RE.match(value[i + 1 : i + 2])
        ):
            raise ValueError(
                f"shell expansion ({char}) is not supported, "
                "use single quotes for a literal value"
            )
        elif quote == '"':
            if char == '"':
                quote = None
        elif char in "'\"":
            quote = char
        elif char == "#" and word_start:
            return value[:i]
        word_start = quote is None and not escaped and char.isspace()
    return value


def parse_config_file(path: str) -> Dict[str, str]:
    """
    Parse a file of shell-style variable assignments.

    Accepts blank lines, comments, an optional ``export`` prefix and values
    quoted the way a shell would quote them. Later assignments override
    earlier ones.

    Args:
        path: Path to the configuration file

    Returns:
        Mapping of variable name to value

    Raises:
        ConfigurationError: On unreadable files or lines that are not simple
            assignments
    """
    try:
        with open(path) as f:
            lines = f.readlines()
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    values: Dict[str, str] = {}
    for lineno, raw in enumerate(lines, 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        match = ASSIGNMENT_RE.match(line)
        if not match:
            raise ConfigurationError(
                f"{path}:{lineno}: expected KEY=VALUE, got: {line}"
            )
        key, raw_value = match.groups()

        if raw_value[:1].isspace() and not raw_value.strip().startswith("#"):
            raise ConfigurationError(
                f"{path}:{lineno}: whitespace after '=' in assignment to {key}"
            )

        try:
            words = shlex.split(strip_shell_comment(raw_value))
        except ValueError as e:
            raise ConfigurationError(f"{path}:{lineno}: {key}: {e}") from e

        if len(words) > 1:
            raise ConfigurationError(
                f"{path}:{lineno}: value of {key} contains unquoted whitespace"
            )
        values[key] = words[0] if words else ""

    return values


def validate_username(name: str, variable: str) -> str:
    if len(name) > 32 or not USERNAME_RE.match(name):
        raise ConfigurationError(f"{variable}: invalid user name {name!r}")
    return name


def validate_ssh_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigurationError(f"SSH_PORT: not a number: {value!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"SSH_PORT: {port} is outside 1-65535")
    return port


def validate_public_key(value: str) -> str:
    """
    Check that a value looks like an OpenSSH public key line.

    Returns:
        The key with surrounding whitespace removed
    """
    fields = value.split()
    if len(fields) < 2 or fields[0] not in SSH_KEY_TYPES:
        raise ConfigurationError(
            "NON_ADMIN_AUTHORIZED_KEY: expected '<type> <base64> [comment]'"
        )
    if not re.match(r"^[A-Za-z0-9+/]+={0,3}$", fields[1]):
        raise ConfigurationError("NON_ADMIN_AUTHORIZED_KEY: key body is not base64")
    return " ".join(fields)


def validate_installer_path(value: str) -> str:
    normalized = os.path.normpath(value)
    if os.path.isabs(normalized) or normalized.split(os.sep)[0] == "..":
        raise ConfigurationError(
            f"DOTFILES_INSTALLER: {value!r} must be a path inside the repository"
        )
    return normalized


def load_config(
    path: str, environ: Optional[Dict[str, str]] = None
) -> BootstrapConfig:
    """
    Load and validate the configuration file.

    Empty values count as unset. ADMIN_USER falls back to SUDO_USER from the
    environment; an admin that resolves to root is treated as unset.

    Args:
        path: Path to the configuration file
        environ: Environment used for the SUDO_USER fallback

    Returns:
        The validated configuration

    Raises:
        ConfigurationError: If any value is invalid
    """
    environ = os.environ if environ is None else environ
    values = parse_config_file(path)

    for key in sorted(set(values) - set(CONFIG_KEYS)):
        logger.warning(f"Ignoring unknown configuration variable {key}")

    def get(key: str) -> Optional[str]:
        return values.get(key) or None

    config = BootstrapConfig(path=path)

    if get("SSH_PORT"):
        config.ssh_port = validate_ssh_port(get("SSH_PORT"))

    config.dotfiles_repo = get("DOTFILES_REPO")
    if get("DOTFILES_INSTALLER"):
        config.dotfiles_installer = validate_installer_path(get("DOTFILES_INSTALLER"))

    admin = get("ADMIN_USER") or environ.get("SUDO_USER") or None
    if admin and admin != "root":
        config.admin_user = validate_username(admin, "ADMIN_USER")

    if get("NON_ADMIN_USER"):
        config.non_admin_user = validate_username(
            get("NON_ADMIN_USER"), "NON_ADMIN_USER"
        )
        if config.non_admin_user in ("root", config.admin_user):
            raise ConfigurationError(
                "NON_ADMIN_USER must differ from root and the admin user"
            )

    if get("NON_ADMIN_AUTHORIZED_KEY"):
        if not config.non_admin_user:
            raise ConfigurationError(
                "NON_ADMIN_AUTHORIZED_KEY is set but NON_ADMIN_USER is not"
            )
        config.non_admin_authorized_key = validate_public_key(
            get("NON_ADMIN_AUTHORIZED_KEY")
        )

    logger.info(f"Loaded configuration from {path}")
    return config


# ----------------------------------------------------------------
# Preflight Checks
# ----------------------------------------------------------------
def read_os_release(path: str = AppConfig.OS_RELEASE_FILE) -> Dict[str, str]:
    """
    Parse an os-release file into a dictionary.

    Raises:
        OSError: If the file cannot be read
    """
    os_info: Dict[str, str] = {}
    with open(path) as f:
        for line in f:
            if "=" in line:
                k, v = line.strip().split("=", 1)
                os_info[k] = v.strip('"').strip("'")
    return os_info


class PreflightChecker:
    """Checks run before any system change."""

    def check_root(self) -> None:
        """
        Ensure the script runs as root.

        Raises:
            PermissionError: If not running as root
        """
        if os.geteuid() != 0:
            raise PermissionError("This script must run with root privileges")
        logger.info("Root privileges confirmed.")

    def check_os_version(self) -> Tuple[bool, str]:
        """
        Compare the running OS with the target Debian release.

        Returns:
            Tuple of (matches target, description of the detected OS)
        """
        try:
            os_info = read_os_release(AppConfig.OS_RELEASE_FILE)
        except OSError as e:
            logger.warning(f"Cannot read {AppConfig.OS_RELEASE_FILE}: {e}")
            return False, "unknown"

        detected = os_info.get("PRETTY_NAME") or (
            f"{os_info.get('ID', 'unknown')} {os_info.get('VERSION_ID', 'unknown')}"
        )
        logger.info(f"Detected OS: {detected}")
        matches = (
            os_info.get("ID") == AppConfig.DEBIAN_ID
            and os_info.get("VERSION_ID") == AppConfig.DEBIAN_VERSION_ID
        )
        return matches, detected

    def check_commands(self) -> List[str]:
        """Return the essential commands missing from PATH."""
        missing = [
            cmd
            for cmd in ("apt-get", "dpkg", "systemctl", "useradd", "sudo")
            if not Utils.command_exists(cmd)
        ]
        if missing:
            logger.warning(f"Missing essential commands: {', '.join(missing)}")
        return missing


# ----------------------------------------------------------------
# Package Management
# ----------------------------------------------------------------
class PackageManager:
    """Runs the fixed apt-get steps non-interactively."""

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def _apt(self, *args: str) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        env["DEBIAN_FRONTEND"] = "noninteractive"
        return run_command(["apt-get", *args], env=env, dry_run=self.dry_run)

    def update(self) -> None:
        self._apt("update")

    def upgrade(self) -> None:
        # Keep locally modified configuration files on upgrade
        self._apt(
            "-y",
            "-o",
            "Dpkg::Options::=--force-confdef",
            "-o",
            "Dpkg::Options::=--force-confold",
            "full-upgrade",
        )

    def install_utilities(self, packages: Optional[List[str]] = None) -> None:
        self._apt("install", "-y", *(packages or UTILITIES))

    def autoremove(self) -> None:
        self._apt("-y", "autoremove")


# ----------------------------------------------------------------
# SSH Daemon
# ----------------------------------------------------------------
def set_sshd_port(lines: List[str], port: int) -> List[str]:
    """
    Rewrite sshd_config lines so the daemon listens on a single port.

    The first Port directive, active or commented out, is replaced and any
    later active Port directives are dropped. Without an existing directive
    one is inserted before the first Match block, since Port is not allowed
    inside one.

    Args:
        lines: Lines of sshd_config, with line endings
        port: Port number to configure

    Returns:
        The updated lines
    """
    directive = f"Port {port}\n"
    result: List[str] = []
    replaced = False

    for line in lines:
        match = SSHD_PORT_RE.match(line)
        if match and not replaced:
            result.append(directive)
            replaced = True
        elif match and not match.group(1):
            continue
        else:
            result.append(line)

    if not replaced:
        for i, line in enumerate(result):
            if SSHD_MATCH_RE.match(line):
                result.insert(i, directive)
                break
        else:
            if result and not result[-1].endswith("\n"):
                result[-1] += "\n"
            result.append(directive)

    return result


class SSHConfigurator:
    """Moves the SSH daemon to the configured port."""

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def configure_port(self, port: int) -> None:
        """
        Set the sshd port, validate the result and restart the service.

        The original configuration is restored if ``sshd -t`` rejects the
        new one.

        Raises:
            SetupError: If the configuration is missing or invalid
        """
        sshd_config = AppConfig.SSHD_CONFIG
        if not os.path.isfile(sshd_config):
            raise SetupError(f"{sshd_config} not found")

        with open(sshd_config) as f:
            lines = f.readlines()
        updated = set_sshd_port(lines, port)

        if self.dry_run:
            print_message(
                f"[dry-run] would set 'Port {port}' in {sshd_config}",
                NordColors.PURPLE,
                "»",
            )
        else:
            backup = Utils.backup_file(sshd_config)
            with open(sshd_config, "w") as f:
                f.writelines(updated)
            try:
                run_command(["sshd", "-t", "-f", sshd_config])
            except ExecutionError:
                if backup:
                    shutil.copy2(backup, sshd_config)
                    logger.warning(f"Restored {sshd_config} from {backup}")
                raise

        run_command(["systemctl", "restart", "ssh"], dry_run=self.dry_run)
        logger.info(f"SSH daemon now listens on port {port}")


# ----------------------------------------------------------------
# Dotfiles
# ----------------------------------------------------------------
class DotfilesInstaller:
    """Clones the dotfiles repository for a user and runs its installer."""

    def __init__(self, config: BootstrapConfig, dry_run: bool = False) -> None:
        self.config = config
        self.dry_run = dry_run

    def install_for(self, user: str) -> None:
        """
        Clone or update the dotfiles checkout for one user and apply it.

        Raises:
            SetupError: If the checkout or the installer fails
        """
        home = resolve_home(user, self.dry_run)
        target = os.path.join(home, AppConfig.DOTFILES_DIR)

        if os.path.isdir(os.path.join(target, ".git")):
            print_step(f"Updating dotfiles for {user}")
            run_as_user(
                user, ["git", "-C", target, "pull", "--ff-only"], dry_run=self.dry_run
            )
        elif os.path.exists(target):
            raise SetupError(f"{target} exists and is not a git checkout")
        else:
            print_step(f"Cloning dotfiles for {user}")
            run_as_user(
                user,
                ["git", "clone", self.config.dotfiles_repo, target],
                dry_run=self.dry_run,
            )

        installer = os.path.join(target, self.config.dotfiles_installer)
        if not self.dry_run and not os.path.isfile(installer):
            raise SetupError(f"Dotfiles installer {installer} not found")

        # An executable installer picks its own interpreter from the shebang
        cmd = [installer] if os.access(installer, os.X_OK) else ["bash", installer]
        print_step(f"Running {self.config.dotfiles_installer} for {user}")
        run_as_user(user, cmd, cwd=target, dry_run=self.dry_run)
        logger.info(f"Dotfiles applied for {user}")

    def install_all(self) -> None:
        """
        Apply dotfiles for the admin user, then the non-admin user.

        A failure for one user does not prevent the attempt for the other.

        Raises:
            SetupError: Listing every user the install failed for
        """
        users: List[str] = []
        if self.config.admin_user:
            users.append(self.config.admin_user)
        else:
            print_warning("No admin user resolved, skipping admin dotfiles")

        if self.config.non_admin_user:
            users.append(self.config.non_admin_user)

        failures: List[str] = []
        for user in users:
            try:
                if user == self.config.non_admin_user:
                    ensure_user(user, self.dry_run)
                self.install_for(user)
            except (SetupError, OSError) as e:
                print_error(f"Dotfiles failed for {user}: {e}")
                failures.append(user)

        if failures:
            raise SetupError(f"Dotfiles failed for: {', '.join(failures)}")


# ----------------------------------------------------------------
# SSH Keys
# ----------------------------------------------------------------
class SSHKeyProvisioner:
    """Provisions an SSH key pair and an authorized key for the non-admin user."""

    def __init__(self, config: BootstrapConfig, dry_run: bool = False) -> None:
        self.config = config
        self.dry_run = dry_run
        self.user = config.non_admin_user

    def key_path(self) -> str:
        home = resolve_home(self.user, self.dry_run)
        return os.path.join(home, ".ssh", f"id_{AppConfig.SSH_KEY_TYPE}")

    def has_key(self) -> bool:
        if not user_exists(self.user):
            return False
        return os.path.exists(self.key_path())

    def provision(self, replace_existing: bool = False) -> None:
        """
        Ensure the account, generate its key pair and install the authorized key.

        Args:
            replace_existing: Remove an existing key pair before generating
        """
        ensure_user(self.user, self.dry_run)
        key_path = self.key_path()
        ssh_dir = os.path.dirname(key_path)
        if os.path.islink(ssh_dir):
            raise SetupError(f"{ssh_dir} is a symbolic link, refusing to use it")

        run_as_user(
            self.user, ["mkdir", "-p", "-m", "700", ssh_dir], dry_run=self.dry_run
        )
        run_command(["chmod", "700", ssh_dir], dry_run=self.dry_run)
        run_command(["chown", f"{self.user}:", ssh_dir], dry_run=self.dry_run)

        if os.path.exists(key_path) and not replace_existing:
            print_step(f"Keeping existing SSH key pair for {self.user}")
        else:
            if os.path.exists(key_path) and not self.dry_run:
                for path in (key_path, f"{key_path}.pub"):
                    if os.path.exists(path):
                        os.remove(path)
                logger.info(f"Removed existing key pair {key_path}")
            self.generate_key(key_path)

        if self.config.non_admin_authorized_key:
            self.add_authorized_key(
                os.path.join(ssh_dir, "authorized_keys"),
                self.config.non_admin_authorized_key,
            )

    def generate_key(self, key_path: str) -> None:
        print_step(f"Generating {AppConfig.SSH_KEY_TYPE} key pair for {self.user}")
        run_as_user(
            self.user,
            [
                "ssh-keygen",
                "-q",
                "-t",
                AppConfig.SSH_KEY_TYPE,
                "-N",
                "",
                "-C",
                f"{self.user}@{AppConfig.HOSTNAME}",
                "-f",
                key_path,
            ],
            dry_run=self.dry_run,
        )

    def add_authorized_key(self, authorized_keys: str, key: str) -> bool:
        """
        Append a public key to authorized_keys unless its key body is present.

        Returns:
            True if the key was added

        Raises:
            SetupError: If authorized_keys is a symbolic link
        """
        if os.path.islink(authorized_keys):
            raise SetupError(f"{authorized_keys} is a symbolic link, refusing to write")

        body = key.split()[1]
        existing: List[str] = []
        if os.path.isfile(authorized_keys):
            with open(authorized_keys) as f:
                existing = f.readlines()

        for line in existing:
            fields = line.split()
            if body in fields[1:]:
                logger.info(f"Authorized key already present in {authorized_keys}")
                return False

        if self.dry_run:
            print_message(
                f"[dry-run] would append authorized key to {authorized_keys}",
                NordColors.PURPLE,
                "»",
            )
            return True

        with open(authorized_keys, "a") as f:
            if existing and not existing[-1].endswith("\n"):
                f.write("\n")
            f.write(f"{key}\n")
        os.chmod(authorized_keys, 0o600)
        run_command(["chown", f"{self.user}:", authorized_keys])
        logger.info(f"Authorized key added to {authorized_keys}")
        return True


# ----------------------------------------------------------------
# Main Orchestration Class
# ----------------------------------------------------------------
class DebianBootstrap:
    """Runs the bootstrap steps in order."""

    def __init__(
        self, config: BootstrapConfig, assume_yes: bool = False, dry_run: bool = False
    ) -> None:
        self.config = config
        self.assume_yes = assume_yes
        self.dry_run = dry_run
        self.success = True
        self.start_time = time.time()
        self.preflight = PreflightChecker()
        self.packages = PackageManager(dry_run)
        self.ssh = SSHConfigurator(dry_run)
        self.dotfiles = DotfilesInstaller(config, dry_run)
        self.ssh_keys = (
            SSHKeyProvisioner(config, dry_run) if config.non_admin_user else None
        )

    def show_config(self) -> None:
        table = Table(
            show_header=True,
            header_style=f"bold {NordColors.FROST_1}",
            border_style=NordColors.FROST_3,
            box=ROUNDED,
            title=f"[bold {NordColors.FROST_2}]Configuration: {escape(self.config.path)}[/]",
        )
        table.add_column("Variable", style=f"bold {NordColors.FROST_2}")
        table.add_column("Value", style=NordColors.SNOW_STORM_1)
        for key, value in self.config.summary_rows():
            table.add_row(key, escape(value))
        console.print(table)

    def run_preflight(self) -> None:
        """
        Confirm the configuration and the target OS.

        Raises:
            AbortedError: If the operator declines either confirmation
        """
        print_section("Preflight")
        self.show_config()
        if not confirm("Proceed with this configuration?", self.assume_yes):
            SETUP_STATUS["preflight"] = {
                "status": "failed",
                "message": "Configuration declined.",
            }
            raise AbortedError("Configuration declined by operator")

        matches, detected = self.preflight.check_os_version()
        if not matches:
            print_warning(
                f"Detected {detected}, expected Debian {AppConfig.DEBIAN_VERSION_ID} "
                f"({AppConfig.DEBIAN_CODENAME})"
            )
            if not confirm("Continue anyway?", self.assume_yes):
                SETUP_STATUS["preflight"] = {
                    "status": "failed",
                    "message": f"Declined to run on {detected}.",
                }
                raise AbortedError(f"Declined to run on {detected}")

        self.preflight.check_commands()
        SETUP_STATUS["preflight"] = {
            "status": "success",
            "message": f"Running on {detected}.",
        }

    def run_packages(self) -> None:
        """Run the package steps; any failure propagates."""
        print_section("Packages")
        run_with_progress(
            "Updating package lists", self.packages.update, task_name="package_update"
        )
        run_with_progress(
            "Upgrading installed packages",
            self.packages.upgrade,
            task_name="system_upgrade",
        )
        run_with_progress(
            f"Installing {len(UTILITIES)} utilities",
            self.packages.install_utilities,
            task_name="utilities_install",
        )
        run_with_progress(
            "Removing unused packages",
            self.packages.autoremove,
            task_name="autoremove",
        )

    def run_optional(
        self,
        task_name: str,
        enabled_by: Optional[Any],
        variable: str,
        desc: str,
        func: Optional[Callable],
        **kwargs: Any,
    ) -> None:
        """Run an optional step, or mark it skipped when its variable is unset."""
        if not enabled_by:
            SETUP_STATUS[task_name] = {
                "status": "skipped",
                "message": f"{variable} not set.",
            }
            logger.info(f"Skipping {desc.lower()}: {variable} not set")
            return
        try:
            run_with_progress(desc, func, task_name=task_name, **kwargs)
        except (SetupError, OSError) as e:
            logger.error(f"{desc} error: {e}")
            self.success = False

    def run(self) -> int:
        """
        Run the complete bootstrap.

        Returns:
            int: Exit code (0 for success, 1 for failure)

        Raises:
            AbortedError: If the operator declines a confirmation
        """
        reset_status()
        now = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        console.print(create_header())
        print_step(f"Starting Debian bootstrap at {now}")
        if self.dry_run:
            print_warning("Dry run: commands are printed, not executed")

        self.run_preflight()

        try:
            self.run_packages()
        except (SetupError, OSError) as e:
            print_error(f"Package setup failed, aborting: {e}")
            self.success = False
            self.finish()
            return 1

        print_section("Configuration")
        self.run_optional(
            "ssh_port",
            self.config.ssh_port,
            "SSH_PORT",
            "Configuring SSH daemon port",
            self.ssh.configure_port,
            port=self.config.ssh_port,
        )
        self.run_optional(
            "dotfiles",
            self.config.dotfiles_repo,
            "DOTFILES_REPO",
            "Installing dotfiles",
            self.dotfiles.install_all,
        )

        # Ask before the spinner starts so the prompt stays readable
        replace_key = False
        if self.ssh_keys and self.ssh_keys.has_key():
            replace_key = confirm(
                f"Overwrite existing SSH key pair for {self.config.non_admin_user}?",
                self.assume_yes,
            )
        self.run_optional(
            "ssh_keys",
            self.ssh_keys,
            "NON_ADMIN_USER",
            "Provisioning SSH keys",
            self.ssh_keys.provision if self.ssh_keys else None,
            replace_existing=replace_key,
        )

        return self.finish()

    def finish(self) -> int:
        duration = time.time() - self.start_time
        minutes, seconds = divmod(duration, 60)

        status_report()

        log_files = [
            h.baseFilename for h in logger.handlers if isinstance(h, logging.FileHandler)
        ]
        console.print(
            Panel(
                Text.from_markup(
                    f"[bold {NordColors.FROST_2}]Debian Bootstrap Finished[/]\n\n"
                    f"[bold {NordColors.FROST_3}]Total Duration:[/] {int(minutes)}m {int(seconds)}s\n"
                    f"[bold {NordColors.FROST_3}]Status:[/] {'[bold green]SUCCESS' if self.success else '[bold red]COMPLETED WITH ISSUES'}[/]\n"
                    f"[bold {NordColors.FROST_3}]Log File:[/] {escape(log_files[0]) if log_files else 'none'}"
                ),
                border_style=Style(color=NordColors.FROST_1),
                box=ROUNDED,
                padding=(1, 2),
                title=f"[bold {NordColors.SNOW_STORM_2}]{AppConfig.HOSTNAME}[/]",
                title_align="center",
            )
        )
        if not self.success:
            print_warning("Some steps failed. Review the log and status report.")
        return 0 if self.success else 1


# ----------------------------------------------------------------
# Main Entry Point
# ----------------------------------------------------------------
@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "-c",
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file of KEY=VALUE assignments",
)
@click.option("-y", "--yes", "assume_yes", is_flag=True, help="Answer yes to every prompt")
@click.option("-n", "--dry-run", is_flag=True, help="Print commands instead of running them")
@click.option(
    "--log-file",
    default=AppConfig.LOG_FILE,
    show_default=True,
    type=click.Path(dir_okay=False),
    help="Log file path",
)
@click.option("--debug", is_flag=True, help="Enable debug logging on the console")
@click.version_option(AppConfig.VERSION, prog_name=AppConfig.APP_NAME)
def main(
    config_path: str, assume_yes: bool, dry_run: bool, log_file: str, debug: bool
) -> None:
    """Bootstrap a freshly installed headless Debian server."""
    install_rich_traceback(show_locals=False)
    for sig in (signal.SIGTERM, signal.SIGHUP):
        try:
            signal.signal(sig, signal_handler)
        except (AttributeError, ValueError):
            pass

    try:
        setup_logging(log_file, debug)
    except OSError as e:
        print_warning(f"Could not set up logging to {log_file}: {e}")

    print_step(f"System: {platform.system()} {platform.release()}")
    print_step(f"Hostname: {AppConfig.HOSTNAME}")

    if not dry_run:
        try:
            PreflightChecker().check_root()
        except PermissionError as e:
            print_error(str(e))
            print_message("Run with: sudo debian-bootstrap -c <config>", NordColors.YELLOW)
            sys.exit(1)

    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        print_error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        code = DebianBootstrap(config, assume_yes=assume_yes, dry_run=dry_run).run()
    except AbortedError as e:
        print_warning(f"Aborted: {e}")
        code = 1
    except KeyboardInterrupt:
        print_warning("Process interrupted by user")
        code = 130
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        console.print_exception()
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
