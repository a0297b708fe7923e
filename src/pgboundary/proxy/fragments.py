"""Per-connection pgbouncer configuration fragments.

Each active connection lives in its own small INI file::

    ; boundary_pid=4242
    [databases]
    app1 = host=127.0.0.1 port=53412 dbname=app1 user=u_abc password=secret

and is wired into pgbouncer's main config with a single
``%include /path/to/fragment.ini`` line. Adding a connection only ever
appends to the main config; removing one rewrites it to a sibling file and
renames it into place so pgbouncer never reads a half-written file.
"""

from __future__ import annotations

import configparser
import os
import re
import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..common.exceptions import FragmentError
from ..common.logging import get_logger
from ..tunnel.models import TunnelHandle

INCLUDE_DIRECTIVE = "%include"
PID_TAG = "; boundary_pid="
DATABASES_SECTION = "databases"
STRIP_ATTEMPTS = 3

_PARAMETER = re.compile(r"(\w+)\s*=\s*('(?:[^']|'')*'|\S+)")
_NEEDS_QUOTING = re.compile(r"[\s']")
_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9_.-]")


class ConnectionFragment(BaseModel):
    """One database entry found in an included fragment."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Database section key")
    tunnel_pid: int = Field(default=0, ge=0, description="0 when untracked")
    path: Path = Field(description="Fragment file the entry came from")
    parameters: dict[str, str] = Field(default_factory=dict, repr=False)

    @property
    def tracked(self) -> bool:
        """Whether the fragment is owned by a tunnel we started."""
        return self.tunnel_pid > 0


def quote_value(value: str) -> str:
    """Quote a connection-string value the way pgbouncer parses it.

    Inside single quotes pgbouncer reads ``''`` as one quote; backslashes
    are literal.
    """
    if value and not _NEEDS_QUOTING.search(value):
        return value
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _unquote_value(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    return value


def parse_connection_string(value: str) -> dict[str, str]:
    """Split ``host=... port=...`` into a dict."""
    return {key: _unquote_value(val) for key, val in _PARAMETER.findall(value)}


def render_fragment(target: str, handle: TunnelHandle, database: str) -> str:
    """Render the fragment text for ``target`` served by ``handle``."""
    parameters = [
        ("host", handle.host),
        ("port", str(handle.port)),
        ("dbname", database),
        ("user", handle.username),
        ("password", handle.password),
    ]
    connection = " ".join(f"{key}={quote_value(val)}" for key, val in parameters)
    return f"{PID_TAG}{handle.pid}\n[{DATABASES_SECTION}]\n{target} = {connection}\n"


def parse_pid_tag(text: str) -> int:
    """Return the tunnel pid from the tag comment, or 0 if absent or garbled."""
    for line in text.splitlines():
        if line.startswith(PID_TAG):
            try:
                return max(int(line[len(PID_TAG):].strip()), 0)
            except ValueError:
                continue
    return 0


def read_fragment(path: Path) -> list[ConnectionFragment]:
    """Parse every database entry of a fragment file.

    Raises:
        OSError: If the file cannot be read
        configparser.Error: If the file is not valid INI
    """
    text = path.read_text(encoding="utf-8")
    tunnel_pid = parse_pid_tag(text)

    parser = configparser.ConfigParser(
        delimiters=("=",),
        comment_prefixes=(";", "#"),
        inline_comment_prefixes=None,
        interpolation=None,
        strict=False,
    )
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    parser.read_string(text, source=str(path))

    if not parser.has_section(DATABASES_SECTION):
        return []

    return [
        ConnectionFragment(
            name=name,
            tunnel_pid=tunnel_pid,
            path=path,
            parameters=parse_connection_string(value or ""),
        )
        for name, value in parser.items(DATABASES_SECTION)
    ]


class FragmentStore:
    """Adds, lists and removes connection fragments of pgbouncer's config."""

    def __init__(
        self,
        conf_file: Path,
        fragment_dir: Path,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        """Initialize the store.

        Args:
            conf_file: pgbouncer's main configuration file
            fragment_dir: Directory generated fragments are written to
            logger: Logger to report changes on
        """
        self.conf_file = Path(conf_file)
        self.fragment_dir = Path(fragment_dir)
        self.logger = logger or get_logger(__name__)

    def _read_conf_lines(self) -> list[str]:
        try:
            return self.conf_file.read_text(encoding="utf-8").splitlines(keepends=True)
        except OSError as e:
            raise FragmentError(f"failed to read config file {self.conf_file}: {e}") from e

    def _include_path(self, line: str) -> Path | None:
        stripped = line.strip()
        if not stripped.startswith(INCLUDE_DIRECTIVE):
            return None
        target = stripped[len(INCLUDE_DIRECTIVE):].strip()
        if not target:
            return None
        path = Path(target)
        if not path.is_absolute():
            path = self.conf_file.parent / path
        return path

    def include_paths(self) -> list[Path]:
        """Every file the main config includes, in file order."""
        paths = []
        for line in self._read_conf_lines():
            path = self._include_path(line)
            if path is not None:
                paths.append(path)
        return paths

    def is_generated(self, path: Path) -> bool:
        """Whether ``path`` is a fragment this store wrote."""
        try:
            if path.resolve().parent == self.fragment_dir.resolve():
                return True
            with path.open(encoding="utf-8") as f:
                return f.readline().startswith(PID_TAG)
        except (OSError, UnicodeDecodeError):
            return False

    def list(self) -> list[ConnectionFragment]:
        """Parse every included fragment.

        A fragment that cannot be read or parsed is logged and skipped so a
        single corrupt file does not hide the others.

        Raises:
            FragmentError: If the main config file itself cannot be read
        """
        fragments: list[ConnectionFragment] = []
        for path in self.include_paths():
            try:
                fragments.extend(read_fragment(path))
            except (OSError, UnicodeDecodeError, configparser.Error) as e:
                self.logger.warning(
                    "Skipping unreadable include file", path=str(path), error=str(e)
                )
        return fragments

    def find(self, target: str) -> ConnectionFragment | None:
        """Return the fragment serving ``target``, if any."""
        for fragment in self.list():
            if fragment.name == target:
                return fragment
        return None

    def write(self, target: str, handle: TunnelHandle, database: str) -> Path:
        """Persist a fragment for ``target`` and include it in the main config.

        Returns:
            Path of the written fragment

        Raises:
            FragmentError: If ``target`` already has a fragment or writing fails
        """
        if self.find(target) is not None:
            raise FragmentError(f"a fragment for {target!r} already exists")

        content = render_fragment(target, handle, database)
        try:
            self.fragment_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            # mkstemp creates the file 0600; it holds a password
            fd, temp_path = tempfile.mkstemp(
                prefix=f"{_UNSAFE_FILENAME.sub('_', target)}-",
                suffix=".ini",
                dir=self.fragment_dir,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise FragmentError(f"failed to write fragment for {target!r}: {e}") from e

        path = Path(temp_path)
        try:
            self._append_include(path)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise FragmentError(f"failed to update config file {self.conf_file}: {e}") from e

        self.logger.info(
            "Fragment written", target=target, path=str(path), tunnel_pid=handle.pid
        )
        return path

    def _append_include(self, path: Path) -> None:
        with self.conf_file.open("rb") as f:
            f.seek(0, os.SEEK_END)
            needs_newline = False
            if f.tell() > 0:
                f.seek(-1, os.SEEK_END)
                needs_newline = f.read(1) != b"\n"

        # Append only; concurrent readers see either the old or the new file
        with self.conf_file.open("a", encoding="utf-8") as f:
            if needs_newline:
                f.write("\n")
            f.write(f"{INCLUDE_DIRECTIVE} {path}\n")

    def _strip_includes(self, should_strip: Callable[[Path], bool]) -> list[Path]:
        """Rewrite the main config without the matching include lines.

        The file is only touched when something is actually stripped. The
        config is re-read right before the rename; if another invocation
        appended to it meanwhile, the rewrite is redone from the new content.

        Raises:
            FragmentError: If the file cannot be rewritten or keeps changing
        """
        for _ in range(STRIP_ATTEMPTS):
            lines = self._read_conf_lines()
            kept: list[str] = []
            stripped: list[Path] = []
            for line in lines:
                path = self._include_path(line)
                if path is not None and should_strip(path):
                    stripped.append(path)
                    continue
                kept.append(line)

            if not stripped:
                return stripped

            if self._replace_conf(kept, expected=lines):
                return stripped

            self.logger.info("Config changed during rewrite, retrying", conffile=str(self.conf_file))

        raise FragmentError(
            f"config file {self.conf_file} kept changing while being rewritten"
        )

    def _replace_conf(self, kept: list[str], expected: list[str]) -> bool:
        """Atomically replace the main config with ``kept``.

        Returns:
            False, without touching the file, if it no longer holds ``expected``
        """
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.conf_file.parent,
                prefix=f".{self.conf_file.name}.",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.writelines(kept)
                tmp.flush()
                os.fsync(tmp.fileno())
            shutil.copymode(self.conf_file, tmp_name)
            if self._read_conf_lines() != expected:
                Path(tmp_name).unlink(missing_ok=True)
                return False
            os.replace(tmp_name, self.conf_file)
        except FragmentError:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise
        except OSError as e:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise FragmentError(f"failed to rewrite config file {self.conf_file}: {e}") from e
        return True

    def _delete_fragment_file(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning("Failed to delete fragment file", path=str(path), error=str(e))

    def remove(self, target: str) -> ConnectionFragment | None:
        """Remove the fragment serving ``target``.

        The include line is stripped first and the file deleted afterwards, so
        a crash in between leaves an unreferenced file rather than a dangling
        include. Removing a target without a fragment is a no-op.

        Returns:
            The removed fragment, or None if there was nothing to remove
        """
        fragment = self.find(target)
        if fragment is None:
            self.logger.debug("No fragment to remove", target=target)
            return None

        self._strip_includes(lambda path: path == fragment.path)
        if self.is_generated(fragment.path):
            self._delete_fragment_file(fragment.path)

        self.logger.info("Fragment removed", target=target, path=str(fragment.path))
        return fragment

    def clear(self) -> list[Path]:
        """Strip every include pointing at a generated fragment.

        Hand-authored content, including includes of files this store did not
        write, is left untouched.

        Returns:
            Paths of the fragments that were unlinked from the config
        """
        generated = {path for path in self.include_paths() if self.is_generated(path)}
        stripped = self._strip_includes(lambda path: path in generated)
        for path in stripped:
            self._delete_fragment_file(path)

        self.logger.info("Cleared generated fragments", count=len(stripped))
        return stripped
