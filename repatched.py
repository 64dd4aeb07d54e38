#!/usr/bin/env python3
"""Helpers for hacking on the bundled core module of a Discord desktop install.

Discord ships its application code as ``discord_desktop_core/core.asar`` and
loads it through a tiny ``index.js`` next to it.  This tool unpacks that
archive so the code can be edited without rebuilding Discord itself, and it
rewires ``index.js`` to load either an external directory or a repacked
archive built from a patch.

Five subcommands are provided:

```
python repatched.py setup-workspace <directory>
python repatched.py patch-to-live <directory>
python repatched.py unpatch
python repatched.py make-patch <directory> <output.patch>
python repatched.py apply-patch <file.patch> [--workspace <directory>]
```

Every run extracts the installed ``core.asar`` into a fresh staging directory
(``<staging>/original``) which acts as the pristine baseline.  *make-patch*
diffs a workspace against that baseline with the system ``diff`` binary, and
*apply-patch* feeds the result back through the system ``patch`` binary,
either into a workspace or into a copy of the baseline that is repacked into
``core.modded.asar``.  The loader ``index.js`` is backed up once to
``index.js.orig`` before it is first rewritten; *unpatch* restores it.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Sequence

from asar import create_archive, extract_archive

__version__ = "0.1.0"

LOG = logging.getLogger("repatched")

VERSION_PATTERN = re.compile(r"\d+\.\d+\.\d+")

CORE_MODULE_DIR = "discord_desktop_core"
CORE_ARCHIVE_NAME = "core.asar"
MODDED_ARCHIVE_NAME = "core.modded.asar"
LOADER_INDEX_NAME = "index.js"
BACKUP_SUFFIX = ".orig"

STAGING_PREFIX = "discord-repatched-"
ORIGINAL_DIR = "original"
MODDED_DIR = "modded"

# Parent directory for staging dirs; ``None`` means the platform temp dir.
STAGING_PARENT = os.environ.get("REPATCHED_TMPDIR") or None

DIFF_TOOL = os.environ.get("REPATCHED_DIFF", "diff")
PATCH_TOOL = os.environ.get("REPATCHED_PATCH", "patch")

DIFF_ARGS = (
    "--exclude=node_modules",
    "--exclude=package.json",
    "-ruN",
    ORIGINAL_DIR,
    MODDED_DIR,
)

# Searched in order below the user's home when --discord is not given.
DISCORD_FLAVOURS = (
    ("release", Path(".config", "discord")),
    ("canary", Path(".config", "discordcanary")),
    ("ptb", Path(".config", "discordptb")),
)

LIVE_REDIRECT_TEMPLATE = "module.exports = require({target});"
MODDED_REDIRECT = "module.exports = require('./core.modded.asar');"


class RepatchError(RuntimeError):
    """Base class for failures reported to the user."""


class InstallationError(RepatchError):
    """Raised when no usable Discord installation can be located."""


class PreconditionError(RepatchError):
    """Raised when an action refuses to run against the current file system state."""


class ExternalToolError(RepatchError):
    """Raised when ``diff`` or ``patch`` exits unsuccessfully."""

    def __init__(self, tool: str, result: "ToolResult") -> None:
        self.tool = tool
        self.returncode = result.returncode
        self.signal = result.signal
        code = "<unknown>" if result.returncode is None else result.returncode
        signame = "<unknown>" if result.signal is None else result.signal
        super().__init__(f"{tool} failed with code {code}, signal {signame}")


# --------------------------------------------------------------------------
# Actions
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class SetupWorkspace:
    directory: Path


@dataclass(frozen=True)
class PatchToLive:
    directory: Path


@dataclass(frozen=True)
class Unpatch:
    pass


@dataclass(frozen=True)
class MakePatch:
    directory: Path
    output: Path


@dataclass(frozen=True)
class ApplyPatch:
    patch_file: Path
    workspace: Path | None = None


Action = SetupWorkspace | PatchToLive | Unpatch | MakePatch | ApplyPatch


@dataclass(frozen=True)
class Invocation:
    """A fully parsed command line: the selected action plus global options."""

    action: Action
    discord: Path | None = None
    verbose: bool = False


# --------------------------------------------------------------------------
# File system operations
# --------------------------------------------------------------------------


class FileOps:
    """The file system operations used by the worker.

    Kept as a small object so tests can substitute or wrap individual
    operations without touching the real modules.
    """

    def exists(self, path: Path) -> bool:
        return path.exists()

    def copy(self, source: Path, target: Path) -> None:
        """Stream the bytes of ``source`` into ``target``."""

        with source.open("rb") as reader, target.open("wb") as writer:
            shutil.copyfileobj(reader, writer)

    def copy_dir(self, source: Path, target: Path) -> None:
        """Recursively copy ``source`` into ``target``.

        Symbolic links are recreated with the same link text and never
        followed.  ``target`` is created when it does not exist yet.
        """

        target.mkdir(parents=True, exist_ok=True)
        for entry in sorted(source.iterdir()):
            destination = target / entry.name
            if entry.is_symlink():
                destination.symlink_to(os.readlink(entry))
            elif entry.is_dir():
                self.copy_dir(entry, destination)
            else:
                self.copy(entry, destination)

    def write_text(self, path: Path, text: str) -> None:
        path.write_text(text, encoding="utf-8")

    def write_bytes(self, path: Path, data: bytes) -> None:
        path.write_bytes(data)

    def unlink(self, path: Path) -> None:
        path.unlink()

    def remove_tree(self, path: Path) -> None:
        shutil.rmtree(path)


# --------------------------------------------------------------------------
# Installation discovery
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class Installation:
    """Paths of one versioned Discord installation."""

    root: Path
    version: str
    module_path: Path

    @property
    def core_dir(self) -> Path:
        return self.module_path / CORE_MODULE_DIR

    @property
    def core_archive(self) -> Path:
        return self.core_dir / CORE_ARCHIVE_NAME

    @property
    def loader_index(self) -> Path:
        return self.core_dir / LOADER_INDEX_NAME

    @property
    def loader_backup(self) -> Path:
        return self.core_dir / f"{LOADER_INDEX_NAME}{BACKUP_SUFFIX}"

    @property
    def modded_archive(self) -> Path:
        return self.core_dir / MODDED_ARCHIVE_NAME


def discover_discord_root(override: Path | None = None, home: Path | None = None) -> Path:
    """Return the Discord configuration directory to operate on.

    An explicit ``override`` must exist.  Without one the release, canary and
    ptb directories below ``home`` are tried in that order.
    """

    if override is not None:
        if not override.exists():
            raise InstallationError(f"{override} does not exist")
        LOG.info("Found discord at %s", override)
        return override

    home = Path.home() if home is None else home
    for flavour, relative in DISCORD_FLAVOURS:
        candidate = home / relative
        if candidate.exists():
            LOG.info("Found discord %s at %s", flavour, candidate)
            return candidate
    raise InstallationError("Failed to find discord")


def find_version_dirs(root: Path) -> List[str]:
    """Return the names of child directories that look like version numbers."""

    return sorted(
        entry.name
        for entry in root.iterdir()
        if entry.is_dir() and VERSION_PATTERN.search(entry.name)
    )


def locate_installation(root: Path, fs: FileOps | None = None) -> Installation:
    """Resolve the single versioned installation below ``root``.

    Zero or several version directories are an error; there is no attempt to
    pick the newest one.  The core archive must already exist, which is only
    the case once Discord has been started at least once.
    """

    fs = fs or FileOps()
    candidates = find_version_dirs(root)
    if len(candidates) > 1:
        listing = "\n".join(f"=> {name}" for name in candidates)
        raise InstallationError(
            "Found multiple folders which could be the discord installation:\n" + listing
        )
    if not candidates:
        raise InstallationError("Found no folder which could be the current discord installation")

    version = candidates[0]
    installation = Installation(
        root=root,
        version=version,
        module_path=root.resolve() / version / "modules",
    )
    LOG.info(
        "Found current discord installation version %s at %s",
        version,
        installation.module_path,
    )

    if not fs.exists(installation.core_archive):
        raise InstallationError(
            f"Discord core module {installation.core_archive} does not exist, "
            "try running discord once"
        )
    return installation


# --------------------------------------------------------------------------
# Staging
# --------------------------------------------------------------------------


@contextlib.contextmanager
def staging_directory(archive: Path, fs: FileOps | None = None) -> Iterator[Path]:
    """Extract ``archive`` into a fresh staging dir and remove it afterwards.

    The extracted baseline lives in ``<staging>/original``.  The directory is
    removed however the block exits; removal errors are not suppressed.
    """

    fs = fs or FileOps()
    staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=STAGING_PARENT))
    LOG.info("Temporary dir created at %s", staging)
    try:
        extract_archive(archive, staging / ORIGINAL_DIR)
        LOG.info("Discord extracted successfully")
        yield staging
    finally:
        LOG.debug("Removing temporary dir %s", staging)
        fs.remove_tree(staging)


# --------------------------------------------------------------------------
# External tools
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolResult:
    """Outcome of an external tool run.

    ``returncode`` is ``None`` when the process was killed by a signal, in
    which case ``signal`` carries the signal name.
    """

    returncode: int | None
    signal: str | None
    stdout: bytes = b""


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return str(number)


def _relay_stream(
    stream: BinaryIO,
    label: str,
    level: int,
    sink: List[bytes] | None,
) -> None:
    """Log every line of ``stream`` as it arrives, optionally keeping the bytes."""

    prefix = "E" if level >= logging.ERROR else "I"
    try:
        for raw in iter(stream.readline, b""):
            if sink is not None:
                sink.append(raw)
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            LOG.log(level, "[%s/%s] %s", prefix, label, line)
    finally:
        stream.close()


def run_tool(
    tool: str,
    args: Sequence[str],
    cwd: Path,
    *,
    capture: bool = False,
) -> ToolResult:
    """Run ``tool`` with ``args`` inside ``cwd`` and wait for it to exit.

    Standard output and standard error are relayed to the log line by line
    while the process runs.  When ``capture`` is set the raw standard output
    is also returned.  Spawn failures (missing executable, ...) propagate
    unchanged.
    """

    label = Path(tool).name
    command = [tool, *args]
    LOG.debug("Running %s in %s", " ".join(command), cwd)
    process = subprocess.Popen(
        command,
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )

    captured: List[bytes] | None = [] if capture else None
    readers = [
        threading.Thread(
            target=_relay_stream,
            args=(process.stdout, label, logging.INFO, captured),
            daemon=True,
        ),
        threading.Thread(
            target=_relay_stream,
            args=(process.stderr, label, logging.ERROR, None),
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join()
    returncode = process.wait()

    stdout = b"".join(captured) if captured is not None else b""
    if returncode < 0:
        return ToolResult(returncode=None, signal=_signal_name(-returncode), stdout=stdout)
    return ToolResult(returncode=returncode, signal=None, stdout=stdout)


def run_diff(staging: Path) -> bytes | None:
    """Diff ``original`` against ``modded`` inside ``staging``.

    Returns the unified diff, or ``None`` when both trees are identical.
    """

    result = run_tool(DIFF_TOOL, DIFF_ARGS, staging, capture=True)
    if result.returncode == 0:
        return None
    if result.returncode == 1:
        return result.stdout
    raise ExternalToolError("diff", result)


def run_patch(patch_file: Path, directory: Path) -> None:
    """Apply ``patch_file`` to ``directory``; only exit code 0 counts as success."""

    LOG.info("Applying patch to %s", directory)
    args = (
        "-p1",
        "-E",
        "--read-only=fail",
        "-r",
        os.devnull,
        "-i",
        str(patch_file.resolve()),
    )
    result = run_tool(PATCH_TOOL, args, directory)
    if result.returncode != 0:
        raise ExternalToolError("patch", result)


# --------------------------------------------------------------------------
# Worker
# --------------------------------------------------------------------------


class Worker:
    """Runs one action against a Discord installation."""

    def __init__(self, discord_root: Path, fs: FileOps | None = None) -> None:
        self.discord_root = discord_root
        self.fs = fs or FileOps()

    def run(self, action: Action) -> None:
        installation = locate_installation(self.discord_root, self.fs)

        with staging_directory(installation.core_archive, self.fs) as staging:
            self._dispatch(action, installation, staging)

    def _dispatch(self, action: Action, installation: Installation, staging: Path) -> None:
        if isinstance(action, SetupWorkspace):
            self.setup_workspace(staging, action.directory)
        elif isinstance(action, PatchToLive):
            self.patch_to_live(installation, action.directory)
        elif isinstance(action, Unpatch):
            self.unpatch(installation)
        elif isinstance(action, MakePatch):
            self.make_patch(staging, action.directory, action.output)
        elif isinstance(action, ApplyPatch):
            self.apply_patch(installation, staging, action.patch_file, action.workspace)
        else:  # pragma: no cover - every action variant is handled above
            raise TypeError(f"BUG: unsupported action {action!r}")

    # ------------------------------------------------------------- helpers --
    def _require_loader_index(self, installation: Installation) -> Path:
        loader = installation.loader_index
        if not self.fs.exists(loader):
            raise PreconditionError("Failed to find discord desktop core index.js")
        return loader

    def _backup_loader_index(self, installation: Installation) -> Path:
        """Copy ``index.js`` to ``index.js.orig`` unless a backup already exists."""

        loader = self._require_loader_index(installation)
        backup = installation.loader_backup
        if self.fs.exists(backup):
            LOG.info("Discord install already patched, skipping backup")
        else:
            self.fs.copy(loader, backup)
        return loader

    # ------------------------------------------------------------- actions --
    def setup_workspace(self, staging: Path, target: Path) -> None:
        if self.fs.exists(target):
            raise PreconditionError(f"Target dir {target} does exist already")
        self.fs.copy_dir(staging / ORIGINAL_DIR, target)
        LOG.info("Workspace set up at %s", target)

    def patch_to_live(self, installation: Installation, target: Path) -> None:
        app_index = target / "app" / "index.js"
        if not self.fs.exists(app_index):
            raise PreconditionError(
                f"{target} does not look like a discord install, missing app/index.js"
            )

        loader = self._backup_loader_index(installation)
        # Path is embedded as a JSON-quoted string literal.
        redirect = LIVE_REDIRECT_TEMPLATE.format(target=json.dumps(str(app_index.resolve())))
        self.fs.write_text(loader, redirect)
        LOG.info(
            "Discord installation at %s should now start from %s",
            self.discord_root,
            app_index,
        )

    def unpatch(self, installation: Installation) -> None:
        loader = self._require_loader_index(installation)
        backup = installation.loader_backup
        if self.fs.exists(backup):
            self.fs.unlink(loader)
            self.fs.copy(backup, loader)

        modded_archive = installation.modded_archive
        if self.fs.exists(modded_archive):
            self.fs.unlink(modded_archive)

        LOG.info("All patches removed!")

    def make_patch(self, staging: Path, directory: Path, output: Path) -> Path | None:
        """Write the diff between the baseline and ``directory`` to ``output``.

        Returns ``None`` without creating ``output`` when there is no
        difference.
        """

        if self.fs.exists(output):
            raise PreconditionError(f"{output} exists already")

        self.fs.copy_dir(directory, staging / MODDED_DIR)
        diff = run_diff(staging)
        if diff is None:
            LOG.info("No diff detected")
            return None

        self.fs.write_bytes(output, diff)
        LOG.info("Patch written to %s", output)
        return output

    def apply_patch(
        self,
        installation: Installation,
        staging: Path,
        patch_file: Path,
        workspace: Path | None = None,
    ) -> None:
        if workspace is not None:
            run_patch(patch_file, workspace.resolve())
            return

        # The loader must exist before anything is written into the install.
        self._require_loader_index(installation)

        modded = staging / MODDED_DIR
        modded_archive = installation.modded_archive

        self.fs.copy_dir(staging / ORIGINAL_DIR, modded)
        run_patch(patch_file, modded)
        LOG.info("Repacking to asar...")
        create_archive(modded, modded_archive)
        LOG.info("Done!")

        loader = self._backup_loader_index(installation)
        self.fs.write_text(loader, MODDED_REDIRECT)
        LOG.info(
            "Discord installation at %s should now start from the modded core!",
            self.discord_root,
        )


# --------------------------------------------------------------------------
# Command line
# --------------------------------------------------------------------------


def _setup_logger(verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="discord-repatched",
        description="Hack on the bundled core module of a Discord installation",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-d", "--discord", type=Path, metavar="DIRECTORY", help="path to discord installation"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug output")
    subparsers = parser.add_subparsers(dest="command")

    setup_parser = subparsers.add_parser(
        "setup-workspace",
        aliases=["sw"],
        help="set up a workspace for hacking on discord at <directory>",
    )
    setup_parser.add_argument("directory", type=Path, help="directory to create")
    setup_parser.set_defaults(build_action=lambda args: SetupWorkspace(args.directory))

    live_parser = subparsers.add_parser(
        "patch-to-live",
        aliases=["ptl"],
        help="patch a discord install to run from <directory>",
    )
    live_parser.add_argument("directory", type=Path, help="workspace containing app/index.js")
    live_parser.set_defaults(build_action=lambda args: PatchToLive(args.directory))

    unpatch_parser = subparsers.add_parser(
        "unpatch",
        aliases=["up"],
        help="remove all applied patches from the selected discord installation",
    )
    unpatch_parser.set_defaults(build_action=lambda args: Unpatch())

    make_parser = subparsers.add_parser(
        "make-patch",
        aliases=["mp"],
        help="create a diff of a discord installation and the workspace <directory>",
    )
    make_parser.add_argument("directory", type=Path, help="modified workspace")
    make_parser.add_argument("output", type=Path, help="patch file to write")
    make_parser.set_defaults(build_action=lambda args: MakePatch(args.directory, args.output))

    apply_parser = subparsers.add_parser(
        "apply-patch",
        aliases=["ap"],
        help="apply a patch to discord or to a workspace",
    )
    apply_parser.add_argument("file", type=Path, help="patch file created by make-patch")
    apply_parser.add_argument(
        "-w",
        "--workspace",
        type=Path,
        help="apply the patch to the workspace at <workspace> instead of discord",
    )
    apply_parser.set_defaults(build_action=lambda args: ApplyPatch(args.file, args.workspace))

    return parser


def parse_invocation(argv: Iterable[str] | None = None) -> Invocation:
    """Parse ``argv`` into an :class:`Invocation` without running anything."""

    parser = build_cli()
    args = parser.parse_args(argv)
    build_action = getattr(args, "build_action", None)
    if build_action is None:
        parser.print_usage(sys.stderr)
        raise SystemExit("No action selected, use --help to get help")
    return Invocation(action=build_action(args), discord=args.discord, verbose=args.verbose)


def main(argv: Iterable[str] | None = None) -> None:
    invocation = parse_invocation(argv)
    _setup_logger(invocation.verbose)

    try:
        discord_root = discover_discord_root(invocation.discord)
        Worker(discord_root).run(invocation.action)
    except RepatchError as exc:
        LOG.error("%s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
