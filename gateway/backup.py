"""
Backup synchronizer - mirrors durable gateway state to/from the R2 mount.

The backup root holds three independently restorable subtrees plus one
sync marker shared by all of them:

    /data/moltbot/.last-sync        ISO-8601 timestamp of the last backup
    /data/moltbot/clawdbot/         config directory (legacy: flat in root)
    /data/moltbot/skills/           workspace skills
    /data/moltbot/openclaw-home/    OAuth and other openclaw home state

Restores are merge copies: remote files overwrite local ones, local-only
files are never deleted.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import moltbot_constants as C
from gateway.settings import SandboxSettings

logger = logging.getLogger(__name__)

EPOCH_ZERO = 0.0

# Files in the config directory that must never be mirrored
_LOCAL_ONLY_PATTERNS = ("*.lock", C.SYNC_MARKER_NAME)


# ---------------------------------------------------------------------------
# Sync markers
# ---------------------------------------------------------------------------


def _marker_epoch(value: Optional[str]) -> Optional[float]:
    """Epoch seconds of a marker, or None when it is missing or unparsable."""
    text = (value or "").strip()
    if not text:
        return None
    try:
        if text.startswith("@"):
            return float(text[1:])
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def parse_marker(value: Optional[str]) -> float:
    """Parse a marker timestamp to epoch seconds.

    Accepts ISO-8601 (``Z`` suffix allowed, naive values are UTC) and
    ``@<epoch>``. Anything missing or unparsable is epoch zero.
    """
    epoch = _marker_epoch(value)
    return EPOCH_ZERO if epoch is None else epoch


def read_marker(path: Path) -> Optional[str]:
    """Return the marker text, or None when the marker does not exist.

    An unreadable marker comes back as "", which never parses.
    """
    try:
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read sync marker %s: %s", path, e)
        return ""


def should_restore(remote_marker: Optional[str], local_marker: Optional[str]) -> bool:
    """Decide whether the remote copy is newer than the local one.

    Restore only when a remote marker exists and parses, and either there is
    no local marker or the remote instant is strictly later. Ties and a
    corrupt remote marker keep local state.
    """
    if remote_marker is None:
        logger.info("No R2 sync timestamp found, skipping restore")
        return False
    remote_epoch = _marker_epoch(remote_marker)
    if remote_epoch is None:
        logger.warning("R2 sync timestamp %r is not parsable, skipping restore", remote_marker)
        return False
    if local_marker is None:
        logger.info("No local sync timestamp, will restore from R2")
        return True

    logger.info("R2 last sync: %s", remote_marker)
    logger.info("Local last sync: %s", local_marker)
    if remote_epoch > parse_marker(local_marker):
        logger.info("R2 backup is newer, will restore")
        return True
    logger.info("Local data is newer or same, skipping restore")
    return False


def utc_marker(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Copy helpers
# ---------------------------------------------------------------------------


def merge_copy(src: Path, dst: Path, ignore: Optional[Callable] = None) -> None:
    """Recursively copy src into dst, overwriting files and keeping local-only ones."""
    dst.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dst, symlinks=True, ignore=ignore, dirs_exist_ok=True)


def _ignore_top_level(root: Path, *names: str) -> Callable:
    """copytree ignore callable that skips names only directly under root."""
    skipped = set(names)

    def _ignore(directory, entries):
        if Path(directory) != root:
            return set()
        return {e for e in entries if e in skipped}

    return _ignore


def _is_file(path: Path) -> bool:
    try:
        return path.is_file()
    except OSError as e:
        logger.warning("Could not check %s: %s", path, e)
        return False


def _is_dir(path: Path) -> bool:
    try:
        return path.is_dir()
    except OSError as e:
        logger.warning("Could not check %s: %s", path, e)
        return False


def _has_entries(path: Path) -> bool:
    try:
        return path.is_dir() and any(path.iterdir())
    except OSError as e:
        logger.warning("Could not list %s: %s", path, e)
        return False


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass
class RestoreTarget:
    name: str
    source: Path
    destination: Path
    updates_marker: bool = False
    ignore: Optional[Callable] = None


@dataclass
class RestoreReport:
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    marker_updated: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class BackupReport:
    copied: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    marker: Optional[str] = None
    mounted: bool = True

    @property
    def ok(self) -> bool:
        return self.mounted and not self.failed


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------


class BackupSynchronizer:
    """
    Restores newer backup state into the container and mirrors local
    state back out.

    Usage:
        sync = BackupSynchronizer(settings)
        report = sync.restore()   # cold boot, before config reconciliation
        sync.backup()             # periodic, from a cron trigger
    """

    def __init__(self, settings: SandboxSettings):
        self.settings = settings

    def plan(self) -> List[RestoreTarget]:
        """Return the restore candidates that exist in the backup, in order."""
        s = self.settings
        root = s.backup_dir
        targets: List[RestoreTarget] = []

        primary = root / C.BACKUP_CONFIG_SUBDIR
        if _is_file(primary / C.CONFIG_FILENAME):
            targets.append(RestoreTarget("config", primary, s.config_dir, updates_marker=True))
        elif _is_file(root / C.CONFIG_FILENAME):
            # Legacy flat layout: the root itself is the config directory
            targets.append(RestoreTarget(
                "config (legacy)", root, s.config_dir, updates_marker=True,
                ignore=_ignore_top_level(
                    root, C.BACKUP_CONFIG_SUBDIR, C.BACKUP_SKILLS_SUBDIR, C.BACKUP_HOME_SUBDIR,
                ),
            ))
        elif _is_dir(root):
            logger.info("R2 mounted at %s but no backup data found yet", root)
        else:
            logger.info("R2 not mounted, starting fresh")

        skills = root / C.BACKUP_SKILLS_SUBDIR
        if _has_entries(skills):
            targets.append(RestoreTarget("skills", skills, s.skills_dir))

        home = root / C.BACKUP_HOME_SUBDIR
        if _has_entries(home):
            targets.append(RestoreTarget("openclaw-home", home, s.openclaw_home_dir))

        return targets

    def restore(self) -> RestoreReport:
        """Restore every applicable subtree whose backup is newer than local state."""
        report = RestoreReport()
        targets = self.plan()
        if not targets:
            return report

        # One staleness clock for all subtrees, read before anything is copied
        remote = read_marker(self.settings.remote_marker)
        local = read_marker(self.settings.local_marker)

        for target in targets:
            if not should_restore(remote, local):
                report.skipped.append(target.name)
                continue
            logger.info("Restoring %s from %s...", target.name, target.source)
            try:
                merge_copy(target.source, target.destination, ignore=target.ignore)
            except (OSError, shutil.Error) as e:
                logger.warning("Failed to restore %s from %s: %s", target.name, target.source, e)
                report.failed[target.name] = str(e)
                continue
            report.restored.append(target.name)
            logger.info("Restored %s from R2 backup", target.name)

            if target.updates_marker:
                try:
                    self.settings.local_marker.parent.mkdir(parents=True, exist_ok=True)
                    self.settings.local_marker.write_text(remote, encoding="utf-8")
                    report.marker_updated = True
                except OSError as e:
                    logger.warning("Could not update local sync marker: %s", e)

        return report

    def backup(self, now: Optional[datetime] = None) -> BackupReport:
        """Mirror local state into the backup root and stamp both markers."""
        s = self.settings
        report = BackupReport()
        if not _is_dir(s.backup_dir):
            logger.warning("R2 not mounted at %s, skipping backup", s.backup_dir)
            report.mounted = False
            return report

        sources = [
            ("config", s.config_dir, s.backup_dir / C.BACKUP_CONFIG_SUBDIR,
             shutil.ignore_patterns(*_LOCAL_ONLY_PATTERNS)),
            ("skills", s.skills_dir, s.backup_dir / C.BACKUP_SKILLS_SUBDIR, None),
            ("openclaw-home", s.openclaw_home_dir, s.backup_dir / C.BACKUP_HOME_SUBDIR, None),
        ]
        for name, src, dst, ignore in sources:
            if not _has_entries(src):
                logger.debug("Nothing to back up for %s at %s", name, src)
                continue
            try:
                merge_copy(src, dst, ignore=ignore)
            except (OSError, shutil.Error) as e:
                logger.warning("Failed to back up %s to %s: %s", name, dst, e)
                report.failed[name] = str(e)
                continue
            report.copied.append(name)

        if report.failed:
            logger.warning("Backup incomplete, leaving sync markers unchanged")
            return report

        marker = utc_marker(now)
        try:
            s.remote_marker.write_text(marker, encoding="utf-8")
            s.local_marker.parent.mkdir(parents=True, exist_ok=True)
            s.local_marker.write_text(marker, encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write sync marker: %s", e)
            report.failed["marker"] = str(e)
            return report
        report.marker = marker
        logger.info("Backed up %s to %s at %s", ", ".join(report.copied) or "nothing", s.backup_dir, marker)
        return report
