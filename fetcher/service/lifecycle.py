"""
Artifact lifecycle management.

Names every file a request touches, removes temporary files on every exit
path, and exposes the finished artifact at its public path only once it is
complete.
"""

import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from nanoid import generate

from fetcher.service.constants import (
    MAX_FILENAME_BYTES,
    TEMP_SUFFIXES,
    UNSAFE_FILENAME_CHARS,
    WORKING_SUFFIX,
)
from fetcher.service.errors import PartialCleanupFailure
from fetcher.service.models import Artifact

_UNSAFE_RE = re.compile('[' + re.escape(UNSAFE_FILENAME_CHARS) + ']')
_CONTROL_RE = re.compile(r'[\x00-\x1f\x7f]')
_WHITESPACE_RE = re.compile(r'\s+')


def truncate_utf8(text, max_bytes):
    """Shorten text to at most max_bytes of UTF-8 without splitting a character"""
    encoded = text.encode('utf-8')
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode('utf-8', errors='ignore')


def sanitize_filename(title):
    """
    Turn a title into something safe to use as a file name.

    Args:
        title: The source title

    Returns:
        str: The sanitized name, never empty

    Example:
        >>> sanitize_filename('AC/DC: Live at "River Plate"')
        'AC_DC__Live_at__River_Plate_'
    """
    name = _CONTROL_RE.sub('', title or '')
    name = _UNSAFE_RE.sub('_', name)
    name = _WHITESPACE_RE.sub('_', name.strip())
    name = truncate_utf8(name, MAX_FILENAME_BYTES)
    # Leading dots would hide the file
    name = name.lstrip('.')
    return name or 'untitled'


def format_file_size(size_bytes):
    """
    Format a byte count for people.

    Example:
        >>> format_file_size(1536)
        '1.5 KB'
    """
    if not size_bytes:
        return '0 Bytes'
    units = ['Bytes', 'KB', 'MB', 'GB', 'TB']
    value = float(size_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(units) - 1:
        value /= 1024
        exponent += 1
    value = round(value, 2)
    if value == int(value):
        value = int(value)
    return f'{value} {units[exponent]}'


def is_temporary_name(name):
    """True for file names written mid-request (temp streams and working files)"""
    if name.endswith(WORKING_SUFFIX):
        return True
    stem = name.rsplit('.', 1)[0]
    return any(stem.endswith(suffix) for suffix in TEMP_SUFFIXES.values())


class ArtifactWorkspace:
    """
    Per-request view of the downloads directory.

    Paths are derived from the sanitized title (plus an optional request
    token) and a fixed per-role suffix:

        <name>_temp_video.<ext>   video-only stream of a dual-stream plan
        <name>_temp_audio.<ext>   audio-only stream
        <name>.<ext>.part         output being written
        <name>.<ext>              finished artifact
    """

    def __init__(self, directory, title, request_token=None, logger=None):
        self.directory = Path(directory)
        self.title = title
        self.request_token = request_token
        self.logger = logger
        self.cleanup_failures: List[Path] = []
        self._tracked: List[Path] = []

        base = sanitize_filename(title)
        if request_token:
            base = f'{base}-{request_token}'
        self.base_name = base

    def log(self, message):
        if self.logger:
            self.logger(message)

    def prepare(self):
        self.directory.mkdir(parents=True, exist_ok=True)

    def final_path(self, container):
        return self.directory / f'{self.base_name}.{container}'

    def working_path(self, container):
        return self.track(self.directory / f'{self.base_name}.{container}{WORKING_SUFFIX}')

    def temp_path(self, role, container):
        suffix = TEMP_SUFFIXES[role]
        return self.track(self.directory / f'{self.base_name}{suffix}.{container}')

    def track(self, path):
        """Remember a path so cleanup() removes it"""
        path = Path(path)
        if path not in self._tracked:
            self._tracked.append(path)
        return path

    @property
    def tracked_paths(self):
        return list(self._tracked)

    def discard(self, path):
        """
        Remove one temporary file.

        Returns:
            bool: False if the file existed but could not be removed
        """
        path = Path(path)
        try:
            path.unlink()
            self.log(f'Removed temporary file: {path.name}')
        except FileNotFoundError:
            pass
        except OSError as e:
            failure = PartialCleanupFailure(f'Could not remove {path.name}', detail=str(e))
            self.log(f'{failure.message}: {failure.detail}')
            self.cleanup_failures.append(path)
            return False

        if path in self._tracked:
            self._tracked.remove(path)
        return True

    def cleanup(self):
        """
        Remove every tracked temporary file.

        Never raises; failures are logged and returned.

        Returns:
            list: Paths that could not be removed
        """
        failed = []
        for path in list(self._tracked):
            if not self.discard(path):
                failed.append(path)
        return failed

    def finalize(self, working_path, container, quality_label):
        """
        Expose a completed working file at the public artifact path.

        The rename is atomic, so the public path either holds the previous
        file or the complete new one.

        Returns:
            Artifact
        """
        working_path = Path(working_path)
        final_path = self.final_path(container)
        os.replace(working_path, final_path)
        if working_path in self._tracked:
            self._tracked.remove(working_path)

        size_bytes = final_path.stat().st_size
        self.log(f'Finalized: {final_path.name} ({format_file_size(size_bytes)})')
        return Artifact(path=final_path, size_bytes=size_bytes, quality_label=quality_label)


def find_orphans(directory):
    """
    List temporary files left behind by requests that never finished.

    Args:
        directory: Downloads directory

    Returns:
        list of Path, sorted by name
    """
    directory = Path(directory)
    if not directory.exists():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and is_temporary_name(p.name))


@dataclass
class SweepReport:
    """Outcome of one sweep over the downloads directory"""

    removed: List[Path] = field(default_factory=list)
    failed: List[Path] = field(default_factory=list)
    bytes_freed: int = 0
    dry_run: bool = False


def find_expired(directory, max_age_seconds, now=None):
    """
    List files older than max_age_seconds, temporary or final alike.

    Returns:
        list of (Path, age_seconds, size_bytes)
    """
    directory = Path(directory)
    if not directory.exists():
        return []

    now = time.time() if now is None else now
    expired = []
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        stat = path.stat()
        age = now - stat.st_mtime
        if age > max_age_seconds:
            expired.append((path, age, stat.st_size))
    return expired


def sweep_directory(directory, max_age_seconds, dry_run=False, now=None,
                    logger=None) -> SweepReport:
    """
    Remove every file in the downloads directory older than the retention
    window, regardless of whether its request completed.

    Args:
        directory: Downloads directory
        max_age_seconds: Retention window
        dry_run: Report without deleting
        now: Current epoch time (defaults to time.time())
        logger: Optional callable(str) for logging

    Returns:
        SweepReport
    """
    def log(message):
        if logger:
            logger(message)

    report = SweepReport(dry_run=dry_run)
    for path, age, size in find_expired(directory, max_age_seconds, now=now):
        if dry_run:
            report.removed.append(path)
            report.bytes_freed += size
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            log(f'Failed to remove {path.name}: {e}')
            report.failed.append(path)
            continue
        report.removed.append(path)
        report.bytes_freed += size
        log(f'Cleaned up old file: {path.name} (age {int(age)}s)')

    return report


def request_token_for(namespace_requests: bool) -> Optional[str]:
    """Short random token used to keep identically titled requests apart"""
    if not namespace_requests:
        return None

    alphabet = 'abcdefghijklmnopqrstuvwxyz0123456789'
    return generate(alphabet, size=8)
