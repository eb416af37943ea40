"""
Management command to clean up old downloads.

Removes every file in the downloads directory older than the retention
window, finished or not, and optionally the temporary files left behind by
requests that crashed.
"""
from django.core.management.base import BaseCommand

from fetcher.service.config import get_downloads_dir, get_retention_hours
from fetcher.service.lifecycle import find_expired, find_orphans, sweep_directory


class Command(BaseCommand):
    help = 'Remove downloads older than the retention window and orphaned temp files'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be deleted without actually deleting'
        )
        parser.add_argument(
            '--force',
            action='store_true',
            help='Delete without confirmation'
        )
        parser.add_argument(
            '--max-age',
            type=float,
            default=None,
            help='Maximum age in hours before a file is removed (default: TUBEFETCH_RETENTION_HOURS)'
        )
        parser.add_argument(
            '--orphans',
            action='store_true',
            help='Also remove temporary files of any age (only when no download is running)'
        )

    def handle(self, *args, **options):
        """Find and clean up old files"""
        dry_run = options['dry_run']
        force = options['force']
        max_age_hours = options['max_age']
        if max_age_hours is None:
            max_age_hours = get_retention_hours()

        downloads_dir = get_downloads_dir()
        if not downloads_dir.exists():
            self.stdout.write(self.style.SUCCESS(f"Downloads directory does not exist: {downloads_dir}"))
            return

        expired = find_expired(downloads_dir, max_age_hours * 3600)
        orphans = []
        if options['orphans']:
            expired_paths = {path for path, _, _ in expired}
            orphans = [p for p in find_orphans(downloads_dir) if p not in expired_paths]

        if not expired and not orphans:
            self.stdout.write(self.style.SUCCESS(
                f"No files older than {max_age_hours:g} hours"
            ))
            return

        # Display findings
        count = len(expired) + len(orphans)
        self.stdout.write(f"\nFound {count} file{'s' if count != 1 else ''} to remove:")
        self.stdout.write(f"{'=' * 80}")

        total_size = 0
        for path, age, size in expired:
            total_size += size
            self.stdout.write(
                f"expired | {path.name:50} | Age: {age / 3600:6.1f} h | Size: {size / (1024 * 1024):6.1f} MB"
            )
        for path in orphans:
            size = path.stat().st_size
            total_size += size
            self.stdout.write(
                f"orphan  | {path.name:50} | {'':13} | Size: {size / (1024 * 1024):6.1f} MB"
            )

        self.stdout.write(f"{'=' * 80}")
        self.stdout.write(f"Total size: {total_size / (1024 * 1024):.1f} MB\n")

        if dry_run:
            self.stdout.write(self.style.WARNING(
                f"\nDRY RUN: Would delete {count} file{'s' if count != 1 else ''}"
            ))
            self.stdout.write("Run without --dry-run to actually delete")
            return

        # Confirm deletion
        if not force:
            response = input(f"\nDelete these {count} file{'s' if count != 1 else ''}? [y/N]: ")
            if response.lower() != 'y':
                self.stdout.write("Cancelled")
                return

        report = sweep_directory(downloads_dir, max_age_hours * 3600, logger=self.stdout.write)

        failed = list(report.failed)
        removed = len(report.removed)
        for path in orphans:
            try:
                path.unlink()
                removed += 1
                self.stdout.write(f"Removed orphan: {path.name}")
            except FileNotFoundError:
                continue
            except OSError as e:
                self.stdout.write(self.style.ERROR(f"✗ Failed to delete {path.name}: {e}"))
                failed.append(path)

        self.stdout.write(self.style.SUCCESS(
            f"\n✓ Deleted {removed} file{'s' if removed != 1 else ''}"
        ))
        if failed:
            self.stdout.write(self.style.ERROR(f"✗ {len(failed)} could not be deleted"))
