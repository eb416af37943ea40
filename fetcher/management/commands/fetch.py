"""
Django management command for fetching media.

Looks up the renditions a source offers, picks the best fit for the
requested format and quality, and downloads (merging or transcoding when
needed) into the downloads directory.
"""

import json
import sys
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from fetcher.service.catalog import RetryPolicy, available_qualities, lookup_catalog
from fetcher.service.config import PipelineConfig
from fetcher.service.errors import FetchError
from fetcher.service.models import parse_output_request
from fetcher.service.pipeline import fetch_media
from fetcher.service.selection import describe_plan, select


class Command(BaseCommand):
    help = 'Download media from a URL as MP3 (audio) or MP4 (video) at the requested quality'

    def add_arguments(self, parser):
        parser.add_argument('input', type=str, help='URL of the media')
        parser.add_argument(
            '--format',
            type=str,
            default='mp4',
            help='Output format: TUBEFETCH_AUDIO_FORMAT (mp3) for audio, anything else for video (default: mp4)',
        )
        parser.add_argument(
            '--quality',
            type=str,
            default='best',
            help="'best', a height such as 1080p, or a bitrate such as 192kbps (default: best)",
        )
        parser.add_argument(
            '--outdir', type=str, default=None, help='Output directory (default: TUBEFETCH_DOWNLOADS_DIR)'
        )
        parser.add_argument(
            '--list-formats',
            action='store_true',
            help='Show the available qualities and exit',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show which renditions would be downloaded without downloading',
        )
        parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
        parser.add_argument('--json', action='store_true', help='Output result as JSON')

    def handle(self, *args, **options):
        source_id = options['input']
        output_json = options['json']
        verbose = options['verbose']

        overrides = {}
        if options['outdir']:
            overrides['downloads_dir'] = Path(options['outdir'])
        config = PipelineConfig.from_settings(**overrides)

        try:
            request = parse_output_request(options['format'], options['quality'], config.audio_format)
        except ValueError as e:
            raise CommandError(str(e))

        logger = None
        if verbose and not output_json:
            logger = self.stdout.write

        if options['list_formats'] or options['dry_run']:
            self._inspect(source_id, request, config, options, logger)
            return

        result = fetch_media(source_id, request, config=config, logger=logger)

        if output_json:
            self.stdout.write(json.dumps(result.to_dict(), indent=2))
            if not result.success:
                sys.exit(1)
            return

        if not result.success:
            message = result.message
            if result.detail:
                message = f'{message}\n  Details: {result.detail}'
            raise CommandError(message)

        data = result.to_dict()
        self.stdout.write(self.style.SUCCESS(
            f"✓ Saved {data['filename']} at {data['quality']} ({data['fileSizeFormatted']})"
        ))
        self.stdout.write(f"  Path: {data['path']}")

    def _inspect(self, source_id, request, config, options, logger):
        """Look up renditions and report qualities or the plan, without downloading"""
        try:
            entry = RetryPolicy.from_config(config).call(
                lambda: lookup_catalog(source_id, config, logger=logger), logger=logger
            )
        except FetchError as e:
            if options['json']:
                self.stdout.write(json.dumps({'success': False, 'error': e.kind, 'details': e.detail}))
                sys.exit(1)
            raise CommandError(e.message)

        qualities = available_qualities(entry.renditions)
        plan = select(entry.renditions, request)

        if options['json']:
            payload = {
                'title': entry.title,
                'author': entry.author,
                'duration': entry.duration_seconds,
                'availableQualities': qualities,
            }
            if options['dry_run']:
                payload['plan'] = describe_plan(plan)
            self.stdout.write(json.dumps(payload, indent=2))
            return

        self.stdout.write(f'Title: {entry.title}')
        if entry.author:
            self.stdout.write(f'Author: {entry.author}')
        self.stdout.write(f"Video qualities: {', '.join(qualities['video']) or 'none'}")
        self.stdout.write(f"Audio qualities: {', '.join(qualities['audio']) or 'none'}")
        if options['dry_run']:
            self.stdout.write(self.style.WARNING('DRY RUN MODE - No files will be downloaded'))
            self.stdout.write(f'Would download: {describe_plan(plan)}')
