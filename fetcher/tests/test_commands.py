"""
Tests for the fetch and cleanup_downloads management commands
"""

import json
import os
import tempfile
import time
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase, override_settings

from fetcher.service.errors import PlanNotFound, SourceUnavailable
from fetcher.service.models import Artifact, CatalogEntry, FetchResult
from fetcher.test_service.fakes import audio_only, combined, video_only

SUCCESS = FetchResult.succeeded(Artifact(Path('/downloads/Song.mp3'), 2048, '192kbps'))
FAILURE = FetchResult.failed(PlanNotFound('Could not find suitable formats', detail='0 renditions'))


def catalog_entry():
    return CatalogEntry(
        source_id='https://example.com/watch?v=abc',
        title='Song',
        renditions=[combined(720), video_only(1080), audio_only(160)],
        author='Band',
        duration_seconds=200,
    )


class FetchCommandTest(TestCase):
    """Tests for the fetch command"""

    @patch('fetcher.management.commands.fetch.fetch_media', return_value=SUCCESS)
    def test_fetch_success(self, mock_fetch):
        out = StringIO()
        call_command('fetch', 'https://example.com/watch?v=abc', '--format', 'mp3',
                     '--quality', '192kbps', stdout=out)

        output = out.getvalue()
        self.assertIn('Saved Song.mp3 at 192kbps (2 KB)', output)
        self.assertIn('/downloads/Song.mp3', output)

        source_id, request = mock_fetch.call_args[0]
        self.assertEqual(source_id, 'https://example.com/watch?v=abc')
        self.assertTrue(request.is_audio)
        self.assertEqual(request.target_bitrate, 192)

    @override_settings(TUBEFETCH_AUDIO_FORMAT='ogg')
    @patch('fetcher.management.commands.fetch.fetch_media', return_value=SUCCESS)
    def test_fetch_configured_audio_format(self, mock_fetch):
        call_command('fetch', 'abc', '--format', 'ogg', stdout=StringIO())
        request = mock_fetch.call_args[0][1]
        self.assertTrue(request.is_audio)
        self.assertEqual(mock_fetch.call_args[1]['config'].audio_format, 'ogg')

    @patch('fetcher.management.commands.fetch.fetch_media', return_value=SUCCESS)
    def test_fetch_outdir(self, mock_fetch):
        call_command('fetch', 'abc', '--outdir', '/tmp/elsewhere', stdout=StringIO())
        self.assertEqual(mock_fetch.call_args[1]['config'].downloads_dir, Path('/tmp/elsewhere'))

    @patch('fetcher.management.commands.fetch.fetch_media', return_value=SUCCESS)
    def test_fetch_json(self, mock_fetch):
        out = StringIO()
        call_command('fetch', 'abc', '--json', stdout=out)
        data = json.loads(out.getvalue())
        self.assertTrue(data['success'])
        self.assertEqual(data['mimeType'], 'audio/mpeg')

    @patch('fetcher.management.commands.fetch.fetch_media', return_value=FAILURE)
    def test_fetch_failure(self, mock_fetch):
        with self.assertRaises(CommandError) as ctx:
            call_command('fetch', 'abc', stdout=StringIO())
        self.assertIn('Could not find suitable formats', str(ctx.exception))
        self.assertIn('0 renditions', str(ctx.exception))

    @patch('fetcher.management.commands.fetch.fetch_media', return_value=FAILURE)
    def test_fetch_failure_json_exits(self, mock_fetch):
        out = StringIO()
        with self.assertRaises(SystemExit):
            call_command('fetch', 'abc', '--json', stdout=out)
        self.assertEqual(json.loads(out.getvalue())['error'], 'plan_not_found')

    def test_invalid_quality(self):
        with self.assertRaises(CommandError):
            call_command('fetch', 'abc', '--quality', 'highest', stdout=StringIO())

    @patch('fetcher.management.commands.fetch.fetch_media', return_value=SUCCESS)
    def test_verbose_passes_logger(self, mock_fetch):
        call_command('fetch', 'abc', '--verbose', stdout=StringIO())
        self.assertIsNotNone(mock_fetch.call_args[1]['logger'])

    @patch('fetcher.management.commands.fetch.fetch_media')
    @patch('fetcher.management.commands.fetch.lookup_catalog')
    def test_list_formats(self, mock_lookup, mock_fetch):
        mock_lookup.return_value = catalog_entry()
        out = StringIO()

        call_command('fetch', 'abc', '--list-formats', stdout=out)

        output = out.getvalue()
        self.assertIn('Title: Song', output)
        self.assertIn('Video qualities: 1080p, 720p', output)
        self.assertIn('Audio qualities: 160kbps', output)
        mock_fetch.assert_not_called()

    @patch('fetcher.management.commands.fetch.lookup_catalog')
    def test_dry_run_json(self, mock_lookup):
        mock_lookup.return_value = catalog_entry()
        out = StringIO()

        call_command('fetch', 'abc', '--dry-run', '--json', '--quality', '720p', stdout=out)

        data = json.loads(out.getvalue())
        self.assertEqual(data['title'], 'Song')
        self.assertEqual(data['availableQualities']['video'], ['1080p', '720p'])
        self.assertIn('720p', data['plan'])

    @patch('fetcher.management.commands.fetch.lookup_catalog')
    def test_list_formats_unavailable(self, mock_lookup):
        mock_lookup.side_effect = SourceUnavailable('This media is not available for download.')
        with self.assertRaises(CommandError):
            call_command('fetch', 'abc', '--list-formats', stdout=StringIO())


class CleanupDownloadsCommandTest(TestCase):
    """Tests for the cleanup_downloads command"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmp.name)
        self.settings_override = override_settings(TUBEFETCH_DOWNLOADS_DIR=str(self.tmpdir))
        self.settings_override.enable()

    def tearDown(self):
        self.settings_override.disable()
        self._tmp.cleanup()

    def make_file(self, name, age_hours):
        path = self.tmpdir / name
        path.write_bytes(b'data')
        mtime = time.time() - age_hours * 3600
        os.utime(path, (mtime, mtime))
        return path

    def test_nothing_to_remove(self):
        self.make_file('fresh.mp4', 1)
        out = StringIO()
        call_command('cleanup_downloads', '--force', stdout=out)
        self.assertIn('No files older than 24 hours', out.getvalue())

    def test_force_removes_old_files(self):
        old = self.make_file('old.mp4', 30)
        fresh = self.make_file('fresh.mp4', 1)
        out = StringIO()

        call_command('cleanup_downloads', '--force', stdout=out)

        self.assertFalse(old.exists())
        self.assertTrue(fresh.exists())
        self.assertIn('Deleted 1 file', out.getvalue())

    def test_dry_run_keeps_files(self):
        old = self.make_file('old.mp4', 30)
        out = StringIO()
        call_command('cleanup_downloads', '--dry-run', stdout=out)
        self.assertTrue(old.exists())
        self.assertIn('DRY RUN', out.getvalue())

    def test_max_age(self):
        old = self.make_file('old.mp4', 3)
        call_command('cleanup_downloads', '--force', '--max-age', '2', stdout=StringIO())
        self.assertFalse(old.exists())

    def test_orphans(self):
        orphan = self.make_file('song_temp_audio.webm', 0)
        fresh = self.make_file('song.mp3', 0)
        call_command('cleanup_downloads', '--force', '--orphans', stdout=StringIO())
        self.assertFalse(orphan.exists())
        self.assertTrue(fresh.exists())

    @patch('builtins.input', return_value='n')
    def test_confirmation_declined(self, mock_input):
        old = self.make_file('old.mp4', 30)
        out = StringIO()
        call_command('cleanup_downloads', stdout=out)
        self.assertTrue(old.exists())
        self.assertIn('Cancelled', out.getvalue())

    def test_missing_directory(self):
        with override_settings(TUBEFETCH_DOWNLOADS_DIR=str(self.tmpdir / 'missing')):
            out = StringIO()
            call_command('cleanup_downloads', '--force', stdout=out)
        self.assertIn('does not exist', out.getvalue())
