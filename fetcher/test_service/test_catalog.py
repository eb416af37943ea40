"""
Tests for service/catalog.py
"""

from pathlib import Path
from unittest.mock import patch

from django.test import TestCase
from yt_dlp.utils import DownloadError

from fetcher.service.catalog import (
    RetryPolicy,
    available_qualities,
    classify_lookup_error,
    estimate_size,
    lookup_catalog,
    normalize_format,
    normalize_renditions,
)
from fetcher.service.config import PipelineConfig
from fetcher.service.errors import (
    LookupExhausted,
    SourceUnavailable,
    TransientLookupFailure,
)
from fetcher.service.models import OutputRequest, QualityPreference, SingleStream
from fetcher.service.selection import select
from fetcher.test_service.fakes import audio_only, combined, transient, video_only


class NormalizeFormatTest(TestCase):
    """Tests for turning yt-dlp format dicts into renditions"""

    def test_combined_format(self):
        rendition = normalize_format({
            'format_id': '22',
            'ext': 'mp4',
            'vcodec': 'avc1.64001F',
            'acodec': 'mp4a.40.2',
            'height': 720,
            'abr': 128,
            'filesize': 5000,
            'url': 'https://cdn.example.com/22',
        })
        self.assertTrue(rendition.is_combined)
        self.assertEqual(rendition.id, '22')
        self.assertEqual(rendition.video_height, 720)
        self.assertEqual(rendition.audio_bitrate, 128)
        self.assertEqual(rendition.size_hint, 5000)
        self.assertTrue(rendition.usable)

    def test_video_only_format(self):
        rendition = normalize_format({
            'format_id': '137',
            'ext': 'mp4',
            'vcodec': 'avc1',
            'acodec': 'none',
            'height': 1080,
            'filesize': 10,
            'url': 'https://cdn.example.com/137',
        })
        self.assertTrue(rendition.is_video_only)
        self.assertIsNone(rendition.audio_bitrate)

    def test_audio_only_format(self):
        rendition = normalize_format({
            'format_id': '251',
            'ext': 'webm',
            'vcodec': 'none',
            'acodec': 'opus',
            'abr': 160.3,
            'filesize': 10,
            'url': 'https://cdn.example.com/251',
        })
        self.assertTrue(rendition.is_audio_only)
        self.assertEqual(rendition.audio_bitrate, 160)
        self.assertIsNone(rendition.video_height)

    def test_storyboard_dropped(self):
        raw = {'format_id': 'sb0', 'ext': 'mhtml', 'vcodec': 'none', 'acodec': 'none'}
        self.assertIsNone(normalize_format(raw))

    def test_codecs_missing_falls_back_to_dimensions(self):
        rendition = normalize_format({'format_id': 'x', 'height': 480, 'url': 'u'})
        self.assertTrue(rendition.has_video)
        self.assertFalse(rendition.has_audio)

    def test_missing_url_not_fetchable(self):
        rendition = normalize_format({
            'format_id': '18', 'vcodec': 'avc1', 'acodec': 'mp4a', 'height': 360, 'filesize': 1,
        })
        self.assertFalse(rendition.fetchable)
        self.assertFalse(rendition.usable)

    def test_headers_carried(self):
        rendition = normalize_format({
            'format_id': '18', 'vcodec': 'avc1', 'acodec': 'mp4a', 'height': 360,
            'url': 'u', 'http_headers': {'Referer': 'https://example.com'},
        })
        self.assertEqual(rendition.http_headers, {'Referer': 'https://example.com'})

    def test_normalize_renditions_keeps_order(self):
        raw_formats = [
            {'format_id': 'sb0', 'vcodec': 'none', 'acodec': 'none'},
            {'format_id': '140', 'vcodec': 'none', 'acodec': 'mp4a', 'abr': 128},
            {'format_id': '18', 'vcodec': 'avc1', 'acodec': 'mp4a', 'height': 360},
        ]
        ids = [r.id for r in normalize_renditions(raw_formats, 60)]
        self.assertEqual(ids, ['140', '18'])

    def test_normalize_renditions_none(self):
        self.assertEqual(normalize_renditions(None), [])


class ManifestFormatTest(TestCase):
    """HLS and DASH formats point at a playlist, not at media bytes"""

    def hls_1080(self, **extra):
        raw = {
            'format_id': '96',
            'ext': 'mp4',
            'vcodec': 'avc1.640028',
            'acodec': 'mp4a.40.2',
            'height': 1080,
            'tbr': 4500,
            'protocol': 'm3u8_native',
            'url': 'https://manifest.example/index.m3u8',
        }
        raw.update(extra)
        return raw

    def direct_360(self):
        return {
            'format_id': '18',
            'ext': 'mp4',
            'vcodec': 'avc1.42001E',
            'acodec': 'mp4a.40.2',
            'height': 360,
            'filesize': 5000,
            'protocol': 'https',
            'url': 'https://cdn.example.com/18',
        }

    def test_hls_not_fetchable(self):
        rendition = normalize_format(self.hls_1080(), 60)
        self.assertIsNone(rendition.url)
        self.assertFalse(rendition.usable)

    def test_dash_not_fetchable(self):
        rendition = normalize_format(self.hls_1080(protocol='http_dash_segments'), 60)
        self.assertFalse(rendition.fetchable)

    def test_manifest_detected_without_protocol(self):
        raw = self.hls_1080()
        del raw['protocol']
        self.assertFalse(normalize_format(raw, 60).fetchable)

    def test_direct_url_kept(self):
        rendition = normalize_format(self.direct_360(), 60)
        self.assertEqual(rendition.url, 'https://cdn.example.com/18')
        self.assertTrue(rendition.usable)

    def test_manifest_format_never_selected(self):
        renditions = normalize_renditions([self.direct_360(), self.hls_1080()], 60)
        plan = select(renditions, OutputRequest('video', QualityPreference.best()))
        self.assertIsInstance(plan, SingleStream)
        self.assertEqual(plan.rendition.id, '18')

    def test_manifest_not_offered_as_quality(self):
        renditions = normalize_renditions([self.direct_360(), self.hls_1080()], 60)
        self.assertEqual(available_qualities(renditions)['video'], ['360p'])


class EstimateSizeTest(TestCase):
    """Tests for size estimation"""

    def test_exact_filesize_preferred(self):
        self.assertEqual(estimate_size({'filesize': 10, 'filesize_approx': 20}, 60), 10)

    def test_approximate_filesize(self):
        self.assertEqual(estimate_size({'filesize': None, 'filesize_approx': 20}, 60), 20)

    def test_bitrate_times_duration(self):
        self.assertEqual(estimate_size({'tbr': 128}, 10), 160000)

    def test_unknown(self):
        self.assertIsNone(estimate_size({}, 10))
        self.assertIsNone(estimate_size({'tbr': 128}, None))


class AvailableQualitiesTest(TestCase):
    """Tests for the quality summary"""

    def test_unique_and_sorted(self):
        renditions = [
            combined(360), video_only(1080), combined(720), video_only(720),
            audio_only(128), audio_only(160), audio_only(128),
        ]
        qualities = available_qualities(renditions)
        self.assertEqual(qualities['video'], ['1080p', '720p', '360p'])
        self.assertEqual(qualities['audio'], ['160kbps', '128kbps'])

    def test_empty(self):
        self.assertEqual(available_qualities([]), {'video': [], 'audio': []})


class ClassifyLookupErrorTest(TestCase):
    """Tests for telling definitive failures from transient ones"""

    def test_unavailable(self):
        error = classify_lookup_error(DownloadError('ERROR: [youtube] abc: Video unavailable'))
        self.assertIsInstance(error, SourceUnavailable)
        self.assertIn('Video unavailable', error.detail)

    def test_private(self):
        error = classify_lookup_error(DownloadError('ERROR: Private video. Sign in'))
        self.assertIsInstance(error, SourceUnavailable)

    def test_network_error_is_transient(self):
        error = classify_lookup_error(DownloadError('ERROR: HTTP Error 503: Service Unavailable'))
        self.assertIsInstance(error, TransientLookupFailure)


class LookupCatalogTest(TestCase):
    """Tests for lookup_catalog with yt-dlp mocked out"""

    def setUp(self):
        self.config = PipelineConfig(Path('/tmp/downloads'), user_agent='TestAgent/1.0')

    def _mock_info(self, mock_ydl_class, info=None, error=None):
        ydl = mock_ydl_class.return_value.__enter__.return_value
        if error is not None:
            ydl.extract_info.side_effect = error
        else:
            ydl.extract_info.return_value = info
        return ydl

    @patch('fetcher.service.catalog.yt_dlp.YoutubeDL')
    def test_lookup_success(self, mock_ydl_class):
        ydl = self._mock_info(mock_ydl_class, {
            'title': 'My Video',
            'uploader': 'Someone',
            'duration': 60,
            'formats': [
                {'format_id': '18', 'ext': 'mp4', 'vcodec': 'avc1', 'acodec': 'mp4a',
                 'height': 360, 'filesize': 100, 'url': 'https://cdn.example.com/18'},
                {'format_id': '251', 'ext': 'webm', 'vcodec': 'none', 'acodec': 'opus',
                 'abr': 160, 'url': 'https://cdn.example.com/251', 'tbr': 160},
            ],
        })

        entry = lookup_catalog('https://example.com/watch?v=abc', self.config)

        self.assertEqual(entry.title, 'My Video')
        self.assertEqual(entry.author, 'Someone')
        self.assertEqual(entry.duration_seconds, 60)
        self.assertEqual([r.id for r in entry.renditions], ['18', '251'])
        self.assertEqual(entry.renditions[1].size_hint, 1200000)
        ydl.extract_info.assert_called_once_with('https://example.com/watch?v=abc', download=False)

        opts = mock_ydl_class.call_args[0][0]
        self.assertTrue(opts['noplaylist'])
        self.assertTrue(opts['skip_download'])
        self.assertEqual(opts['http_headers'], {'User-Agent': 'TestAgent/1.0'})

    @patch('fetcher.service.catalog.yt_dlp.YoutubeDL')
    def test_lookup_logs(self, mock_ydl_class):
        self._mock_info(mock_ydl_class, {'title': 'My Video', 'formats': []})
        messages = []
        lookup_catalog('abc', self.config, logger=messages.append)
        self.assertTrue(any('Looking up: abc' in m for m in messages))

    @patch('fetcher.service.catalog.yt_dlp.YoutubeDL')
    def test_lookup_unavailable(self, mock_ydl_class):
        self._mock_info(mock_ydl_class, error=DownloadError('ERROR: Video unavailable'))
        with self.assertRaises(SourceUnavailable):
            lookup_catalog('abc', self.config)

    @patch('fetcher.service.catalog.yt_dlp.YoutubeDL')
    def test_lookup_transient(self, mock_ydl_class):
        self._mock_info(mock_ydl_class, error=DownloadError('ERROR: Connection reset by peer'))
        with self.assertRaises(TransientLookupFailure):
            lookup_catalog('abc', self.config)

    @patch('fetcher.service.catalog.yt_dlp.YoutubeDL')
    def test_lookup_unexpected_error_is_transient(self, mock_ydl_class):
        self._mock_info(mock_ydl_class, error=KeyError('formats'))
        with self.assertRaises(TransientLookupFailure):
            lookup_catalog('abc', self.config)

    @patch('fetcher.service.catalog.yt_dlp.YoutubeDL')
    def test_lookup_empty_info(self, mock_ydl_class):
        self._mock_info(mock_ydl_class, None)
        with self.assertRaises(TransientLookupFailure):
            lookup_catalog('abc', self.config)

    @patch('fetcher.service.catalog.yt_dlp.YoutubeDL')
    def test_lookup_playlist_rejected(self, mock_ydl_class):
        self._mock_info(mock_ydl_class, {'title': 'A playlist', 'entries': []})
        with self.assertRaises(SourceUnavailable):
            lookup_catalog('abc', self.config)

    @patch('fetcher.service.catalog.yt_dlp.YoutubeDL')
    def test_lookup_untitled(self, mock_ydl_class):
        self._mock_info(mock_ydl_class, {'formats': []})
        entry = lookup_catalog('abc', self.config)
        self.assertEqual(entry.title, 'untitled')


class RetryPolicyTest(TestCase):
    """Tests for bounded lookup retry"""

    def setUp(self):
        self.sleeps = []
        self.policy = RetryPolicy(max_attempts=3, backoff_seconds=1.0, sleep=self.sleeps.append)

    def test_success_first_try(self):
        self.assertEqual(self.policy.call(lambda: 'ok'), 'ok')
        self.assertEqual(self.sleeps, [])

    def test_success_after_transient_failures(self):
        outcomes = [transient(), transient()]

        def fn():
            if outcomes:
                raise outcomes.pop(0)
            return 'ok'

        self.assertEqual(self.policy.call(fn), 'ok')
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_exhausted(self):
        calls = []

        def fn():
            calls.append(1)
            raise transient('socket timeout')

        with self.assertRaises(LookupExhausted) as ctx:
            self.policy.call(fn)

        self.assertEqual(len(calls), 3)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(ctx.exception.detail, 'socket timeout')
        # No wait after the final attempt
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_definitive_failure_not_retried(self):
        calls = []

        def fn():
            calls.append(1)
            raise SourceUnavailable('gone')

        with self.assertRaises(SourceUnavailable):
            self.policy.call(fn)
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.sleeps, [])

    def test_logs_attempts(self):
        messages = []
        with self.assertRaises(LookupExhausted):
            self.policy.call(lambda: (_ for _ in ()).throw(transient('boom')), logger=messages.append)
        self.assertEqual(len([m for m in messages if m.startswith('Attempt')]), 3)

    def test_from_config(self):
        policy = RetryPolicy.from_config(
            PipelineConfig(Path('/tmp'), lookup_max_attempts=5, lookup_backoff_seconds=0.5)
        )
        self.assertEqual(policy.max_attempts, 5)
        self.assertEqual(policy.delay(2), 1.0)
