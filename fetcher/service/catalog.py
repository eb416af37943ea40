"""
Catalog lookup and rendition normalization.

Asks yt-dlp what a source offers, turns its format dicts into Rendition
records, and classifies lookup failures as definitive or transient.
"""

import time
from dataclasses import dataclass
from typing import Callable

import yt_dlp
from yt_dlp.utils import DownloadError, determine_protocol

from fetcher.service.config import get_ytdlp_options
from fetcher.service.constants import DIRECT_PROTOCOLS
from fetcher.service.errors import (
    LookupExhausted,
    SourceUnavailable,
    TransientLookupFailure,
)
from fetcher.service.models import CatalogEntry, Rendition

# Substrings of yt-dlp error messages that mean retrying cannot help
UNAVAILABLE_MARKERS = [
    'video unavailable',
    'private video',
    'has been removed',
    'account associated with this video has been terminated',
    'sign in to confirm your age',
    'age-restricted',
    'not available in your country',
    'members-only',
    'join this channel',
    'unsupported url',
    'is not a valid url',
    'http error 404',
    'http error 410',
]


def _has_stream(codec, fallback):
    if codec is None:
        return bool(fallback)
    return codec != 'none'


def _to_int(value):
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def estimate_size(raw, duration_seconds):
    """
    Best-effort byte size of a format.

    Prefers the exact filesize, then yt-dlp's approximation, then
    total bitrate (kbps) times duration.
    """
    for key in ('filesize', 'filesize_approx'):
        size = _to_int(raw.get(key))
        if size:
            return size

    tbr = raw.get('tbr')
    if tbr and duration_seconds:
        return int(float(tbr) * float(duration_seconds) * 1000 / 8)
    return None


def direct_url(raw):
    """
    The format's url if it points at the media itself.

    HLS and DASH formats carry a manifest url; streaming it would save the
    playlist text, so they count as not fetchable.
    """
    url = raw.get('url')
    if not url:
        return None
    if determine_protocol(raw) not in DIRECT_PROTOCOLS:
        return None
    return url


def normalize_format(raw, duration_seconds=None):
    """
    Convert one yt-dlp format dict into a Rendition.

    Args:
        raw: Format dict from yt-dlp's info['formats']
        duration_seconds: Source duration, used for size estimates

    Returns:
        Rendition, or None when the format carries neither video nor audio
        (storyboards, thumbnails)
    """
    height = _to_int(raw.get('height'))
    abr = _to_int(raw.get('abr'))

    has_video = _has_stream(raw.get('vcodec'), height)
    has_audio = _has_stream(raw.get('acodec'), abr)
    if not has_video and not has_audio:
        return None

    return Rendition(
        id=str(raw.get('format_id', '')),
        container=raw.get('ext') or 'bin',
        has_video=has_video,
        has_audio=has_audio,
        video_height=height if has_video else None,
        audio_bitrate=abr if has_audio else None,
        size_hint=estimate_size(raw, duration_seconds),
        url=direct_url(raw),
        duration_seconds=duration_seconds,
        http_headers=dict(raw.get('http_headers') or {}),
    )


def normalize_renditions(raw_formats, duration_seconds=None):
    """Normalize a list of format dicts, keeping catalog order"""
    renditions = []
    for raw in raw_formats or []:
        rendition = normalize_format(raw, duration_seconds)
        if rendition is not None:
            renditions.append(rendition)
    return renditions


def available_qualities(renditions):
    """
    Summarize which qualities a caller can ask for.

    Returns:
        dict: {'video': ['1080p', '720p', ...], 'audio': ['160kbps', ...]}
        with unique values, highest first
    """
    heights = {
        r.video_height for r in renditions
        if r.usable and r.has_video and r.video_height
    }
    bitrates = {
        r.audio_bitrate for r in renditions
        if r.usable and r.is_audio_only and r.audio_bitrate
    }
    return {
        'video': [f'{h}p' for h in sorted(heights, reverse=True)],
        'audio': [f'{b}kbps' for b in sorted(bitrates, reverse=True)],
    }


def classify_lookup_error(error):
    """
    Map a yt-dlp failure to SourceUnavailable or TransientLookupFailure.
    """
    text = str(error)
    lowered = text.lower()
    if any(marker in lowered for marker in UNAVAILABLE_MARKERS):
        return SourceUnavailable(
            'This media is not available for download. It may be private, '
            'age-restricted, or region-blocked.',
            detail=text,
        )
    return TransientLookupFailure('Failed to get media information', detail=text)


def lookup_catalog(source_id, config, logger=None):
    """
    Fetch metadata and renditions for a source.

    Args:
        source_id: URL or identifier understood by yt-dlp
        config: PipelineConfig
        logger: Optional callable(str) for logging

    Returns:
        CatalogEntry

    Raises:
        SourceUnavailable: The source is definitively inaccessible
        TransientLookupFailure: Anything else
    """
    def log(message):
        if logger:
            logger(message)

    ydl_opts = get_ytdlp_options(config, {'noplaylist': True})

    log(f'Looking up: {source_id}')
    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(source_id, download=False)
    except DownloadError as e:
        raise classify_lookup_error(e) from e
    except Exception as e:
        raise TransientLookupFailure('Failed to get media information', detail=str(e)) from e

    if not info:
        raise TransientLookupFailure('No info returned')
    if 'entries' in info:
        raise SourceUnavailable('Playlists are not supported', detail=info.get('title'))

    duration = info.get('duration')
    renditions = normalize_renditions(info.get('formats'), duration)
    log(f'Title: {info.get("title")}')
    log(f'Total formats found: {len(info.get("formats") or [])}, usable renditions: '
        f'{sum(1 for r in renditions if r.usable)}')

    return CatalogEntry(
        source_id=source_id,
        title=info.get('title') or 'untitled',
        renditions=renditions,
        author=info.get('uploader') or info.get('channel'),
        duration_seconds=duration,
    )


@dataclass
class RetryPolicy:
    """
    Bounded retry for catalog lookups.

    Only TransientLookupFailure is retried, waiting backoff_seconds times
    the attempt number between tries. Anything else propagates at once.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_config(cls, config):
        return cls(
            max_attempts=config.lookup_max_attempts,
            backoff_seconds=config.lookup_backoff_seconds,
        )

    def delay(self, attempt):
        return self.backoff_seconds * attempt

    def call(self, fn, logger=None):
        """
        Run fn() until it succeeds or attempts run out.

        Raises:
            LookupExhausted: After max_attempts transient failures
        """
        def log(message):
            if logger:
                logger(message)

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except TransientLookupFailure as e:
                last_error = e
                log(f'Attempt {attempt} failed: {e.detail or e.message}')
                if attempt < self.max_attempts:
                    self.sleep(self.delay(attempt))

        raise LookupExhausted(
            f'Lookup failed after {self.max_attempts} attempts',
            detail=last_error.detail if last_error else None,
            attempts=self.max_attempts,
        )
