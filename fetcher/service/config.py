"""
Configuration adapter for download pipeline settings.

Centralizes access to Django settings, ensuring consistent configuration
across the CLI and the task queue. Components never read settings directly;
they receive a PipelineConfig built once per request.
"""

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from django.conf import settings

from fetcher.service.constants import DEFAULT_AUDIO_BITRATE_KBPS, OUTPUT_AUDIO, OUTPUT_VIDEO


def get_downloads_dir():
    """Get the downloads directory path"""
    return Path(settings.TUBEFETCH_DOWNLOADS_DIR)


def get_target_format(output_kind):
    """
    Get the output container for the specified output kind.

    Args:
        output_kind: 'audio' or 'video'

    Returns:
        str: container name without a dot (e.g. 'mp3')
    """
    if output_kind == OUTPUT_AUDIO:
        return settings.TUBEFETCH_AUDIO_FORMAT
    elif output_kind == OUTPUT_VIDEO:
        return settings.TUBEFETCH_VIDEO_FORMAT
    else:
        return ''


def get_retention_hours():
    """Get how long downloads are kept before the sweep removes them"""
    return int(settings.TUBEFETCH_RETENTION_HOURS)


def get_ytdlp_options(config, base_opts=None):
    """
    Build yt-dlp options for metadata lookups.

    Args:
        config: PipelineConfig
        base_opts: Optional dict to extend

    Returns:
        dict: yt-dlp options

    Example:
        >>> get_ytdlp_options(PipelineConfig(Path('/tmp'), proxy='socks5://h:1'))['proxy']
        'socks5://h:1'
    """
    opts = dict(base_opts or {})
    opts.setdefault('quiet', True)
    opts.setdefault('no_warnings', True)
    opts.setdefault('skip_download', True)
    if config.user_agent:
        opts['http_headers'] = {'User-Agent': config.user_agent}

    # Needed for cloud VMs where the origin blocks requests
    if config.proxy:
        opts['proxy'] = config.proxy

    return opts


@dataclass(frozen=True)
class PipelineConfig:
    """Everything one request needs to know about its environment"""

    downloads_dir: Path
    stream_timeout: float = 600.0
    read_timeout: float = 30.0
    processing_timeout: float = 300.0
    retention_hours: int = 24
    lookup_max_attempts: int = 3
    lookup_backoff_seconds: float = 1.0
    chunk_size: int = 64 * 1024
    default_audio_bitrate: int = DEFAULT_AUDIO_BITRATE_KBPS
    audio_format: str = 'mp3'
    video_format: str = 'mp4'
    ffmpeg_binary: str = 'ffmpeg'
    ffmpeg_args_audio: str = '-vn -c:a libmp3lame'
    ffmpeg_args_mux: str = '-c:v copy -c:a aac'
    user_agent: Optional[str] = None
    proxy: Optional[str] = None
    namespace_requests: bool = False

    @classmethod
    def from_settings(cls, **overrides):
        """Snapshot the current Django settings"""
        values = dict(
            downloads_dir=get_downloads_dir(),
            stream_timeout=float(settings.TUBEFETCH_STREAM_TIMEOUT),
            read_timeout=float(settings.TUBEFETCH_READ_TIMEOUT),
            processing_timeout=float(settings.TUBEFETCH_PROCESSING_TIMEOUT),
            retention_hours=get_retention_hours(),
            lookup_max_attempts=int(settings.TUBEFETCH_LOOKUP_MAX_ATTEMPTS),
            lookup_backoff_seconds=float(settings.TUBEFETCH_LOOKUP_BACKOFF_SECONDS),
            chunk_size=int(settings.TUBEFETCH_CHUNK_SIZE),
            default_audio_bitrate=int(settings.TUBEFETCH_DEFAULT_AUDIO_BITRATE),
            audio_format=get_target_format(OUTPUT_AUDIO),
            video_format=get_target_format(OUTPUT_VIDEO),
            ffmpeg_binary=settings.TUBEFETCH_FFMPEG_BINARY,
            ffmpeg_args_audio=settings.TUBEFETCH_FFMPEG_ARGS_AUDIO,
            ffmpeg_args_mux=settings.TUBEFETCH_FFMPEG_ARGS_MUX,
            user_agent=settings.TUBEFETCH_USER_AGENT or None,
            proxy=settings.TUBEFETCH_YTDLP_PROXY or None,
            namespace_requests=bool(settings.TUBEFETCH_NAMESPACE_REQUESTS),
        )
        values.update(overrides)
        return cls(**values)

    def target_format(self, output_kind):
        return self.audio_format if output_kind == OUTPUT_AUDIO else self.video_format

    def codec_args(self, output_kind):
        if output_kind == OUTPUT_AUDIO:
            return shlex.split(self.ffmpeg_args_audio)
        return shlex.split(self.ffmpeg_args_mux)
