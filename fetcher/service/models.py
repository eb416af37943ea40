"""
Data model for the download pipeline.

Plain dataclasses shared by the selector, acquisition engine, coordinator and
lifecycle manager.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from fetcher.service.constants import (
    OUTPUT_AUDIO,
    OUTPUT_VIDEO,
    OUTPUT_KINDS,
    MIME_TYPES,
)


@dataclass(frozen=True)
class Rendition:
    """One encoded variant of the source media"""

    id: str
    container: str
    has_video: bool
    has_audio: bool
    video_height: Optional[int] = None
    audio_bitrate: Optional[int] = None
    size_hint: Optional[int] = None
    url: Optional[str] = None
    duration_seconds: Optional[float] = None
    http_headers: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def fetchable(self) -> bool:
        return self.url is not None

    @property
    def usable(self) -> bool:
        """Streams without a size cannot be scheduled against a deadline."""
        return self.fetchable and self.size_hint is not None

    @property
    def is_combined(self) -> bool:
        return self.has_video and self.has_audio

    @property
    def is_video_only(self) -> bool:
        return self.has_video and not self.has_audio

    @property
    def is_audio_only(self) -> bool:
        return self.has_audio and not self.has_video

    @property
    def quality_label(self) -> str:
        if self.has_video and self.video_height:
            return f'{self.video_height}p'
        if self.audio_bitrate:
            return f'{self.audio_bitrate}kbps'
        return 'unknown'


@dataclass(frozen=True)
class QualityPreference:
    """
    Which quality the caller wants.

    `kind` is one of BEST, EXACT_HEIGHT or EXACT_BITRATE; `value` is the
    height in pixels or the bitrate in kbps for the exact kinds.
    """

    BEST = 'best'
    EXACT_HEIGHT = 'height'
    EXACT_BITRATE = 'bitrate'

    kind: str = BEST
    value: Optional[int] = None

    @classmethod
    def best(cls):
        return cls(cls.BEST)

    @classmethod
    def exact_height(cls, height):
        return cls(cls.EXACT_HEIGHT, int(height))

    @classmethod
    def exact_bitrate(cls, kbps):
        return cls(cls.EXACT_BITRATE, int(kbps))

    @property
    def label(self) -> str:
        if self.kind == self.EXACT_HEIGHT:
            return f'{self.value}p'
        if self.kind == self.EXACT_BITRATE:
            return f'{self.value}kbps'
        return 'best'


@dataclass(frozen=True)
class OutputRequest:
    """The caller's desired result"""

    output_kind: str
    quality: QualityPreference = field(default_factory=QualityPreference.best)

    def __post_init__(self):
        if self.output_kind not in OUTPUT_KINDS:
            raise ValueError(f'Unknown output kind: {self.output_kind}')

    @property
    def is_audio(self) -> bool:
        return self.output_kind == OUTPUT_AUDIO

    @property
    def target_height(self) -> Optional[int]:
        if self.quality.kind == QualityPreference.EXACT_HEIGHT:
            return self.quality.value
        return None

    @property
    def target_bitrate(self) -> Optional[int]:
        if self.quality.kind == QualityPreference.EXACT_BITRATE:
            return self.quality.value
        return None


_HEIGHT_RE = re.compile(r'^(\d+)p$')
_BITRATE_RE = re.compile(r'^(\d+)\s*kbps$')


def parse_output_request(output_format, quality='best', audio_format='mp3'):
    """
    Build an OutputRequest from a container name and a quality string.

    Args:
        output_format: audio_format for audio; any other container means video
        quality: 'best', '<height>p' (e.g. '1080p') or '<bitrate>kbps'
        audio_format: Container that selects audio output (TUBEFETCH_AUDIO_FORMAT)

    Returns:
        OutputRequest

    Raises:
        ValueError: If the quality string cannot be parsed

    Example:
        >>> parse_output_request('mp4', '720p').target_height
        720
    """
    output_format = (output_format or '').lower().lstrip('.')
    audio_format = (audio_format or 'mp3').lower().lstrip('.')
    output_kind = OUTPUT_AUDIO if output_format == audio_format else OUTPUT_VIDEO

    quality = (quality or 'best').strip().lower()
    if quality == 'best':
        return OutputRequest(output_kind, QualityPreference.best())

    height_match = _HEIGHT_RE.match(quality)
    if height_match:
        return OutputRequest(output_kind, QualityPreference.exact_height(height_match.group(1)))

    bitrate_match = _BITRATE_RE.match(quality)
    if bitrate_match:
        return OutputRequest(output_kind, QualityPreference.exact_bitrate(bitrate_match.group(1)))

    raise ValueError(f'Unrecognised quality: {quality!r}')


@dataclass(frozen=True)
class SelectionPlan:
    """Result of rendition selection"""

    @property
    def renditions(self) -> Tuple[Rendition, ...]:
        return ()

    @property
    def is_empty(self) -> bool:
        return not self.renditions


@dataclass(frozen=True)
class SingleStream(SelectionPlan):
    """One rendition already satisfies the request"""

    rendition: Rendition

    @property
    def renditions(self):
        return (self.rendition,)


@dataclass(frozen=True)
class DualStream(SelectionPlan):
    """A video-only and an audio-only rendition fetched separately and muxed"""

    video: Rendition
    audio: Rendition

    @property
    def renditions(self):
        return (self.video, self.audio)


@dataclass(frozen=True)
class NoPlan(SelectionPlan):
    """Nothing available satisfies the request"""


class JobStatus:
    PENDING = 'pending'
    IN_FLIGHT = 'in_flight'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'

    TERMINAL = (SUCCEEDED, FAILED, TIMED_OUT)


@dataclass
class AcquisitionJob:
    """One in-flight retrieval, mutated only by the acquisition engine"""

    rendition: Rendition
    role: str
    destination: Path
    deadline: float
    status: str = JobStatus.PENDING
    reason: Optional[str] = None
    bytes_written: int = 0

    @property
    def finished(self) -> bool:
        return self.status in JobStatus.TERMINAL


@dataclass
class AcquisitionResult:
    """Jobs that all succeeded, plus the plan that was actually acquired"""

    plan: SelectionPlan
    jobs: List[AcquisitionJob]

    def job_for(self, role) -> Optional[AcquisitionJob]:
        for job in self.jobs:
            if job.role == role:
                return job
        return None

    @property
    def paths(self) -> List[Path]:
        return [job.destination for job in self.jobs]


@dataclass
class Artifact:
    """The caller-visible output file"""

    path: Path
    size_bytes: int
    quality_label: str


@dataclass
class CatalogEntry:
    """What the catalog knows about a source"""

    source_id: str
    title: str
    renditions: List[Rendition]
    author: Optional[str] = None
    duration_seconds: Optional[float] = None


@dataclass
class FetchResult:
    """The single terminal outcome of a request"""

    success: bool
    final_path: Optional[Path] = None
    quality_label: Optional[str] = None
    size_bytes: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def succeeded(cls, artifact: Artifact):
        return cls(
            success=True,
            final_path=artifact.path,
            quality_label=artifact.quality_label,
            size_bytes=artifact.size_bytes,
        )

    @classmethod
    def failed(cls, error):
        """Build a failure result from a classified FetchError"""
        return cls(
            success=False,
            error=error.kind,
            message=error.message,
            detail=error.detail,
        )

    @property
    def filename(self) -> Optional[str]:
        return self.final_path.name if self.final_path else None

    @property
    def mime_type(self) -> str:
        if not self.final_path:
            return 'application/octet-stream'
        ext = self.final_path.suffix.lower().lstrip('.')
        return MIME_TYPES.get(ext, 'application/octet-stream')

    def to_dict(self) -> dict:
        if not self.success:
            return {
                'success': False,
                'error': self.error,
                'message': self.message,
                'details': self.detail,
            }

        from fetcher.service.lifecycle import format_file_size

        return {
            'success': True,
            'filename': self.filename,
            'path': str(self.final_path),
            'quality': self.quality_label,
            'fileSize': self.size_bytes,
            'fileSizeFormatted': format_file_size(self.size_bytes),
            'mimeType': self.mime_type,
        }
