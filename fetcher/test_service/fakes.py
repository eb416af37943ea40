"""
Test doubles for the pipeline's external collaborators.
"""

import threading
import time
from pathlib import Path

from fetcher.service.errors import TransientLookupFailure
from fetcher.service.models import CatalogEntry, Rendition


def combined(height, size=1000, id=None, url='https://cdn.example.com/c', container='mp4'):
    return Rendition(
        id=id or f'c{height}',
        container=container,
        has_video=True,
        has_audio=True,
        video_height=height,
        size_hint=size,
        url=url,
    )


def video_only(height, size=1000, id=None, url='https://cdn.example.com/v', container='mp4'):
    return Rendition(
        id=id or f'v{height}',
        container=container,
        has_video=True,
        has_audio=False,
        video_height=height,
        size_hint=size,
        url=url,
    )


def audio_only(bitrate, size=1000, id=None, url='https://cdn.example.com/a', container='webm'):
    return Rendition(
        id=id or f'a{bitrate}',
        container=container,
        has_video=False,
        has_audio=True,
        audio_bitrate=bitrate,
        size_hint=size,
        url=url,
    )


class FakeFetcher:
    """
    Serves canned chunks per rendition id.

    Args:
        chunks: {id: [bytes, ...]}; ids not listed get [b'data']
        fail_after: {id: n} raise a transport error after n chunks
        delay: {id: seconds} sleep before each chunk
    """

    def __init__(self, chunks=None, fail_after=None, delay=None):
        self.chunks = chunks or {}
        self.fail_after = fail_after or {}
        self.delay = delay or {}
        self.opened = []
        self.served = {}
        self._lock = threading.Lock()

    def open_stream(self, rendition):
        with self._lock:
            self.opened.append(rendition.id)
            self.served.setdefault(rendition.id, 0)
        return self._stream(rendition.id)

    def _stream(self, rendition_id):
        chunks = self.chunks.get(rendition_id, [b'data'])
        for index, chunk in enumerate(chunks):
            if rendition_id in self.fail_after and index >= self.fail_after[rendition_id]:
                raise ConnectionError(f'connection reset while reading {rendition_id}')
            if rendition_id in self.delay:
                time.sleep(self.delay[rendition_id])
            with self._lock:
                self.served[rendition_id] += 1
            yield chunk
        if rendition_id in self.fail_after and self.fail_after[rendition_id] >= len(chunks):
            raise ConnectionError(f'connection reset at end of {rendition_id}')


class FakeEngine:
    """
    Stands in for ffmpeg: records calls and writes the output file.

    `on_run` is called with the input paths before writing, so tests can
    observe the filesystem at the moment processing starts.
    """

    def __init__(self, error=None, output=b'processed', on_run=None):
        self.error = error
        self.output = output
        self.on_run = on_run
        self.calls = []

    def run(self, input_paths, output_path, codec_args, timeout, output_format=None,
            duration_seconds=None, on_progress=None):
        self.calls.append({
            'inputs': [Path(p) for p in input_paths],
            'output': Path(output_path),
            'codec_args': list(codec_args),
            'timeout': timeout,
            'output_format': output_format,
        })
        if self.on_run:
            self.on_run([Path(p) for p in input_paths])
        if self.error:
            # A failing ffmpeg usually leaves a partial file behind
            Path(output_path).write_bytes(b'partial')
            raise self.error
        Path(output_path).write_bytes(self.output)
        if on_progress:
            on_progress(50)
            on_progress(100)


class FakeLookup:
    """Catalog lookup returning a fixed entry, optionally failing first"""

    def __init__(self, renditions, title='Test Video', errors=None):
        self.entry = CatalogEntry(
            source_id='https://example.com/watch?v=abc',
            title=title,
            renditions=list(renditions),
            duration_seconds=60,
        )
        self.errors = list(errors or [])
        self.calls = 0

    def __call__(self, source_id, config, logger=None):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.entry


def transient(detail='connection reset'):
    return TransientLookupFailure('Failed to get media information', detail=detail)
