"""
Merge and transcode service.

Combines or re-encodes acquired streams into the final artifact using
ffmpeg, with a hard wall-clock ceiling and progress tracking.
"""

import os
import re
import signal
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from fetcher.service.constants import OUTPUT_VIDEO, ROLE_AUDIO, ROLE_SINGLE, ROLE_VIDEO
from fetcher.service.errors import ProcessingFailed, ProcessingTimeout
from fetcher.service.models import DualStream, SingleStream

_TIME_US_RE = re.compile(r'^out_time_(?:us|ms)=(\d+)$')
_TIME_STR_RE = re.compile(r'^out_time=(\d+):(\d+):(\d+(?:\.\d+)?)$')
_PROGRESS_RE = re.compile(r'^progress=(\w+)$')


@dataclass
class ProcessedFileInfo:
    """Information about a processed file, still at its working path"""

    path: Path
    file_size: int
    extension: str
    was_transcoded: bool
    quality_label: str


class ProgressTracker:
    """
    Turns ffmpeg `-progress` output into a percentage.

    The reported value never goes down. Without a known duration only the
    final 100 is reported.
    """

    def __init__(self, duration_seconds=None, callback: Optional[Callable[[int], None]] = None):
        self.duration_seconds = duration_seconds
        self.callback = callback
        self.percent = 0

    def update(self, percent):
        percent = max(0, min(100, int(percent)))
        if percent <= self.percent:
            return
        self.percent = percent
        if self.callback:
            self.callback(percent)

    def feed(self, line):
        line = line.strip()

        progress = _PROGRESS_RE.match(line)
        if progress:
            if progress.group(1) == 'end':
                self.update(100)
            return

        seconds = _parse_out_time(line)
        if seconds is not None and self.duration_seconds:
            # 100 is reserved for the end marker
            self.update(min(99, seconds / self.duration_seconds * 100))

    def consume(self, stream):
        for line in stream:
            self.feed(line)


def _parse_out_time(line):
    # ffmpeg reports out_time_ms in microseconds too
    match = _TIME_US_RE.match(line)
    if match:
        return int(match.group(1)) / 1_000_000

    match = _TIME_STR_RE.match(line)
    if match:
        hours, minutes, seconds = match.groups()
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    return None


def _drain(stream, tail):
    for line in stream:
        tail.append(line.rstrip())


def _kill_process_group(process):
    """Kill ffmpeg and anything it spawned, without a grace period"""
    try:
        os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        process.kill()


class ProcessingEngine:
    """
    Runs ffmpeg as an external process.

    run() blocks until ffmpeg exits or the timeout expires; progress is read
    on a background thread.
    """

    def __init__(self, binary='ffmpeg', logger=None):
        self.binary = binary
        self.logger = logger

    def log(self, message):
        if self.logger:
            self.logger(message)

    def build_command(self, input_paths, output_path, codec_args, output_format=None):
        cmd = [self.binary, '-y', '-nostdin', '-hide_banner', '-loglevel', 'error']
        for path in input_paths:
            cmd += ['-i', str(path)]
        cmd += list(codec_args)
        if output_format:
            # The working file name ends in .part, so the muxer must be explicit
            cmd += ['-f', output_format]
        cmd += ['-progress', 'pipe:1', str(output_path)]
        return cmd

    def run(self, input_paths, output_path, codec_args, timeout, output_format=None,
            duration_seconds=None, on_progress=None):
        """
        Run one ffmpeg job.

        Args:
            input_paths: Input files, in -i order
            output_path: File to write
            codec_args: Codec/mapping arguments placed after the inputs
            timeout: Wall-clock ceiling in seconds
            output_format: ffmpeg muxer name (e.g. 'mp3')
            duration_seconds: Source duration, for progress percentages
            on_progress: Optional callable(int percent)

        Raises:
            ProcessingTimeout: ffmpeg ran past the ceiling and was killed
            ProcessingFailed: ffmpeg could not start or exited non-zero
        """
        cmd = self.build_command(input_paths, output_path, codec_args, output_format)
        self.log(f"Running: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessingFailed('Could not start ffmpeg', detail=str(e)) from e

        tracker = ProgressTracker(duration_seconds, on_progress)
        stderr_tail = deque(maxlen=40)
        readers = [
            threading.Thread(target=tracker.consume, args=(process.stdout,), daemon=True),
            threading.Thread(target=_drain, args=(process.stderr, stderr_tail), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            return_code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.log(f'ffmpeg exceeded {timeout}s, killing it')
            _kill_process_group(process)
            process.wait()
            raise ProcessingTimeout(f'Processing exceeded the {timeout}s limit')
        finally:
            for reader in readers:
                reader.join(timeout=5)

        if return_code != 0:
            stderr_output = '\n'.join(stderr_tail)
            self.log(f'ffmpeg stderr: {stderr_output}')
            raise ProcessingFailed(f'ffmpeg failed with code {return_code}', detail=stderr_output)

        tracker.update(100)


class MergeCoordinator:
    """
    Turns an AcquisitionResult into a finished working file.

    - single stream video: the download already is the output
    - audio: re-encode to the requested bitrate
    - dual stream: mux video (stream copy) with audio (AAC)
    """

    def __init__(self, engine, workspace, config, logger=None, on_progress=None):
        self.engine = engine
        self.workspace = workspace
        self.config = config
        self.logger = logger
        self.on_progress = on_progress

    def log(self, message):
        if self.logger:
            self.logger(message)

    def _progress(self, label):
        def report(percent):
            self.log(f'{label}: {percent}% done')
            if self.on_progress:
                self.on_progress(percent)
        return report

    def combine(self, acquisition, request):
        """
        Produce the output for a completed acquisition.

        Args:
            acquisition: AcquisitionResult
            request: OutputRequest

        Returns:
            ProcessedFileInfo at the working path

        Raises:
            ProcessingTimeout, ProcessingFailed
        """
        plan = acquisition.plan
        container = self.config.target_format(request.output_kind)

        if request.is_audio:
            return self._transcode_audio(acquisition, request, container)

        if isinstance(plan, SingleStream):
            job = acquisition.job_for(ROLE_SINGLE)
            self.log('No transcoding needed, single stream already has video and audio')
            return ProcessedFileInfo(
                path=job.destination,
                file_size=job.destination.stat().st_size,
                extension=f'.{plan.rendition.container}',
                was_transcoded=False,
                quality_label=plan.rendition.quality_label,
            )

        if isinstance(plan, DualStream):
            return self._mux(acquisition, container)

        raise ProcessingFailed('Nothing to process', detail=repr(plan))

    def _transcode_audio(self, acquisition, request, container):
        job = acquisition.job_for(ROLE_SINGLE) or acquisition.job_for(ROLE_AUDIO)
        bitrate = request.target_bitrate or self.config.default_audio_bitrate
        output_path = self.workspace.working_path(container)

        self.log(f'Converting to {container} with bitrate: {bitrate}kbps')
        self.engine.run(
            [job.destination],
            output_path,
            self.config.codec_args(request.output_kind) + ['-b:a', f'{bitrate}k'],
            timeout=self.config.processing_timeout,
            output_format=container,
            duration_seconds=job.rendition.duration_seconds,
            on_progress=self._progress('Processing'),
        )
        self.log('Audio conversion completed')

        # The raw stream has been consumed
        self.workspace.discard(job.destination)
        return ProcessedFileInfo(
            path=output_path,
            file_size=output_path.stat().st_size,
            extension=f'.{container}',
            was_transcoded=True,
            quality_label=f'{bitrate}kbps',
        )

    def _mux(self, acquisition, container):
        video_job = acquisition.job_for(ROLE_VIDEO)
        audio_job = acquisition.job_for(ROLE_AUDIO)
        output_path = self.workspace.working_path(container)

        self.log('Starting merge with ffmpeg...')
        self.engine.run(
            [video_job.destination, audio_job.destination],
            output_path,
            ['-map', '0:v:0', '-map', '1:a:0'] + self.config.codec_args(OUTPUT_VIDEO),
            timeout=self.config.processing_timeout,
            output_format=container,
            duration_seconds=video_job.rendition.duration_seconds,
            on_progress=self._progress('Merging progress'),
        )
        self.log('Merge completed successfully')

        for job in (video_job, audio_job):
            self.workspace.discard(job.destination)

        return ProcessedFileInfo(
            path=output_path,
            file_size=output_path.stat().st_size,
            extension=f'.{container}',
            was_transcoded=False,
            quality_label=video_job.rendition.quality_label,
        )
