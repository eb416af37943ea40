"""
Acquisition engine.

Streams the bytes of a selection plan to disk. A single-stream plan is
fetched inline; a dual-stream plan fetches its video and audio halves in
parallel, and either half failing cancels the other.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, FIRST_EXCEPTION, wait

import requests

from fetcher.service.constants import ROLE_AUDIO, ROLE_SINGLE, ROLE_VIDEO
from fetcher.service.errors import FetchError, FetchFailed, FetchTimeout, PlanNotFound
from fetcher.service.models import (
    AcquisitionJob,
    AcquisitionResult,
    DualStream,
    JobStatus,
    SingleStream,
)
from fetcher.service.selection import describe_plan, select_dual_stream


class FetchCancelled(Exception):
    """Raised inside a worker when its sibling has already failed"""

    pass


class HttpStreamFetcher:
    """
    Stream fetcher backed by requests.

    Yields chunks of at most chunk_size bytes, so at most one chunk per
    stream is held in memory between the socket and the file.
    """

    def __init__(self, chunk_size=64 * 1024, connect_timeout=10.0, read_timeout=30.0,
                 user_agent=None, proxy=None, session=None):
        self.chunk_size = chunk_size
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.user_agent = user_agent
        self.proxies = {'http': proxy, 'https': proxy} if proxy else None
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        return cls(
            chunk_size=config.chunk_size,
            read_timeout=min(config.read_timeout, config.stream_timeout),
            user_agent=config.user_agent,
            proxy=config.proxy,
        )

    def open_stream(self, rendition):
        headers = dict(rendition.http_headers)
        if self.user_agent:
            headers['User-Agent'] = self.user_agent

        response = self.session.get(
            rendition.url,
            headers=headers,
            stream=True,
            timeout=(self.connect_timeout, self.read_timeout),
            proxies=self.proxies,
        )
        response.raise_for_status()
        return self._iter_chunks(response)

    def _iter_chunks(self, response):
        try:
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if chunk:
                    yield chunk
        finally:
            response.close()


class AcquisitionEngine:
    """
    Drives the fetch jobs for one request.

    Args:
        fetcher: Object with open_stream(rendition) -> iterator of bytes
        workspace: ArtifactWorkspace that names and tracks the files
        stream_timeout: Per-job deadline in seconds
        logger: Optional callable(str) for logging
    """

    def __init__(self, fetcher, workspace, stream_timeout, logger=None, clock=time.monotonic):
        self.fetcher = fetcher
        self.workspace = workspace
        self.stream_timeout = stream_timeout
        self.logger = logger
        self.clock = clock
        self._status_lock = threading.Lock()

    def log(self, message):
        if self.logger:
            self.logger(message)

    def acquire(self, plan, request, renditions):
        """
        Fetch everything a plan needs.

        A failed single-stream video fetch is retried once as a dual-stream
        plan chosen from the original rendition list.

        Args:
            plan: SingleStream or DualStream
            request: OutputRequest
            renditions: The full rendition list the plan was chosen from

        Returns:
            AcquisitionResult with every job succeeded

        Raises:
            FetchTimeout, FetchFailed: The transfer could not complete
            PlanNotFound: The plan was NoPlan
        """
        if isinstance(plan, SingleStream):
            try:
                return self._acquire_single(plan, request)
            except (FetchTimeout, FetchFailed) as e:
                if request.is_audio:
                    raise
                fallback = select_dual_stream(renditions, request)
                if not isinstance(fallback, DualStream):
                    self.log('No dual-stream fallback available')
                    raise
                self.log(f'Stream download failed: {e.message}')
                self.log(f'Falling back to merge method: {describe_plan(fallback)}')
                return self._acquire_dual(fallback)

        if isinstance(plan, DualStream):
            return self._acquire_dual(plan)

        raise PlanNotFound('No suitable formats available')

    def _new_job(self, rendition, role, destination):
        return AcquisitionJob(
            rendition=rendition,
            role=role,
            destination=destination,
            deadline=self.clock() + self.stream_timeout,
        )

    def _acquire_single(self, plan, request):
        rendition = plan.rendition
        if request.is_audio:
            # Audio is always re-encoded, so the raw stream is only temporary
            destination = self.workspace.temp_path(ROLE_AUDIO, rendition.container)
        else:
            # Passed through as is, so the artifact keeps the rendition's container
            destination = self.workspace.working_path(rendition.container)

        job = self._new_job(rendition, ROLE_SINGLE, destination)
        self.log(f'Downloading single stream: {rendition.quality_label}, '
                 f'container: {rendition.container}, id: {rendition.id}')
        try:
            self._run_job(job, threading.Event())
        except FetchError:
            self.workspace.discard(destination)
            raise

        self.log('Single stream download completed')
        return AcquisitionResult(plan=plan, jobs=[job])

    def _acquire_dual(self, plan):
        jobs = [
            self._new_job(plan.video, ROLE_VIDEO,
                          self.workspace.temp_path(ROLE_VIDEO, plan.video.container)),
            self._new_job(plan.audio, ROLE_AUDIO,
                          self.workspace.temp_path(ROLE_AUDIO, plan.audio.container)),
        ]
        self.log(f'Downloading video and audio streams: {describe_plan(plan)}')

        cancel = threading.Event()
        failure = None

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='acquire') as pool:
            futures = {pool.submit(self._run_job, job, cancel): job for job in jobs}
            pending = set(futures)

            while pending and failure is None:
                nearest = min(futures[f].deadline for f in pending)
                timeout = max(0.0, nearest - self.clock())
                done, pending = wait(pending, timeout=timeout, return_when=FIRST_EXCEPTION)

                for future in done:
                    error = future.exception()
                    if error is not None and failure is None:
                        failure = error

                if failure is None:
                    failure = self._expire_overdue(futures[f] for f in pending)

            if failure is not None:
                # Stop the sibling now rather than discarding its result later
                cancel.set()
            # Leaving the block waits for both workers to stop writing

        if failure is not None:
            for job in jobs:
                self.workspace.discard(job.destination)
            if isinstance(failure, FetchError):
                raise failure
            raise FetchFailed('Download and merge failed', detail=str(failure)) from failure

        self.log('Video and audio streams downloaded')
        return AcquisitionResult(plan=plan, jobs=jobs)

    def _expire_overdue(self, jobs):
        now = self.clock()
        for job in jobs:
            if now >= job.deadline and self._set_status(job, JobStatus.TIMED_OUT, 'deadline exceeded'):
                self.log(f'{job.role} stream timed out after {self.stream_timeout}s')
                return FetchTimeout(
                    f'{job.role} stream exceeded its {self.stream_timeout}s deadline',
                    detail=f'rendition {job.rendition.id}',
                )
        return None

    def _set_status(self, job, status, reason=None):
        """Move a job to a new status unless it already finished"""
        with self._status_lock:
            if job.finished:
                return False
            job.status = status
            job.reason = reason
            return True

    def _run_job(self, job, cancel):
        """
        Stream one rendition into job.destination.

        Checks the cancel flag and the deadline between chunks.
        """
        self._set_status(job, JobStatus.IN_FLIGHT)
        job.destination.parent.mkdir(parents=True, exist_ok=True)

        stream = None
        try:
            stream = self.fetcher.open_stream(job.rendition)
            with open(job.destination, 'wb') as f:
                for chunk in stream:
                    if cancel.is_set():
                        raise FetchCancelled(job.role)
                    if self.clock() > job.deadline:
                        raise FetchTimeout(
                            f'{job.role} stream exceeded its {self.stream_timeout}s deadline',
                            detail=f'rendition {job.rendition.id}',
                        )
                    f.write(chunk)
                    job.bytes_written += len(chunk)
        except FetchCancelled:
            self._set_status(job, JobStatus.FAILED, 'cancelled')
            raise
        except FetchTimeout as e:
            self._set_status(job, JobStatus.TIMED_OUT, e.message)
            raise
        except FetchError as e:
            self._set_status(job, JobStatus.FAILED, e.message)
            raise
        except Exception as e:
            self._set_status(job, JobStatus.FAILED, str(e))
            raise FetchFailed(f'{job.role} stream download failed', detail=str(e)) from e
        finally:
            close = getattr(stream, 'close', None)
            if close is not None:
                close()

        if not self._set_status(job, JobStatus.SUCCEEDED):
            # The engine gave up on this job while its last chunk was landing
            raise FetchCancelled(job.role)
        return job
