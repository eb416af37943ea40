"""
Main download pipeline entrypoint.

Provides a single function that turns a source identifier and an output
request into one file in the downloads directory, used by both the CLI and
the task queue.
"""

from fetcher.service.acquisition import AcquisitionEngine, HttpStreamFetcher
from fetcher.service.catalog import RetryPolicy, lookup_catalog
from fetcher.service.config import PipelineConfig
from fetcher.service.errors import (
    FetchError,
    FetchFailed,
    LookupExhausted,
    PlanNotFound,
    ProcessingFailed,
    TransientLookupFailure,
)
from fetcher.service.lifecycle import ArtifactWorkspace, format_file_size, request_token_for
from fetcher.service.models import FetchResult, NoPlan
from fetcher.service.process import MergeCoordinator, ProcessingEngine
from fetcher.service.selection import describe_plan, select

STAGE_LOOKUP = 'lookup'
STAGE_SELECT = 'select'
STAGE_ACQUIRE = 'acquire'
STAGE_PROCESS = 'process'
STAGE_FINALIZE = 'finalize'

# Unexpected exceptions are classified by the stage they escaped from
_STAGE_ERRORS = {
    STAGE_LOOKUP: LookupExhausted,
    STAGE_SELECT: PlanNotFound,
    STAGE_ACQUIRE: FetchFailed,
    STAGE_PROCESS: ProcessingFailed,
    STAGE_FINALIZE: ProcessingFailed,
}


def classify_error(stage, error):
    """Return error as a FetchError, wrapping anything unclassified"""
    if isinstance(error, FetchError):
        return error
    error_class = _STAGE_ERRORS.get(stage, ProcessingFailed)
    return error_class(f'Unexpected error during {stage}', detail=f'{type(error).__name__}: {error}')


def lookup_once(lookup, source_id, config, logger=None):
    """
    One catalog lookup attempt.

    Unclassified exceptions become TransientLookupFailure so the retry
    policy gives them the same bounded retries as network errors.
    """
    try:
        return lookup(source_id, config, logger)
    except FetchError:
        raise
    except Exception as e:
        raise TransientLookupFailure(
            'Failed to get media information', detail=f'{type(e).__name__}: {e}'
        ) from e


def fetch_media(source_id, request, config=None, lookup=None, fetcher=None, engine=None,
                retry_policy=None, logger=None, on_progress=None):
    """
    Download media from a source into the downloads directory.

    This is the main entrypoint for the pipeline. It handles:
    - Catalog lookup (with bounded retry on transient failures)
    - Rendition selection
    - Acquisition (single stream, or two streams in parallel)
    - Merge / transcode (if needed)
    - Finalization and cleanup

    Args:
        source_id: URL or identifier understood by the catalog
        request: OutputRequest
        config: PipelineConfig (default: snapshot of Django settings)
        lookup: Callable(source_id, config, logger) -> CatalogEntry
        fetcher: Stream fetcher (default: HttpStreamFetcher)
        engine: Processing engine (default: ffmpeg)
        retry_policy: RetryPolicy for the lookup step
        logger: Optional callable(str) for logging
        on_progress: Optional callable(int percent) for processing progress

    Returns:
        FetchResult. Never raises for pipeline failures; every failure is
        returned as a classified result.
    """
    def log(message):
        if logger:
            logger(message)

    config = config or PipelineConfig.from_settings()
    lookup = lookup or lookup_catalog
    fetcher = fetcher or HttpStreamFetcher.from_config(config)
    engine = engine or ProcessingEngine(config.ffmpeg_binary, logger=logger)
    retry_policy = retry_policy or RetryPolicy.from_config(config)

    log(f'Download request: {source_id} ({request.output_kind}, {request.quality.label})')

    stage = STAGE_LOOKUP
    workspace = None
    try:
        entry = retry_policy.call(lambda: lookup_once(lookup, source_id, config, logger), logger=logger)

        stage = STAGE_SELECT
        plan = select(entry.renditions, request)
        log(f'Selected: {describe_plan(plan)}')
        if isinstance(plan, NoPlan):
            raise PlanNotFound(
                'Could not find suitable formats',
                detail=f'{len(entry.renditions)} renditions, none match {request.quality.label}',
            )

        workspace = ArtifactWorkspace(
            config.downloads_dir,
            entry.title,
            request_token=request_token_for(config.namespace_requests),
            logger=logger,
        )
        workspace.prepare()

        stage = STAGE_ACQUIRE
        acquisition = AcquisitionEngine(
            fetcher,
            workspace,
            config.stream_timeout,
            logger=logger,
        ).acquire(plan, request, entry.renditions)

        stage = STAGE_PROCESS
        processed = MergeCoordinator(
            engine, workspace, config, logger=logger, on_progress=on_progress
        ).combine(acquisition, request)

        stage = STAGE_FINALIZE
        artifact = workspace.finalize(
            processed.path,
            processed.extension.lstrip('.'),
            processed.quality_label,
        )
        result = FetchResult.succeeded(artifact)
        log(f'Complete! Output: {artifact.path} ({format_file_size(artifact.size_bytes)})')

    except Exception as e:
        error = classify_error(stage, e)
        log(f'{error.kind}: {error.message}')
        if error.detail:
            log(f'Details: {error.detail}')
        result = FetchResult.failed(error)

    finally:
        if workspace is not None:
            workspace.cleanup()

    return result
