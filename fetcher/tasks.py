import os
from datetime import datetime

from huey import crontab
from huey.contrib.djhuey import periodic_task, task

from fetcher.service.config import PipelineConfig
from fetcher.service.lifecycle import sweep_directory
from fetcher.service.models import parse_output_request
from fetcher.service.pipeline import fetch_media


def write_log(log_path, message):
    """Append message to log file"""
    if log_path:
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        with open(log_path, 'a') as f:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            f.write(f"[{timestamp}] {message}\n")


@task()
def fetch_media_task(source_id, output_format='mp4', quality='best', log_path=None):
    """
    Background download of one source.

    Returns the terminal result as a dict so it can be read back from the
    result store.
    """
    config = PipelineConfig.from_settings()
    request = parse_output_request(output_format, quality, config.audio_format)

    def logger(message):
        write_log(log_path, message)

    write_log(log_path, "=== TASK STARTED ===")
    result = fetch_media(source_id, request, config=config, logger=logger)
    write_log(log_path, "=== TASK FINISHED ===" if result.success else "=== TASK FAILED ===")
    return result.to_dict()


@periodic_task(crontab(minute='0'))
def sweep_downloads():
    """Hourly removal of every download older than the retention window"""
    config = PipelineConfig.from_settings()
    report = sweep_directory(
        config.downloads_dir,
        config.retention_hours * 3600,
    )
    return {
        'removed': [p.name for p in report.removed],
        'failed': [p.name for p in report.failed],
        'bytes_freed': report.bytes_freed,
    }
