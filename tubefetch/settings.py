"""
Django settings for tubefetch.

Every TUBEFETCH_* value can be overridden with an environment variable of the
same name.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-only-insecure-key')

DEBUG = os.environ.get('DJANGO_DEBUG', 'true').lower() in ('1', 'true', 'yes')

ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')

INSTALLED_APPS = [
    'huey.contrib.djhuey',
    'fetcher',
]

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('DJANGO_DB_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}

USE_TZ = True
TIME_ZONE = 'UTC'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes')


# Where finished and in-progress downloads live
TUBEFETCH_DOWNLOADS_DIR = os.environ.get('TUBEFETCH_DOWNLOADS_DIR', str(BASE_DIR / 'downloads'))

# Per-stream deadline in seconds, and the socket read timeout that bounds
# how long a cancelled fetch can stay blocked
TUBEFETCH_STREAM_TIMEOUT = _env_float('TUBEFETCH_STREAM_TIMEOUT', 600.0)
TUBEFETCH_READ_TIMEOUT = _env_float('TUBEFETCH_READ_TIMEOUT', 30.0)

# Wall-clock ceiling for a single ffmpeg run (re-encode or mux)
TUBEFETCH_PROCESSING_TIMEOUT = _env_float('TUBEFETCH_PROCESSING_TIMEOUT', 300.0)

# Files older than this are removed by the periodic sweep
TUBEFETCH_RETENTION_HOURS = _env_int('TUBEFETCH_RETENTION_HOURS', 24)

# Catalog lookup retry: attempts, and linear backoff base in seconds
TUBEFETCH_LOOKUP_MAX_ATTEMPTS = _env_int('TUBEFETCH_LOOKUP_MAX_ATTEMPTS', 3)
TUBEFETCH_LOOKUP_BACKOFF_SECONDS = _env_float('TUBEFETCH_LOOKUP_BACKOFF_SECONDS', 1.0)

TUBEFETCH_CHUNK_SIZE = _env_int('TUBEFETCH_CHUNK_SIZE', 64 * 1024)

TUBEFETCH_DEFAULT_AUDIO_BITRATE = _env_int('TUBEFETCH_DEFAULT_AUDIO_BITRATE', 192)

TUBEFETCH_AUDIO_FORMAT = os.environ.get('TUBEFETCH_AUDIO_FORMAT', 'mp3')
TUBEFETCH_VIDEO_FORMAT = os.environ.get('TUBEFETCH_VIDEO_FORMAT', 'mp4')

TUBEFETCH_FFMPEG_BINARY = os.environ.get('TUBEFETCH_FFMPEG_BINARY', 'ffmpeg')
TUBEFETCH_FFMPEG_ARGS_AUDIO = os.environ.get('TUBEFETCH_FFMPEG_ARGS_AUDIO', '-vn -c:a libmp3lame')
TUBEFETCH_FFMPEG_ARGS_MUX = os.environ.get('TUBEFETCH_FFMPEG_ARGS_MUX', '-c:v copy -c:a aac')

TUBEFETCH_USER_AGENT = os.environ.get(
    'TUBEFETCH_USER_AGENT',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
)

# Needed on cloud VMs where the origin blocks datacenter addresses
TUBEFETCH_YTDLP_PROXY = os.environ.get('TUBEFETCH_YTDLP_PROXY', '')

# Append a per-request token to every file name so identically titled
# requests never share paths
TUBEFETCH_NAMESPACE_REQUESTS = _env_bool('TUBEFETCH_NAMESPACE_REQUESTS', False)

HUEY = {
    'huey_class': 'huey.SqliteHuey',
    'name': 'tubefetch',
    'filename': os.environ.get('HUEY_DB_PATH', str(BASE_DIR / 'huey.sqlite3')),
    'immediate': _env_bool('HUEY_IMMEDIATE', DEBUG),
}
