"""
Media format constants.

Centralized definitions of output kinds, file roles and naming suffixes.
"""

# Output kinds a caller can ask for
OUTPUT_AUDIO = 'audio'
OUTPUT_VIDEO = 'video'
OUTPUT_KINDS = [OUTPUT_AUDIO, OUTPUT_VIDEO]

# Roles an acquisition job can play in a plan
ROLE_SINGLE = 'single'
ROLE_VIDEO = 'video'
ROLE_AUDIO = 'audio'

# Suffixes used to name per-request temporary files. A crashed process leaves
# files matching these behind, which is how orphans are recognised.
TEMP_VIDEO_SUFFIX = '_temp_video'
TEMP_AUDIO_SUFFIX = '_temp_audio'
WORKING_SUFFIX = '.part'

TEMP_SUFFIXES = {
    ROLE_VIDEO: TEMP_VIDEO_SUFFIX,
    ROLE_AUDIO: TEMP_AUDIO_SUFFIX,
}

# Characters that are not allowed in a file name on common filesystems
UNSAFE_FILENAME_CHARS = '<>:"/\\|?*'

# Filesystems cap a name at 255 bytes; the rest is left for the request
# token, the temp suffix, the extension and WORKING_SUFFIX
MAX_FILENAME_BYTES = 200

# yt-dlp protocols whose url is the media itself rather than a manifest
DIRECT_PROTOCOLS = ('http', 'https')

# Bitrate used when re-encoding audio without an explicit request
DEFAULT_AUDIO_BITRATE_KBPS = 192

MIME_TYPES = {
    'mp3': 'audio/mpeg',
    'm4a': 'audio/mp4',
    'mp4': 'video/mp4',
    'webm': 'video/webm',
    'ogg': 'audio/ogg',
}
