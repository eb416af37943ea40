"""
Service layer for rendition selection and acquisition.

This module contains the download pipeline, independent of any web surface.
These functions are used by:
- The Huey background tasks (fetcher/tasks.py)
- The CLI management commands (management/commands/fetch.py)
"""
