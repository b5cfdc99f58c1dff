"""Utility helpers for the Vidgate backend.

Submodules:
- aws: S3 client (presigned PUT, multipart, head, delete)
- stream_api: hosted-video HTTP client (direct upload, TUS, status, delete)
- clock: injectable clock / sleeper
"""

__all__: list[str] = []
