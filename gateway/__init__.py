"""Transcode gateway: HTTP orchestration around an external media engine."""

__version__ = "0.1.0"
