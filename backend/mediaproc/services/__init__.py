"""Transcoding core services."""
