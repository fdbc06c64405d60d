"""Job orchestration for a media-management backend."""

__version__ = "0.1.0"
