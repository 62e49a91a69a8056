"""Background job queue and worker coordination for wiki authoring tools."""

__version__ = "0.1.0"
