"""Multi-stage video pipeline job queue and worker pool orchestrator."""

__version__ = "0.1.0"
