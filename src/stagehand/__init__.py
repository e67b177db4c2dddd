"""stagehand: release-build pipeline coordinator."""

__version__ = "0.3.0"
