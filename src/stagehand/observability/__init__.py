"""Observability module for stagehand.

Provides structured logging and run correlation.
"""

from stagehand.observability.logging import (
    clear_secrets,
    close_file_logging,
    configure_logging,
    get_log_path,
    get_logger,
    register_secrets,
)
from stagehand.observability.tracing import (
    bind_run_context,
    generate_run_id,
    get_pipeline_run_id,
    set_pipeline_run_id,
)

__all__ = [
    "bind_run_context",
    "clear_secrets",
    "close_file_logging",
    "configure_logging",
    "generate_run_id",
    "get_log_path",
    "get_logger",
    "get_pipeline_run_id",
    "register_secrets",
    "set_pipeline_run_id",
]
