"""
gacp_config -- single public entrypoint for workflow configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains the
    workflow configuration.  It loads the YAML set, validates it, compiles
    it into a frozen ``WorkflowConfig`` and caches the result for the life
    of the process.

Architecture position:
    Configuration -- YAML-driven, validated before use.  Sits above
    ``gacp_kernel`` and below ``gacp_services``.  The kernel and the
    engines never import from ``gacp_config``.

Invariants enforced:
    - A configuration with validation errors is never compiled.
    - Init-once: repeated calls for the same set return the same object.

Failure modes:
    - ``FileNotFoundError`` -- no YAML set with the requested id.
    - ``WorkflowConfigError`` -- validation failed; carries every error.

Audit relevance:
    Each first load emits a ``GACP_CONFIG_TRACE`` log entry with the
    config id, version, checksum and table size.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from gacp_config.compiler import WorkflowConfig, compile_workflow_config
from gacp_config.loader import load_configuration_set
from gacp_config.validator import ConfigValidationResult, validate_configuration
from gacp_kernel.exceptions import WorkflowConfigError

__all__ = [
    "ConfigValidationResult",
    "WorkflowConfig",
    "clear_config_cache",
    "get_active_config",
    "load_workflow_config",
]

_logger = logging.getLogger("gacp.config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
DEFAULT_CONFIG_ID = "gacp_default"

_cache: dict[Path, WorkflowConfig] = {}
_cache_lock = threading.Lock()


def load_workflow_config(path: Path) -> WorkflowConfig:
    """Load, validate and compile one YAML set without caching."""
    config_set = load_configuration_set(path)

    validation = validate_configuration(config_set)
    for warning in validation.warnings:
        _logger.warning("config_validation_warning", extra={"detail": warning})
    if not validation.is_valid:
        raise WorkflowConfigError(config_set.config_id, validation.errors)

    config = compile_workflow_config(config_set)
    assert config.checksum == config_set.checksum, "checksum drift during compilation"

    _logger.info(
        "GACP_CONFIG_TRACE",
        extra={
            "trace_type": "GACP_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.config_version,
            "checksum": config.checksum,
            "transition_count": len(config.table),
            "alternative_flow_count": len(config.alternative_flows),
        },
    )
    return config


def get_active_config(
    config_id: str = DEFAULT_CONFIG_ID,
    config_dir: Path | None = None,
) -> WorkflowConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_id: Name of the YAML set (file stem) to load.
        config_dir: Override for the sets directory; defaults to
            ``gacp_config/sets/``.

    Raises:
        FileNotFoundError: No such configuration set.
        WorkflowConfigError: The set failed validation.
    """
    path = ((config_dir or _DEFAULT_CONFIG_DIR) / f"{config_id}.yaml").resolve()
    with _cache_lock:
        cached = _cache.get(path)
        if cached is not None:
            return cached
        if not path.is_file():
            raise FileNotFoundError(f"Configuration set not found: {path}")
        config = load_workflow_config(path)
        _cache[path] = config
        return config


def clear_config_cache() -> None:
    """Drop cached configurations. FOR TESTING ONLY."""
    with _cache_lock:
        _cache.clear()
