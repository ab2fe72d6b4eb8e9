"""
refgate project configuration.

Runtime settings stored in .refgate/config.json. The workflow itself
(phases and criterion sets) lives in .refgate/workflow.yaml, see
refgate.workflow.

The state directory defaults to <project>/.refgate and can be moved with
the REFGATE_STATE_DIR environment variable.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import os

from refgate.reports import CollectorSpec

STATE_DIR_NAME = ".refgate"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def get_state_dir(project_path: str) -> Path:
    """State directory for a project, respecting REFGATE_STATE_DIR."""
    override = os.environ.get("REFGATE_STATE_DIR")
    if override:
        return Path(override)
    return Path(project_path) / STATE_DIR_NAME


@dataclass
class ProjectConfig:
    """Project-level runtime settings."""
    poll_interval: float = 5.0      # seconds between gate polls while waiting
    gate_timeout: float = 0.0       # default wait for enter-phase (0 = don't wait)
    health_interval: float = 30.0   # seconds between background health checks
    operation_timeout: int = 1800   # shell operations
    log_level: str = "WARNING"
    collectors: List[CollectorSpec] = field(default_factory=list)
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poll_interval": self.poll_interval,
            "gate_timeout": self.gate_timeout,
            "health_interval": self.health_interval,
            "operation_timeout": self.operation_timeout,
            "log_level": self.log_level,
            "collectors": [c.to_dict() for c in self.collectors],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectConfig":
        return cls(
            poll_interval=data.get("poll_interval", 5.0),
            gate_timeout=data.get("gate_timeout", 0.0),
            health_interval=data.get("health_interval", 30.0),
            operation_timeout=data.get("operation_timeout", 1800),
            log_level=data.get("log_level", "WARNING"),
            collectors=[CollectorSpec.from_dict(c) for c in data.get("collectors", [])],
            created_at=data.get("created_at"),
        )

    def validate(self) -> List[str]:
        """Validate the configuration."""
        errors = []
        if self.poll_interval <= 0:
            errors.append("poll_interval must be positive")
        if self.gate_timeout < 0:
            errors.append("gate_timeout must not be negative")
        if self.health_interval <= 0:
            errors.append("health_interval must be positive")
        if self.operation_timeout <= 0:
            errors.append("operation_timeout must be positive")
        if self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
        for i, collector in enumerate(self.collectors):
            if not collector.kind:
                errors.append(f"Collector {i}: kind is required")
            if not collector.command:
                errors.append(f"Collector {i}: command is required")
        return errors

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level.upper(), logging.WARNING)


def get_config_path(project_path: str) -> Path:
    """Get the config file path for a project."""
    return get_state_dir(project_path) / "config.json"


def load_config(project_path: str) -> ProjectConfig:
    """Load project configuration. Returns defaults if not found."""
    config_file = get_config_path(project_path)

    if not config_file.exists():
        return ProjectConfig()

    try:
        with open(config_file) as f:
            data = json.load(f)
        return ProjectConfig.from_dict(data)
    except (json.JSONDecodeError, KeyError, TypeError):
        logging.getLogger(__name__).warning("Unreadable %s, using defaults", config_file)
        return ProjectConfig()


def save_config(project_path: str, config: ProjectConfig) -> Path:
    """Save project configuration."""
    config_file = get_config_path(project_path)
    config_file.parent.mkdir(parents=True, exist_ok=True)

    with open(config_file, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
    return config_file


def init_project_config(project_path: str) -> ProjectConfig:
    """Create .refgate/config.json with defaults if it does not exist yet."""
    config_file = get_config_path(project_path)
    if config_file.exists():
        return load_config(project_path)
    config = ProjectConfig(created_at=datetime.now().isoformat())
    save_config(project_path, config)
    return config


def add_collector(project_path: str, kind: str, command: str, timeout: int = 300) -> ProjectConfig:
    """Register (or replace) the collector for a report kind."""
    config = load_config(project_path)
    config.collectors = [c for c in config.collectors if c.kind != kind]
    config.collectors.append(CollectorSpec(kind=kind, command=command, timeout=timeout))
    save_config(project_path, config)
    return config
