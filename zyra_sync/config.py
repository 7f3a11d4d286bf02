"""
Loop Sync Configuration

Timing constants, endpoint paths and completion policy for the loop session.

Values resolve in this order:
1. Module defaults below
2. Environment variables (ZYRA_*)
3. YAML file passed to SyncConfig.from_yaml()
"""

import logging
import os
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("sync_config")

# -----------------------------------------------------------------------------
# Defaults (milliseconds unless noted)
# -----------------------------------------------------------------------------
DEFAULT_BASE_URL = "http://localhost:5000"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 15.0

DETECTION_POLL_ACTIVE_MS = 1000
DETECTION_POLL_IDLE_MS = 5000
STATS_POLL_MS = 5000
ACTIVITY_POLL_ACTIVE_MS = 3000
ACTIVITY_POLL_IDLE_MS = 15000
EXECUTION_POLL_MS = 800
READINESS_POLL_MS = 30000

LIFECYCLE_DWELL_MS = 3000
LIFECYCLE_RESET_DELAY_MS = 2000

FAILSAFE_RUNNING_TIMEOUT_MS = 30000
FAILSAFE_APPROVAL_TIMEOUT_MS = 120000
DETECTION_TIMEOUT_MS = 10000

STAGE_AUTO_ADVANCE_MS = 2500
NARRATION_ROTATE_MS = 3000

STREAM_RECONNECT_DELAY_MS = 3000
MAX_NOTICE_HISTORY = 50


class CompletionPolicy(str, Enum):
    """
    What the local lifecycle does after reaching COMPLETE.

    HOLD: stay in COMPLETE until an external reset (autopilot variant).
    AUTO_RESET: reset to IDLE after a short delay and request a refetch.
    """
    HOLD = "hold"
    AUTO_RESET = "auto_reset"


@dataclass
class EndpointPaths:
    """Backend endpoint paths consumed by the client."""
    store_readiness: str = "/api/store-readiness"
    detection_status: str = "/api/zyra/detection-status"
    live_stats: str = "/api/zyra/live-stats"
    activity_feed: str = "/api/revenue-loop/activity-feed"
    execution_activities: str = "/api/zyra/execution-activities"
    detect: str = "/api/zyra/detect"
    approve_opportunity: str = "/api/revenue-opportunities/{action_id}/approve"
    execute_foundational: str = "/api/zyra/execute-foundational"
    activity_stream: str = "/api/zyra/activity-stream"


@dataclass
class SyncConfig:
    """Complete configuration for a LoopSession."""
    base_url: str = DEFAULT_BASE_URL
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    detection_poll_active_ms: int = DETECTION_POLL_ACTIVE_MS
    detection_poll_idle_ms: int = DETECTION_POLL_IDLE_MS
    stats_poll_ms: int = STATS_POLL_MS
    activity_poll_active_ms: int = ACTIVITY_POLL_ACTIVE_MS
    activity_poll_idle_ms: int = ACTIVITY_POLL_IDLE_MS
    execution_poll_ms: int = EXECUTION_POLL_MS
    readiness_poll_ms: int = READINESS_POLL_MS

    lifecycle_dwell_ms: int = LIFECYCLE_DWELL_MS
    lifecycle_reset_delay_ms: int = LIFECYCLE_RESET_DELAY_MS
    completion_policy: CompletionPolicy = CompletionPolicy.AUTO_RESET

    failsafe_running_timeout_ms: int = FAILSAFE_RUNNING_TIMEOUT_MS
    failsafe_approval_timeout_ms: int = FAILSAFE_APPROVAL_TIMEOUT_MS
    detection_timeout_ms: int = DETECTION_TIMEOUT_MS

    stage_auto_advance_ms: int = STAGE_AUTO_ADVANCE_MS
    narration_rotate_ms: int = NARRATION_ROTATE_MS

    stream_enabled: bool = True
    stream_reconnect_delay_ms: int = STREAM_RECONNECT_DELAY_MS
    max_notice_history: int = MAX_NOTICE_HISTORY

    endpoints: EndpointPaths = field(default_factory=EndpointPaths)

    def __post_init__(self):
        if isinstance(self.completion_policy, str):
            self.completion_policy = CompletionPolicy(self.completion_policy)
        if isinstance(self.endpoints, dict):
            self.endpoints = EndpointPaths(**self.endpoints)
        for f in fields(self):
            if f.name.endswith("_ms"):
                value = getattr(self, f.name)
                if not isinstance(value, int) or value <= 0:
                    raise ValueError(f"{f.name} must be a positive integer, got {value!r}")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["completion_policy"] = self.completion_policy.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**data)

    @classmethod
    def from_env(cls, base: Optional["SyncConfig"] = None) -> "SyncConfig":
        """Overlay ZYRA_* environment variables on top of `base` (or defaults)."""
        data = (base or cls()).to_dict()
        base_url = os.getenv("ZYRA_BASE_URL")
        if base_url:
            data["base_url"] = base_url
        policy = os.getenv("ZYRA_COMPLETION_POLICY")
        if policy:
            data["completion_policy"] = policy
        timeout = os.getenv("ZYRA_REQUEST_TIMEOUT_SECONDS")
        if timeout:
            data["request_timeout_seconds"] = float(timeout)
        stream = os.getenv("ZYRA_STREAM_ENABLED")
        if stream:
            data["stream_enabled"] = stream.lower() in ("1", "true", "yes")
        for name in list(data):
            if name.endswith("_ms"):
                raw = os.getenv(f"ZYRA_{name.upper()}")
                if raw:
                    data[name] = int(raw)
        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: Path) -> "SyncConfig":
        """Load a YAML config file. Missing keys keep their defaults."""
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        section = loaded.get("zyra_sync", loaded)
        logger.info(f"Loaded sync config from {path}")
        return cls.from_dict(section)


def load_config(path: Optional[Path] = None) -> SyncConfig:
    """YAML file (if given or named by ZYRA_CONFIG) overlaid with environment."""
    config_path = path or (Path(os.environ["ZYRA_CONFIG"]) if os.getenv("ZYRA_CONFIG") else None)
    base = SyncConfig.from_yaml(config_path) if config_path else None
    return SyncConfig.from_env(base)
