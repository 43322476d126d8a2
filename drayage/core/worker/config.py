"""Worker configuration dataclass."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from drayage.core.models.resilience import WorkerResilienceConfig


def _default_str_list() -> list[str]:
    return []


@dataclass
class WorkerConfig:
    app_locator: str  # 'package.module:app' or '/path/to/file.py:app'
    queues: list[str]  # which queues to serve, polled in this order
    processes: int = 1
    # Independent claim/execute loops per process
    concurrency: int = 1
    # Tasks claimed per queue per pass; small values keep priorities honest across workers
    claim_batch: int = 1
    imports: list[str] = field(default_factory=_default_str_list)  # handler modules
    sys_path_roots: list[str] = field(default_factory=_default_str_list)
    resilience_config: Optional[WorkerResilienceConfig] = None
    # Run the due-retry / expiry / lock sweeps in this process
    maintenance: bool = True
    # Log level for worker processes (default: INFO)
    loglevel: int = 20  # logging.INFO
