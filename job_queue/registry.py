"""
Processor Registry — queue name → handler, concurrency, active flag.

Owned by a QueueBackend instance; two backends in one process never share
handlers.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

# async (payload, job_id) -> Any
JobHandler = Callable[[dict[str, Any], int], Awaitable[Any]]


@dataclass
class ProcessorConfig:
    handler: JobHandler
    concurrency: int = 1
    active: bool = True


class ProcessorRegistry:

    def __init__(self):
        self._processors: dict[str, ProcessorConfig] = {}
        self._paused: set[str] = set()

    def register(self, queue_name: str, handler: JobHandler, concurrency: int = 1) -> ProcessorConfig:
        """Register or replace the handler for a queue. Pause state survives."""
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        config = ProcessorConfig(
            handler=handler,
            concurrency=concurrency,
            active=queue_name not in self._paused,
        )
        replaced = queue_name in self._processors
        self._processors[queue_name] = config
        logger.info("processor_registered", queue=queue_name,
                    concurrency=concurrency, active=config.active, replaced=replaced)
        return config

    def pause(self, queue_name: str) -> None:
        self._paused.add(queue_name)
        if queue_name in self._processors:
            self._processors[queue_name].active = False

    def resume(self, queue_name: str) -> None:
        self._paused.discard(queue_name)
        if queue_name in self._processors:
            self._processors[queue_name].active = True

    def get(self, queue_name: str) -> Optional[ProcessorConfig]:
        return self._processors.get(queue_name)

    def is_paused(self, queue_name: str) -> bool:
        return queue_name in self._paused

    def active_queues(self) -> list[str]:
        return [name for name, cfg in self._processors.items() if cfg.active]

    @property
    def queue_names(self) -> list[str]:
        return list(self._processors)

    def __contains__(self, queue_name: str) -> bool:
        return queue_name in self._processors
