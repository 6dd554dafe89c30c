"""GPU accelerator metrics: per-process utilization and per-device energy."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_DEFAULT_INIT_ERROR_MESSAGE = "could not start accelerator collector"


class AcceleratorError(Exception):
    """Raised when the GPU collector cannot be started or queried."""


@dataclass(frozen=True)
class ProcessUtilizationSample:
    """GPU utilization of one process, in percent per engine."""

    pid: int
    time_stamp: int
    sm_util: int
    mem_util: int
    enc_util: int
    dec_util: int


class _Source(Protocol):
    def init(self) -> None: ...

    def shutdown(self) -> bool: ...

    def get_gpus(self) -> list[Any]: ...

    def get_gpu_energy_per_gpu(self) -> list[int]: ...

    def get_process_resource_utilization_per_device(
        self, device: Any, since: float | timedelta
    ) -> dict[int, ProcessUtilizationSample]: ...

    def is_gpu_collection_supported(self) -> bool: ...

    def set_gpu_collection_supported(self, supported: bool) -> None: ...


class GPUDummy:
    """Stand-in GPU source used when no GPU management library is available."""

    def __init__(self) -> None:
        self.collection_supported = False

    def init(self) -> None:
        """Start the collector; the dummy never supports collection after init."""
        self.collection_supported = False

    def shutdown(self) -> bool:
        return True

    def get_gpus(self) -> list[Any]:
        """Return a single placeholder device handle."""
        return [0]

    def get_gpu_energy_per_gpu(self) -> list[int]:
        return []

    def get_process_resource_utilization_per_device(
        self, device: Any, since: float | timedelta
    ) -> dict[int, ProcessUtilizationSample]:
        """Return one fixed sample for pid 0."""
        return {
            0: ProcessUtilizationSample(
                pid=0,
                time_stamp=time.time_ns(),
                sm_util=10,
                mem_util=10,
                enc_util=10,
                dec_util=10,
            )
        }

    def is_gpu_collection_supported(self) -> bool:
        return self.collection_supported

    def set_gpu_collection_supported(self, supported: bool) -> None:
        self.collection_supported = supported


class Accelerator:
    """Front end over a GPU source that only answers when GPU support is enabled."""

    def __init__(
        self,
        impl: _Source | None = None,
        enabled: bool = False,
        init_error: Exception | None = None,
    ) -> None:
        self.impl = impl
        self.enabled = enabled
        if impl is None and init_error is None:
            init_error = AcceleratorError(_DEFAULT_INIT_ERROR_MESSAGE)
        self.init_error = init_error

    @property
    def _active(self) -> bool:
        return self.impl is not None and self.enabled

    def init(self) -> None:
        """Raise the error met when the collector was set up, if any."""
        if self.init_error is not None:
            raise self.init_error

    def shutdown(self) -> bool:
        if self._active:
            return self.impl.shutdown()
        return True

    def get_gpus(self) -> list[Any]:
        if self._active:
            return self.impl.get_gpus()
        return []

    def get_gpu_energy_per_gpu(self) -> list[int]:
        if self._active:
            return self.impl.get_gpu_energy_per_gpu()
        return []

    def get_process_resource_utilization_per_device(
        self, device: Any, since: float | timedelta
    ) -> dict[int, ProcessUtilizationSample]:
        """Collect per-process utilization, restarting the source once if it stopped responding."""
        if not self._active:
            if self.init_error is not None:
                raise self.init_error
            return {}
        try:
            return self.impl.get_process_resource_utilization_per_device(device, since)
        except (AcceleratorError, OSError) as exc:
            logger.info("Failed to collect GPU metrics, trying to initialize again: %s", exc)
            try:
                self.impl.init()
            except (AcceleratorError, OSError) as init_exc:
                logger.info("Failed to init GPU collector: %s", init_exc)
                raise AcceleratorError(str(init_exc)) from init_exc
        return {}

    def is_gpu_collection_supported(self) -> bool:
        if self._active:
            return self.impl.is_gpu_collection_supported()
        return False

    def set_gpu_collection_supported(self, supported: bool) -> None:
        if self._active:
            self.impl.set_gpu_collection_supported(supported)


def create_accelerator(enabled: bool = False) -> Accelerator:
    """Build an accelerator backed by the dummy GPU source."""
    impl = GPUDummy()
    init_error: Exception | None = None
    try:
        impl.init()
    except (AcceleratorError, OSError) as exc:
        init_error = exc
    return Accelerator(impl, enabled, init_error)