"""Capacity planning: hardware profile + pause flags -> per-class job limits."""

import logging
import threading
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict

from .hardware import HardwareProfile
from .models import HardwareConfig, WorkerConfig
from .queue.models import ResourceClass

logger = logging.getLogger(__name__)


class PauseFlags(BaseModel):
    cpu_paused: bool = False
    gpu_paused: bool = False

    def is_paused(self, resource_class: ResourceClass) -> bool:
        return self.cpu_paused if ResourceClass(resource_class) == ResourceClass.CPU else self.gpu_paused


class CapacityBudget(BaseModel):
    """Maximum concurrently admissible jobs per resource class."""

    model_config = ConfigDict(frozen=True)

    cpu: int = 0
    gpu: int = 0
    cpu_paused: bool = False
    gpu_paused: bool = False

    def limit_for(self, resource_class: ResourceClass) -> int:
        return self.cpu if ResourceClass(resource_class) == ResourceClass.CPU else self.gpu


def _cap(value: int, cap: Optional[int]) -> int:
    return value if cap is None else min(value, cap)


def plan(
    profile: HardwareProfile,
    pause_flags: Optional[PauseFlags] = None,
    worker_config: Optional[WorkerConfig] = None,
    hardware_config: Optional[HardwareConfig] = None,
) -> CapacityBudget:
    """Derive the capacity budget.

    Policy:
    - CPU: max(1, cores - 1), leaving headroom for the host process
    - GPU: 1 per accelerator; gpu_jobs_per_accelerator (bounded by the
      accelerator's session limit) only when the benchmark showed it
      sustains concurrent sessions
    - Config caps (workers.cpu_max / workers.gpu_max) apply after policy
    - A paused class is 0 regardless of hardware
    """
    pause_flags = pause_flags or PauseFlags()
    worker_config = worker_config or WorkerConfig()
    hardware_config = hardware_config or HardwareConfig()

    cpu = _cap(max(1, profile.cpu_cores - 1), worker_config.cpu_max)

    gpu = 0
    if hardware_config.enable_gpu:
        for accel in profile.accelerators:
            if accel.sustains_concurrency:
                gpu += max(1, min(hardware_config.gpu_jobs_per_accelerator, accel.max_sessions))
            else:
                gpu += 1
    gpu = _cap(gpu, worker_config.gpu_max)

    return CapacityBudget(
        cpu=0 if pause_flags.cpu_paused else cpu,
        gpu=0 if pause_flags.gpu_paused else gpu,
        cpu_paused=pause_flags.cpu_paused,
        gpu_paused=pause_flags.gpu_paused,
    )


BudgetListener = Callable[[CapacityBudget], None]


class CapacityPlanner:
    """Holds pause flags and the current profile; recomputes the budget on change.

    pause()/resume() are idempotent. Listeners are called only when the
    budget actually changes, outside the planner lock.
    """

    def __init__(
        self,
        profile: HardwareProfile,
        worker_config: Optional[WorkerConfig] = None,
        hardware_config: Optional[HardwareConfig] = None,
    ):
        self.worker_config = worker_config or WorkerConfig()
        self.hardware_config = hardware_config or HardwareConfig()
        self._lock = threading.Lock()
        self._profile = profile
        self._flags = PauseFlags()
        self._budget = plan(profile, self._flags, self.worker_config, self.hardware_config)
        self._listeners: List[BudgetListener] = []

    def add_listener(self, listener: BudgetListener) -> None:
        self._listeners.append(listener)

    @property
    def budget(self) -> CapacityBudget:
        with self._lock:
            return self._budget

    @property
    def profile(self) -> HardwareProfile:
        with self._lock:
            return self._profile

    def is_paused(self, resource_class: ResourceClass) -> bool:
        with self._lock:
            return self._flags.is_paused(resource_class)

    def set_profile(self, profile: HardwareProfile) -> CapacityBudget:
        with self._lock:
            self._profile = profile
        return self._recompute()

    def pause(self, resource_class: ResourceClass) -> CapacityBudget:
        return self._set_paused(ResourceClass(resource_class), True)

    def resume(self, resource_class: ResourceClass) -> CapacityBudget:
        return self._set_paused(ResourceClass(resource_class), False)

    def _set_paused(self, resource_class: ResourceClass, paused: bool) -> CapacityBudget:
        field = "cpu_paused" if resource_class == ResourceClass.CPU else "gpu_paused"
        with self._lock:
            self._flags = self._flags.model_copy(update={field: paused})
        logger.info("%s %s admissions", "Paused" if paused else "Resumed", resource_class.value)
        return self._recompute()

    def _recompute(self) -> CapacityBudget:
        with self._lock:
            budget = plan(self._profile, self._flags, self.worker_config, self.hardware_config)
            changed = budget != self._budget
            self._budget = budget

        if changed:
            logger.info("Capacity budget: cpu=%d gpu=%d", budget.cpu, budget.gpu)
            for listener in list(self._listeners):
                listener(budget)
        return budget
