"""Sources of node component energy (package, core, uncore, DRAM) in mJ."""

from __future__ import annotations

import glob
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

RAPL_ROOT = "/sys/class/powercap/intel-rapl"
XGENE_LABEL_PATTERN = "/sys/class/hwmon/hwmon*/power*_label"
CPU_POWER_LABEL = "CPU power"
ENERGY_FILE = "energy_uj"
NUM_RAPL_EVENTS = 3

DRAM_EVENT = "dram"
CORE_EVENT = "core"
UNCORE_EVENT = "uncore"
PACKAGE_EVENT = "package"

_UJ_TO_MJ = 1000
_CPU_PACKAGE_PATTERN = "/sys/devices/system/cpu/cpu[0-9]*/topology/physical_package_id"


@dataclass(frozen=True)
class NodeComponentsEnergy:
    """Energy per RAPL component in mJ."""

    core: int = 0
    dram: int = 0
    uncore: int = 0
    pkg: int = 0

    def __str__(self) -> str:
        return f"Pkg: {self.pkg} (Core: {self.core}, Uncore: {self.uncore}) DRAM: {self.dram}"


class PowerSource(ABC):
    """A way of reading node component energy."""

    @abstractmethod
    def is_system_collection_supported(self) -> bool:
        """Return True if this source can measure the node."""

    def stop_power(self) -> None:
        """Stop collecting; most sources hold nothing to release."""

    @abstractmethod
    def get_energy_from_dram(self) -> int:
        """Return mJ spent in DRAM."""

    @abstractmethod
    def get_energy_from_core(self) -> int:
        """Return mJ spent in CPU cores."""

    @abstractmethod
    def get_energy_from_uncore(self) -> int:
        """Return mJ spent outside the CPU cores (e.g. integrated GPU)."""

    @abstractmethod
    def get_energy_from_package(self) -> int:
        """Return mJ spent in the CPU package."""

    @abstractmethod
    def get_node_components_energy(self) -> dict[int, NodeComponentsEnergy]:
        """Return component energy per socket."""


class PowerDummy(PowerSource):
    """Fixed values, for tests and functional checks."""

    def __init__(self, supported: bool = False) -> None:
        self.supported = supported

    def is_system_collection_supported(self) -> bool:
        return self.supported

    def get_energy_from_dram(self) -> int:
        return 1

    def get_energy_from_core(self) -> int:
        return 5

    def get_energy_from_uncore(self) -> int:
        return 0

    def get_energy_from_package(self) -> int:
        return 8

    def get_node_components_energy(self) -> dict[int, NodeComponentsEnergy]:
        return {0: NodeComponentsEnergy(pkg=8, core=5, dram=1)}


class PowerEstimate(PowerSource):
    """Energy estimated from elapsed time and per-thread/per-GB wattages."""

    def __init__(
        self,
        cpu_cores: int | None = None,
        dram_in_gb: int = 0,
        per_thread_min_watts: float = 0.0,
        per_thread_max_watts: float = 0.0,
        per_gb_watts: float = 0.0,
    ) -> None:
        self.cpu_cores = cpu_cores if cpu_cores is not None else (os.cpu_count() or 1)
        self.dram_in_gb = dram_in_gb
        self.per_thread_min_watts = per_thread_min_watts
        self.per_thread_max_watts = per_thread_max_watts
        self.per_gb_watts = per_gb_watts
        self._start = time.monotonic()

    def _elapsed(self) -> float:
        return time.monotonic() - self._start

    def is_system_collection_supported(self) -> bool:
        # An estimate means the node cannot measure its components.
        return False

    def stop_power(self) -> None:
        self._start = time.monotonic()

    def get_energy_from_dram(self) -> int:
        seconds = self._elapsed()
        return int(self.dram_in_gb * self.per_gb_watts * seconds) * 1000 // 3600

    def get_energy_from_core(self) -> int:
        seconds = self._elapsed()
        average = (self.per_thread_min_watts + self.per_thread_max_watts) / 2
        return int(self.cpu_cores * seconds * average) * 1000 // 3600

    def get_energy_from_uncore(self) -> int:
        return 0

    def get_energy_from_package(self) -> int:
        return self.get_energy_from_core()

    def get_node_components_energy(self) -> dict[int, NodeComponentsEnergy]:
        core = self.get_energy_from_core()
        dram = self.get_energy_from_dram()
        return {0: NodeComponentsEnergy(core=core, dram=dram, uncore=0, pkg=core)}


class PowerHMC(PowerSource):
    """Hardware management console source; it measures nothing yet."""

    def is_system_collection_supported(self) -> bool:
        return False

    def get_energy_from_dram(self) -> int:
        return 0

    def get_energy_from_core(self) -> int:
        return 0

    def get_energy_from_uncore(self) -> int:
        return 0

    def get_energy_from_package(self) -> int:
        return 0

    def get_node_components_energy(self) -> dict[int, NodeComponentsEnergy]:
        return {}


class ApmXgeneSysfs(PowerSource):
    """Ampere X-Gene hwmon CPU power input, integrated over time."""

    def __init__(self, label_pattern: str = XGENE_LABEL_PATTERN) -> None:
        self.label_pattern = label_pattern
        self.power_input_path = ""
        self._last_read: float | None = None

    def is_system_collection_supported(self) -> bool:
        for label_file in sorted(glob.glob(self.label_pattern)):
            try:
                text = Path(label_file).read_text()
            except OSError:
                continue
            if text.strip() == CPU_POWER_LABEL:
                self.power_input_path = label_file.replace("label", "input", 1)
                return True
        return False

    def get_energy_from_dram(self) -> int:
        return 0

    def get_energy_from_core(self) -> int:
        now = time.monotonic()
        if self._last_read is None:
            self._last_read = now
            return 0
        seconds = now - self._last_read
        self._last_read = now
        power = float(Path(self.power_input_path).read_text().strip())
        # The hwmon value is in uJ/s.
        return int(power * seconds) // _UJ_TO_MJ

    def get_energy_from_uncore(self) -> int:
        return 0

    def get_energy_from_package(self) -> int:
        return 0

    def get_node_components_energy(self) -> dict[int, NodeComponentsEnergy]:
        try:
            core = self.get_energy_from_core()
        except (OSError, ValueError):
            core = 0
        dram = self.get_energy_from_dram()
        return {0: NodeComponentsEnergy(core=core, dram=dram, uncore=0, pkg=core)}


def _count_cpu_packages() -> int:
    package_ids = set()
    for path in glob.glob(_CPU_PACKAGE_PATTERN):
        try:
            package_ids.add(Path(path).read_text().strip())
        except OSError:
            continue
    return len(package_ids)


class PowerSysfs(PowerSource):
    """Intel RAPL counters exposed under the powercap sysfs tree."""

    def __init__(self, root: str | os.PathLike = RAPL_ROOT, num_packages: int | None = None) -> None:
        self.root = Path(root)
        self.num_packages = _count_cpu_packages() if num_packages is None else num_packages
        self.event_paths: dict[str, dict[str, Path]] = {}
        self.detect_event_paths()

    def _package_path(self, package: int) -> Path:
        return self.root / f"intel-rapl:{package}"

    def detect_event_paths(self) -> dict[str, dict[str, Path]]:
        """Map each package name to its event names and their directories."""
        self.event_paths = {}
        for package in range(self.num_packages):
            package_path = self._package_path(package)
            try:
                package_name = (package_path / "name").read_text().strip()
            except OSError:
                continue
            events = {package_name: package_path}
            for event in range(NUM_RAPL_EVENTS):
                event_path = package_path / f"intel-rapl:{package}:{event}"
                try:
                    event_name = (event_path / "name").read_text().strip()
                except OSError:
                    continue
                events[event_name] = event_path
            self.event_paths[package_name] = events
        return self.event_paths

    def has_event(self, event: str) -> bool:
        """Return True if any package exposes an event whose name starts with ``event``."""
        return any(
            name.startswith(event)
            for events in self.event_paths.values()
            for name in events
        )

    def read_event_energy(self, event_name: str) -> dict[str, int]:
        """Return mJ per package name for the event; unreadable counters are skipped."""
        energy: dict[str, int] = {}
        for package_name, events in self.event_paths.items():
            for name, path in events.items():
                if not name.startswith(event_name):
                    continue
                try:
                    value = int((path / ENERGY_FILE).read_text().strip())
                except (OSError, ValueError):
                    continue
                energy[package_name] = value // _UJ_TO_MJ
        return energy

    def _get_energy(self, event: str) -> int:
        if not self.has_event(event):
            raise OSError(f"could not read RAPL energy for {event}")
        return sum(self.read_event_energy(event).values())

    def is_system_collection_supported(self) -> bool:
        try:
            (self._package_path(0) / ENERGY_FILE).read_bytes()
        except OSError:
            return False
        return True

    def get_energy_from_dram(self) -> int:
        return self._get_energy(DRAM_EVENT)

    def get_energy_from_core(self) -> int:
        return self._get_energy(CORE_EVENT)

    def get_energy_from_uncore(self) -> int:
        return self._get_energy(UNCORE_EVENT)

    def get_energy_from_package(self) -> int:
        return self._get_energy(PACKAGE_EVENT)

    def get_node_components_energy(self) -> dict[int, NodeComponentsEnergy]:
        pkg_energies = self.read_event_energy(PACKAGE_EVENT)
        core_energies = self.read_event_energy(CORE_EVENT)
        dram_energies = self.read_event_energy(DRAM_EVENT)
        uncore_energies = self.read_event_energy(UNCORE_EVENT)
        result: dict[int, NodeComponentsEnergy] = {}
        for package_name, pkg_energy in pkg_energies.items():
            try:
                socket = int(package_name.split("-")[-1])
            except ValueError:
                socket = 0
            result[socket] = NodeComponentsEnergy(
                core=core_energies.get(package_name, 0),
                dram=dram_energies.get(package_name, 0),
                uncore=uncore_energies.get(package_name, 0),
                pkg=pkg_energy,
            )
        return result