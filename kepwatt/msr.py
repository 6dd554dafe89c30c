"""Intel RAPL energy counters read through the per-CPU MSR device files."""

from __future__ import annotations

import glob
import os
import sys
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from kepwatt.components import NodeComponentsEnergy, PowerSource

MSR_PATH_TEMPLATE = "/dev/cpu/%d/msr"
CPU_SYSFS_ROOT = "/sys/devices/system/cpu"

MSR_RAPL_POWER_UNIT = 0x606
MSR_PKG_ENERGY_STATUS = 0x611
MSR_DRAM_ENERGY_STATUS = 0x619
MSR_PP0_ENERGY_STATUS = 0x639
MSR_PP1_ENERGY_STATUS = 0x641

_MSR_SIZE = 8


@dataclass(frozen=True)
class PackageInfo:
    """A CPU package (socket) and the logical CPUs it holds."""

    package_id: int
    cpus: tuple[int, ...] = ()


def read_cpu_topology(sysfs_root: str | os.PathLike = CPU_SYSFS_ROOT) -> list[PackageInfo]:
    """Group logical CPUs by physical package, ordered by package id."""
    grouped: dict[int, list[int]] = defaultdict(list)
    pattern = os.path.join(str(sysfs_root), "cpu[0-9]*", "topology", "physical_package_id")
    for path in glob.glob(pattern):
        cpu_dir = Path(path).parent.parent.name
        try:
            cpu = int(cpu_dir[len("cpu"):])
            package = int(Path(path).read_text().strip())
        except (OSError, ValueError):
            continue
        grouped[package].append(cpu)
    return [PackageInfo(pkg, tuple(sorted(cpus))) for pkg, cpus in sorted(grouped.items())]


def decode_energy_status_unit(value: int) -> float:
    """Return the energy status unit (in J) encoded in MSR_RAPL_POWER_UNIT."""
    return 0.5 ** ((value >> 8) & 0x1F)


class RaplMSR:
    """Reads RAPL energy status registers for each CPU package."""

    def __init__(
        self,
        packages: list[PackageInfo] | None = None,
        msr_path_template: str = MSR_PATH_TEMPLATE,
    ) -> None:
        self.packages = read_cpu_topology() if packages is None else list(packages)
        self.msr_path_template = msr_path_template
        self.energy_status_units: list[float] = []
        self.initialized = False
        self._fds: dict[int, int] = {}

    @property
    def num_cores(self) -> int:
        return sum(len(package.cpus) for package in self.packages)

    def open_all(self) -> None:
        """Open the MSR device of every logical CPU."""
        if self.num_cores == 0:
            raise OSError("failed to initialize cpu info")
        for package in self.packages:
            for cpu in package.cpus:
                if cpu in self._fds:
                    continue
                path = self.msr_path_template.replace("%d", str(cpu))
                try:
                    self._fds[cpu] = os.open(path, os.O_RDONLY)
                except OSError as exc:
                    raise OSError(f"failed to open path {path}: {exc}") from exc

    def close_all(self) -> None:
        """Close every opened MSR device."""
        for fd in self._fds.values():
            try:
                os.close(fd)
            except OSError:
                pass
        self._fds.clear()
        self.initialized = False

    def read_msr(self, package_id: int, msr: int) -> int:
        """Read a 64-bit register from the first logical CPU of a package."""
        if package_id >= len(self.packages):
            raise ValueError(
                f"package Id {package_id} greater than max package id {len(self.packages) - 1}"
            )
        cpus = self.packages[package_id].cpus
        if not cpus:
            raise ValueError(f"no cpu core/hardware thread in package {package_id}")
        # Cores in one package share the same RAPL register values.
        fd = self._fds.get(cpus[0])
        if fd is None:
            raise OSError(f"msr device of cpu {cpus[0]} is not open")
        data = os.pread(fd, _MSR_SIZE, msr)
        if len(data) != _MSR_SIZE:
            raise OSError(f"wrong bytes: {len(data)}")
        return int.from_bytes(data, sys.byteorder)

    def init_units(self) -> None:
        """Open the devices and read each package's energy status unit."""
        if self.initialized:
            return
        self.open_all()
        units = []
        for package_id in range(len(self.packages)):
            try:
                result = self.read_msr(package_id, MSR_RAPL_POWER_UNIT)
            except (OSError, ValueError) as exc:
                raise OSError(f"failed to read power unit: {exc}") from exc
            units.append(decode_energy_status_unit(result))
        self.energy_status_units = units
        self.initialized = True

    def _read_energy(self, package_id: int, msr: int, label: str) -> int:
        try:
            result = self.read_msr(package_id, msr)
        except (OSError, ValueError) as exc:
            raise OSError(f"failed to read {label} energy: {exc}") from exc
        return int(self.energy_status_units[package_id] * result * 1000)

    def read_pkg_power(self, package_id: int) -> int:
        """Return the package energy counter in mJ."""
        return self._read_energy(package_id, MSR_PKG_ENERGY_STATUS, "pkg")

    def read_core_power(self, package_id: int) -> int:
        """Return the core (PP0) energy counter in mJ."""
        return self._read_energy(package_id, MSR_PP0_ENERGY_STATUS, "pp0")

    def read_uncore_power(self, package_id: int) -> int:
        """Return the uncore (PP1) energy counter in mJ."""
        return self._read_energy(package_id, MSR_PP1_ENERGY_STATUS, "pp1")

    def read_dram_power(self, package_id: int) -> int:
        """Return the DRAM energy counter in mJ."""
        return self._read_energy(package_id, MSR_DRAM_ENERGY_STATUS, "dram")

    def read_all_power(self, reader: Callable[[int], int]) -> int:
        """Sum a reader over all packages; the first failure propagates."""
        return sum(reader(package_id) for package_id in range(len(self.packages)))

    def get_rapl_energy(self) -> dict[int, NodeComponentsEnergy]:
        """Return component energy per package; unreadable values count as 0."""

        def safe(reader: Callable[[int], int], package_id: int) -> int:
            try:
                return reader(package_id)
            except (OSError, ValueError, IndexError):
                return 0

        return {
            package_id: NodeComponentsEnergy(
                core=safe(self.read_core_power, package_id),
                dram=safe(self.read_dram_power, package_id),
                uncore=safe(self.read_uncore_power, package_id),
                pkg=safe(self.read_pkg_power, package_id),
            )
            for package_id in range(len(self.packages))
        }


class PowerMSR(PowerSource):
    """Power source backed by RAPL MSR registers."""

    def __init__(self, rapl: RaplMSR | None = None) -> None:
        self.rapl = RaplMSR() if rapl is None else rapl

    def is_system_collection_supported(self) -> bool:
        try:
            self.rapl.init_units()
        except (OSError, ValueError):
            return False
        return True

    def stop_power(self) -> None:
        self.rapl.close_all()

    def get_energy_from_dram(self) -> int:
        return self.rapl.read_all_power(self.rapl.read_dram_power)

    def get_energy_from_core(self) -> int:
        return self.rapl.read_all_power(self.rapl.read_core_power)

    def get_energy_from_uncore(self) -> int:
        return self.rapl.read_all_power(self.rapl.read_uncore_power)

    def get_energy_from_package(self) -> int:
        return self.rapl.read_all_power(self.rapl.read_pkg_power)

    def get_node_components_energy(self) -> dict[int, NodeComponentsEnergy]:
        return self.rapl.get_rapl_energy()