import sys
from pathlib import Path

import pytest

from kepwatt.components import NodeComponentsEnergy
from kepwatt.msr import (
    MSR_DRAM_ENERGY_STATUS,
    MSR_PKG_ENERGY_STATUS,
    MSR_PP0_ENERGY_STATUS,
    MSR_PP1_ENERGY_STATUS,
    MSR_RAPL_POWER_UNIT,
    PackageInfo,
    PowerMSR,
    RaplMSR,
    decode_energy_status_unit,
    read_cpu_topology,
)


def write_msr(path: Path, offset: int, value: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.write_bytes(b"")
    with open(path, "r+b") as handle:
        handle.seek(offset)
        handle.write(value.to_bytes(8, sys.byteorder))


def make_device(tmp_path: Path, cpu: int, unit_field: int, counters: dict[int, int]) -> None:
    path = tmp_path / str(cpu) / "msr"
    write_msr(path, MSR_RAPL_POWER_UNIT, unit_field << 8)
    for offset, value in counters.items():
        write_msr(path, offset, value)


def template(tmp_path: Path) -> str:
    return str(tmp_path / "%d" / "msr")


def test_decode_energy_status_unit():
    assert decode_energy_status_unit(0) == 1.0
    assert decode_energy_status_unit(0x0E00) == 0.5**14
    # Only bits 8..12 matter.
    assert decode_energy_status_unit(0x1F00 | 0xFF | 0x10000) == decode_energy_status_unit(0x1F00)


def test_read_cpu_topology(tmp_path):
    for cpu, package in [(0, 0), (1, 0), (2, 1)]:
        topo = tmp_path / f"cpu{cpu}" / "topology"
        topo.mkdir(parents=True)
        (topo / "physical_package_id").write_text(f"{package}\n")
    (tmp_path / "cpufreq").mkdir()
    assert read_cpu_topology(tmp_path) == [PackageInfo(0, (0, 1)), PackageInfo(1, (2,))]


def test_read_cpu_topology_missing_root(tmp_path):
    assert read_cpu_topology(tmp_path / "absent") == []


def test_open_all_without_cpus_fails(tmp_path):
    rapl = RaplMSR(packages=[], msr_path_template=template(tmp_path))
    with pytest.raises(OSError):
        rapl.open_all()


def test_read_components(tmp_path):
    make_device(
        tmp_path,
        0,
        1,
        {
            MSR_PKG_ENERGY_STATUS: 10,
            MSR_PP0_ENERGY_STATUS: 6,
            MSR_PP1_ENERGY_STATUS: 2,
            MSR_DRAM_ENERGY_STATUS: 4,
        },
    )
    rapl = RaplMSR(packages=[PackageInfo(0, (0,))], msr_path_template=template(tmp_path))
    rapl.init_units()
    assert rapl.energy_status_units == [0.5]
    assert rapl.read_pkg_power(0) == 5000
    assert rapl.read_core_power(0) == 3000
    assert rapl.read_uncore_power(0) == 1000
    assert rapl.read_dram_power(0) == 2000
    assert rapl.get_rapl_energy() == {
        0: NodeComponentsEnergy(core=3000, dram=2000, uncore=1000, pkg=5000)
    }
    rapl.close_all()


def test_power_msr_sums_packages(tmp_path):
    make_device(tmp_path, 0, 0, {MSR_PKG_ENERGY_STATUS: 3})
    make_device(tmp_path, 2, 0, {MSR_PKG_ENERGY_STATUS: 4})
    packages = [PackageInfo(0, (0, 1)), PackageInfo(1, (2,))]
    rapl = RaplMSR(packages=packages, msr_path_template=template(tmp_path))
    # cpu1 has no device file, so opening everything fails.
    assert PowerMSR(rapl).is_system_collection_supported() is False
    make_device(tmp_path, 1, 0, {})
    power = PowerMSR(rapl)
    assert power.is_system_collection_supported() is True
    assert power.get_energy_from_package() == rapl.read_pkg_power(0) + rapl.read_pkg_power(1)
    assert set(power.get_node_components_energy()) == {0, 1}
    power.stop_power()
    assert rapl.initialized is False


def test_read_msr_errors(tmp_path):
    make_device(tmp_path, 0, 0, {})
    rapl = RaplMSR(
        packages=[PackageInfo(0, (0,)), PackageInfo(1, ())],
        msr_path_template=template(tmp_path),
    )
    rapl.open_all()
    with pytest.raises(ValueError):
        rapl.read_msr(5, MSR_PKG_ENERGY_STATUS)
    with pytest.raises(ValueError):
        rapl.read_msr(1, MSR_PKG_ENERGY_STATUS)
    # Offset beyond the end of the file yields a short read.
    with pytest.raises(OSError, match="wrong bytes"):
        rapl.read_msr(0, 0x10000)
    rapl.close_all()
    with pytest.raises(OSError):
        rapl.read_msr(0, MSR_RAPL_POWER_UNIT)


def test_read_all_power_propagates_failure(tmp_path):
    rapl = RaplMSR(packages=[PackageInfo(0, (0,))], msr_path_template=template(tmp_path))

    def failing(package_id):
        raise OSError("boom")

    with pytest.raises(OSError):
        rapl.read_all_power(failing)
    assert rapl.read_all_power(lambda package_id: 7) == 7