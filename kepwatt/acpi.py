"""Platform power from ACPI/hwmon power meters, accumulated into energy."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

FREQ_PATH_DIR = "/sys/devices/system/cpu/cpufreq/"
HWMON_POWER_PATH = "/sys/class/hwmon/hwmon2/device/"
ACPI_POWER_PATH = "/sys/devices/LNXSYSTM:00"
ACPI_POWER_FILE_PREFIX = "power"
ACPI_POWER_FILE_SUFFIX = "_average"
POLLING_INTERVAL = 3.0
SENSOR_ID_PREFIX = "energy"

_SKIPPED_DIR_PARTS = ("INTL", "PNP", "input", "device:", "wakeup")


def _skip_dir(name: str) -> bool:
    return name == "power" or any(part in name for part in _SKIPPED_DIR_PARTS)


def find_acpi_power_path(root: str | os.PathLike = ACPI_POWER_PATH) -> str:
    """Return the directory (with trailing separator) of the last ``*_average`` file, or ""."""
    found = ""

    def walk(directory: str) -> None:
        nonlocal found
        with os.scandir(directory) as entries:
            ordered = sorted(entries, key=lambda entry: entry.name)
        for entry in ordered:
            if entry.is_dir(follow_symlinks=False):
                if not _skip_dir(entry.name):
                    walk(entry.path)
            elif ACPI_POWER_FILE_SUFFIX in entry.name:
                found = directory + os.sep

    try:
        walk(os.fspath(root))
    except OSError as exc:
        logger.debug("Could not find any ACPI power meter path: %s", exc)
        return ""
    return found


def read_cpu_core_frequency(freq_dir: str | os.PathLike = FREQ_PATH_DIR) -> dict[int, int]:
    """Return the current frequency of each cpufreq policy; unparsable values read as 0."""
    try:
        count = len(os.listdir(freq_dir))
    except OSError as exc:
        logger.warning("%s", exc)
        return {}
    frequencies: dict[int, int] = {}
    for policy in range(count):
        path = Path(freq_dir) / f"policy{policy}" / "scaling_cur_freq"
        try:
            text = path.read_text()
        except OSError:
            continue
        try:
            frequencies[policy] = int(text.strip())
        except ValueError:
            frequencies[policy] = 0
    return frequencies


def read_power_from_sensor(power_path: str, num_cpus: int) -> dict[str, float]:
    """Read ``power<N>_average`` files (uW) and return mW per sensor.

    Reading stops at the first missing file; unparsable content raises ValueError.
    """
    power: dict[str, float] = {}
    for index in range(1, num_cpus + 1):
        path = f"{power_path}{ACPI_POWER_FILE_PREFIX}{index}{ACPI_POWER_FILE_SUFFIX}"
        try:
            text = Path(path).read_text()
        except OSError:
            break
        value = int(text.strip())
        if value < 0:
            raise ValueError(f"negative power reading in {path}")
        power[f"{SENSOR_ID_PREFIX}{index}"] = value / 1000
    return power


class ACPI:
    """Polls ACPI power meters and CPU frequencies in a background thread."""

    def __init__(
        self,
        hwmon_path: str = HWMON_POWER_PATH,
        acpi_root: str | os.PathLike = ACPI_POWER_PATH,
        freq_dir: str | os.PathLike = FREQ_PATH_DIR,
        polling_interval: float = POLLING_INTERVAL,
        num_cpus: int | None = None,
    ) -> None:
        self.freq_dir = freq_dir
        self.polling_interval = polling_interval
        self.num_cpus = num_cpus if num_cpus is not None else (os.cpu_count() or 1)
        self._system_energy: dict[str, float] = {}
        self._cpu_core_frequency: dict[int, int] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self.power_path = hwmon_path
        self.collect_energy = False
        if self.is_power_supported():
            self.collect_energy = True
            logger.debug("Using the HWMON power meter path: %s", self.power_path)
        else:
            self.power_path = find_acpi_power_path(acpi_root)
            if self.power_path:
                self.collect_energy = True
                logger.debug("Using the ACPI power meter path: %s", self.power_path)
            else:
                logger.info("Could not find any ACPI power meter path. Is it a VM?")

    def is_power_supported(self) -> bool:
        """Return True if the first power meter file can be read."""
        path = f"{self.power_path}{ACPI_POWER_FILE_PREFIX}1{ACPI_POWER_FILE_SUFFIX}"
        try:
            Path(path).read_bytes()
        except OSError:
            return False
        return True

    def _poll_once(self, ebpf_enabled: bool) -> bool:
        """Collect one sample; return False when there is nothing left to do."""
        if not ebpf_enabled:
            frequencies = read_cpu_core_frequency(self.freq_dir)
            with self._lock:
                self._cpu_core_frequency.update(frequencies)
        if self.collect_energy:
            try:
                sensor_power = read_power_from_sensor(self.power_path, self.num_cpus)
            except ValueError:
                # Some kernels expose unreadable power files; give up collecting.
                logger.info("Disabling the ACPI power meter collection.")
                self.collect_energy = False
            else:
                with self._lock:
                    for sensor_id, power in sensor_power.items():
                        # mW over the polling interval gives mJ.
                        self._system_energy[sensor_id] = (
                            self._system_energy.get(sensor_id, 0.0)
                            + power * self.polling_interval
                        )
        return not (ebpf_enabled and not self.collect_energy)

    def _loop(self, ebpf_enabled: bool) -> None:
        while not self._stop_event.is_set():
            if not self._poll_once(ebpf_enabled):
                return
            self._stop_event.wait(self.polling_interval)

    def run(self, ebpf_enabled: bool) -> None:
        """Start polling in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, args=(ebpf_enabled,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop polling and wait for the thread to end."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def get_cpu_core_frequency(self) -> dict[int, int]:
        """Return a copy of the last CPU frequency per policy."""
        with self._lock:
            return dict(self._cpu_core_frequency)

    def get_energy_from_host(self) -> dict[str, float]:
        """Return the accumulated energy per sensor in mJ and reset the counters."""
        with self._lock:
            energy = dict(self._system_energy)
            for sensor_id in self._system_energy:
                self._system_energy[sensor_id] = 0.0
        return energy