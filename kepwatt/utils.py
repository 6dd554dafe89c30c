"""Small helpers: temporary files, host byte order and cgroup lookup."""

from __future__ import annotations

import os
import sys
import tempfile

SYSTEM_PROCESS_NAME = "system_processes"
SYSTEM_PROCESS_NAMESPACE = "system"

_CGROUP_MARKERS = ("pod", "containerd", "crio")


def create_temp_file(contents: str) -> str:
    """Write contents to a new temporary file and return its name."""
    fd, name = tempfile.mkstemp()
    with os.fdopen(fd, "w") as handle:
        handle.write(contents)
    return name


def create_temp_dir() -> str:
    """Create a new temporary directory and return its path."""
    return tempfile.mkdtemp()


def determine_host_byte_order() -> str:
    """Return "little" or "big" for the host's native byte order."""
    return sys.byteorder


def get_path_from_pid(search_path: str, pid: int) -> str:
    """Return the cgroup line of a process that names a pod or container runtime.

    ``search_path`` holds ``%d`` where the pid goes, e.g. ``/proc/%d/cgroup``.
    """
    path = search_path.replace("%d", str(pid))
    try:
        handle = open(path, encoding="utf-8", errors="replace")
    except OSError as exc:
        raise OSError(
            f"failed to open cgroup description file for pid {pid}: {exc}"
        ) from exc
    with handle:
        for line in handle:
            line = line.rstrip("\r\n")
            if any(marker in line for marker in _CGROUP_MARKERS):
                return line
    raise LookupError(f"could not find cgroup description entry for pid {pid}")