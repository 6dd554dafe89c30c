# kepwatt

Energy readings for a Linux node, and power estimates from resource usage
where the node cannot measure its own power.

kepwatt reads hardware energy counters where the machine has them and falls
back to model-based estimates where it does not. It is a library with no
dependencies outside the standard library, and it has no command of its own.

## Installation

```
pip install kepwatt
```

For the test suite:

```
pip install "kepwatt[test]"
pytest
```

## Power sources (`kepwatt.components`, `kepwatt.msr`, `kepwatt.power`)

Every source is a `PowerSource` and reports energy in millijoules for the
package, core, uncore and DRAM. Per-socket readings come back from
`get_node_components_energy()` as a dict of socket number to
`NodeComponentsEnergy`.

- `PowerSysfs` reads Intel RAPL `energy_uj` counters under
  `/sys/class/powercap/intel-rapl` (the root and package count can be given).
- `PowerMSR` reads the RAPL energy status registers through `RaplMSR`, which
  opens `/dev/cpu/<n>/msr` for each logical CPU found by `read_cpu_topology()`.
- `ApmXgeneSysfs` finds the hwmon sensor labelled `CPU power` and integrates
  its reading over the time between calls.
- `PowerHMC` measures nothing and reports itself unsupported.
- `PowerEstimate` gives a figure from elapsed time, core count, memory size and
  the per-thread and per-GB wattages it is given.
- `PowerDummy` returns fixed values, for tests.

`select_power_source(sysfs, msr, apm_xgene, hmc, estimate, msr_enabled, arch)`
returns the first source that reports itself supported: sysfs, then MSR (only
when `msr_enabled`), then X-Gene, otherwise the estimate. On `s390x` it
returns the HMC source if supported, otherwise the estimate.

```python
from kepwatt.components import PowerSysfs

sysfs = PowerSysfs()
if sysfs.is_system_collection_supported():
    for socket, energy in sysfs.get_node_components_energy().items():
        print(socket, energy)
```

## Platform power (`kepwatt.acpi`)

`ACPI` looks for a `power1_average` file under the hwmon path and otherwise
searches the ACPI tree with `find_acpi_power_path()`. `run(ebpf_enabled)`
starts a background thread that, at each polling interval, turns the
`power<N>_average` readings into energy per sensor and adds it up;
`get_energy_from_host()` returns the totals in mJ and resets them, and
`stop()` ends the thread. When `ebpf_enabled` is false the thread also
records the current frequency of each cpufreq policy, returned by
`get_cpu_core_frequency()`.

## GPUs (`kepwatt.accelerator`)

`Accelerator` wraps a GPU backend and answers only when `enabled` is true;
otherwise it returns empty results. `create_accelerator(enabled)` builds one
backed by `GPUDummy`, which reports no GPU energy and a fixed utilisation
sample for pid 0. `Accelerator.init()` raises the `AcceleratorError` met when
the backend was set up, if any.

## Power models (`kepwatt.types`, `kepwatt.lr`, `kepwatt.sidecar`, `kepwatt.estimation`)

- `ModelOutputType` names the kind of output a model gives; `ModelConfig`
  says which model to use and where to load it from.
- `LinearRegressor` loads weights from a model server (HTTP POST to its
  `endpoint`), from a URL, or from a local JSON file (an `init_model_url`
  starting with `/`), and predicts total or per-component power. The weight
  document layout is read and written by `ModelWeights.from_dict()` and
  `ModelWeights.to_dict()`.
- `EstimatorSidecarConnector` sends a `PowerRequest` to an estimator process
  over a Unix socket and reads back the predicted powers.
- `NodePowerEstimator` sets up a node total-power model and a node
  component-power model and gives `platform_power(...)` and
  `component_powers(...)` from a node's resource usage. When no component
  model location is configured it loads
  `/var/lib/kepwatt/data/KerasCompWeightFullPipeline.json`.

```python
from kepwatt.lr import LinearRegressor
from kepwatt.types import ModelOutputType

model = LinearRegressor(
    usage_metrics=["cpu_cycles"],
    output_type=ModelOutputType.ABS_MODEL_WEIGHT,
    system_features=["cpu_architecture"],
    init_model_url="/var/lib/kepwatt/model.json",
)
if model.init():
    print(model.get_total_power([[1.0]], ["Sandy Bridge"]))
```

A call on a model that is not ready raises `ModelError`, or `EstimatorError`
for the sidecar.

## Helpers (`kepwatt.utils`)

`create_temp_file()`, `create_temp_dir()`, `determine_host_byte_order()` and
`get_path_from_pid(search_path, pid)`, which returns the line of a cgroup file
that names a pod, containerd or CRI-O.

## What it does not do

kepwatt reads node energy and estimates node power. It does not collect
per-container or per-process usage, does not share node energy out among
containers or processes, and does not export metrics or run as a service.
It has no backend for real GPU hardware; only `GPUDummy` is included.