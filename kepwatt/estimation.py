"""Node power estimation from resource usage with trained power models."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from typing import Any

from kepwatt.components import NodeComponentsEnergy
from kepwatt.lr import LinearRegressor, ModelError
from kepwatt.sidecar import DEFAULT_SOCKET, EstimatorError, EstimatorSidecarConnector
from kepwatt.types import ModelConfig, ModelOutputType

logger = logging.getLogger(__name__)

ESTIMATOR_ACPI_SENSOR_ID = "estimator"
DEFAULT_ABS_COMP_URL = "/var/lib/kepwatt/data/KerasCompWeightFullPipeline.json"
JOULE_TO_MILLIJOULE = 1000

_ESTIMATE_ERRORS = (ModelError, EstimatorError, ValueError)


def get_component_power(powers: Mapping[str, Sequence[float]], component_key: str, index: int) -> int:
    """Return the component's power at ``index`` in mJ, or 0 when it is absent."""
    values = powers.get(component_key, ())
    if index >= len(values):
        return 0
    # Energies are unsigned; a negative prediction counts as none.
    return max(0, int(values[index] * JOULE_TO_MILLIJOULE))


def fill_rapl_power(
    pkg_power: int, core_power: int, uncore_power: int, dram_power: int
) -> NodeComponentsEnergy:
    """Fill in a missing package or core power from the other components."""
    if pkg_power < core_power + uncore_power:
        pkg_power = core_power + uncore_power
    if core_power == 0:
        core_power = pkg_power - uncore_power
    return NodeComponentsEnergy(core=core_power, uncore=uncore_power, dram=dram_power, pkg=pkg_power)


def node_metrics_to_array(
    resource_usage: Mapping[str, float], metric_names: Sequence[str]
) -> list[list[float]]:
    """Return the node's usage of the named metrics as a one-row matrix."""
    return [[float(resource_usage.get(name, 0.0)) for name in metric_names]]


def init_estimate_function(
    model_config: ModelConfig,
    archive_type: ModelOutputType,
    model_weight_type: ModelOutputType,
    usage_metrics: Sequence[str],
    system_features: Sequence[str],
    system_values: Sequence[str],
    is_total_power: bool,
    model_server_endpoint: str = "",
    sidecar_socket: str = DEFAULT_SOCKET,
) -> tuple[bool, Callable[..., Any] | None]:
    """Set up a power model; return whether it is valid and its estimate function."""
    if model_config.use_estimator_sidecar:
        connector = EstimatorSidecarConnector(
            socket=sidecar_socket,
            usage_metrics=list(usage_metrics),
            output_type=archive_type,
            system_features=list(system_features),
            model_name=model_config.selected_model,
            select_filter=model_config.select_filter,
        )
        valid = connector.init(system_values)
        estimate = None
        if valid:
            estimate = connector.get_total_power if is_total_power else connector.get_component_power
        logger.debug("Model %s initiated (%s)", archive_type, valid)
        return valid, estimate

    regressor = LinearRegressor(
        endpoint=model_server_endpoint,
        usage_metrics=list(usage_metrics),
        output_type=model_weight_type,
        system_features=list(system_features),
        model_name=model_config.selected_model,
        select_filter=model_config.select_filter,
        init_model_url=model_config.init_model_url,
        model_server_enable=bool(model_server_endpoint),
    )
    valid = regressor.init()
    estimate = regressor.get_total_power if is_total_power else regressor.get_component_power
    logger.debug("Model %s initiated (%s)", model_weight_type, valid)
    return valid, estimate


class NodePowerEstimator:
    """Estimates node platform and component power when the node cannot measure them."""

    def __init__(
        self,
        usage_metrics: Sequence[str],
        system_features: Sequence[str],
        system_values: Sequence[str],
        total_config: ModelConfig | None = None,
        component_config: ModelConfig | None = None,
        model_server_endpoint: str = "",
        sidecar_socket: str = DEFAULT_SOCKET,
    ) -> None:
        self.total_config = ModelConfig() if total_config is None else replace(total_config)
        self.component_config = (
            ModelConfig() if component_config is None else replace(component_config)
        )
        # The component model must always have somewhere to load from.
        if not self.component_config.init_model_url:
            self.component_config.init_model_url = DEFAULT_ABS_COMP_URL

        self.total_enabled, self._total_func = init_estimate_function(
            self.total_config,
            ModelOutputType.ABS_POWER,
            ModelOutputType.ABS_MODEL_WEIGHT,
            usage_metrics,
            system_features,
            system_values,
            True,
            model_server_endpoint,
            sidecar_socket,
        )
        self.component_enabled, self._component_func = init_estimate_function(
            self.component_config,
            ModelOutputType.ABS_COMPONENT_POWER,
            ModelOutputType.ABS_COMPONENT_MODEL_WEIGHT,
            usage_metrics,
            system_features,
            system_values,
            False,
            model_server_endpoint,
            sidecar_socket,
        )

    def platform_power(
        self,
        resource_usage: Mapping[str, float],
        metric_names: Sequence[str],
        system_values: Sequence[str],
    ) -> dict[str, float]:
        """Return the estimated node platform power under the estimator sensor id."""
        energy = {ESTIMATOR_ACPI_SENSOR_ID: 0.0}
        if not self.total_enabled or self._total_func is None:
            return energy
        try:
            powers = self._total_func(node_metrics_to_array(resource_usage, metric_names), system_values)
        except _ESTIMATE_ERRORS as exc:
            logger.debug("node platform power estimate failed: %s", exc)
            return energy
        if powers:
            energy[ESTIMATOR_ACPI_SENSOR_ID] = powers[0]
        return energy

    def component_powers(
        self,
        resource_usage: Mapping[str, float],
        metric_names: Sequence[str],
        system_values: Sequence[str],
    ) -> dict[int, NodeComponentsEnergy]:
        """Return the estimated component energy of the node, as socket 0."""
        if not self.component_enabled or self._component_func is None:
            return {}
        try:
            powers = self._component_func(
                node_metrics_to_array(resource_usage, metric_names), system_values
            )
        except _ESTIMATE_ERRORS as exc:
            logger.debug("node component power estimate failed: %s", exc)
            return {}
        socket_id = 0
        return {
            socket_id: fill_rapl_power(
                get_component_power(powers, "pkg", socket_id),
                get_component_power(powers, "core", socket_id),
                get_component_power(powers, "uncore", socket_id),
                get_component_power(powers, "dram", socket_id),
            )
        }