"""Power estimation by asking an estimator sidecar over a Unix socket."""

from __future__ import annotations

import json
import logging
import socket as _socket
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from kepwatt.types import ModelOutputType, is_component_type

logger = logging.getLogger(__name__)

DEFAULT_SOCKET = "/tmp/estimator.sock"
_BUFFER_SIZE = 4096


class EstimatorError(Exception):
    """Raised when the estimator sidecar cannot be reached or answers badly."""


@dataclass
class PowerRequest:
    """Request to the estimator sidecar for predicted powers."""

    usage_metrics: list[str] = field(default_factory=list)
    usage_values: list[list[float]] = field(default_factory=list)
    output_type: str = ""
    system_features: list[str] = field(default_factory=list)
    system_values: list[str] = field(default_factory=list)
    model_name: str = ""
    select_filter: str = ""

    def to_json(self) -> str:
        """Return the request as the compact JSON the sidecar expects."""
        return json.dumps(
            {
                "metrics": list(self.usage_metrics),
                "values": [list(row) for row in self.usage_values],
                "output_type": self.output_type,
                "system_features": list(self.system_features),
                "system_values": list(self.system_values),
                "model_name": self.model_name,
                "filter": self.select_filter,
            },
            separators=(",", ":"),
        )


def _number_list(value: Any, what: str) -> list[float]:
    if value is None:
        return []
    if not isinstance(value, list) or any(
        isinstance(item, bool) or not isinstance(item, (int, float)) for item in value
    ):
        raise EstimatorError(f"estimator unmarshal error: {what} is not a list of numbers")
    return [float(item) for item in value]


@dataclass
class EstimatorSidecarConnector:
    """Power estimator that delegates prediction to the estimator sidecar."""

    socket: str = DEFAULT_SOCKET
    usage_metrics: list[str] = field(default_factory=list)
    output_type: ModelOutputType = ModelOutputType.ABS_POWER
    system_features: list[str] = field(default_factory=list)
    model_name: str = ""
    select_filter: str = ""
    timeout: float | None = None
    _valid: bool = field(default=False, init=False, repr=False)
    _is_component: bool = field(default=False, init=False, repr=False)

    @property
    def valid(self) -> bool:
        return self._valid

    def init(self, system_values: Sequence[str]) -> bool:
        """Probe the sidecar with a zero row; return True if it answered."""
        self._is_component = is_component_type(self.output_type)
        zeros = [0.0] * len(self.usage_metrics)
        try:
            self._make_request([zeros], system_values)
        except EstimatorError as exc:
            logger.debug("estimator sidecar not usable: %s", exc)
            self._valid = False
        else:
            self._valid = True
        return self._valid

    def _make_request(
        self, usage_values: Sequence[Sequence[float]], system_values: Sequence[str]
    ) -> list[float] | dict[str, list[float]]:
        request = PowerRequest(
            usage_metrics=list(self.usage_metrics),
            usage_values=[list(row) for row in usage_values],
            output_type=str(self.output_type),
            system_features=list(self.system_features),
            system_values=list(system_values),
            model_name=self.model_name,
            select_filter=self.select_filter,
        )
        payload = request.to_json().encode("utf-8")
        try:
            with _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM) as conn:
                conn.settimeout(self.timeout)
                conn.connect(self.socket)
                conn.sendall(payload)
                data = conn.recv(_BUFFER_SIZE)
        except OSError as exc:
            raise EstimatorError(f"estimator connection error: {exc}") from exc
        if not data:
            raise EstimatorError("estimator read error: connection closed without data")
        try:
            response = json.loads(data)
        except ValueError as exc:
            text = data.decode("utf-8", errors="replace")
            raise EstimatorError(f"estimator unmarshal error: {exc} ({text})") from exc
        if not isinstance(response, dict):
            raise EstimatorError("estimator unmarshal error: response is not an object")
        powers = response.get("powers")
        if self._is_component:
            if powers is None:
                return {}
            if not isinstance(powers, dict):
                raise EstimatorError("estimator unmarshal error: powers is not an object")
            return {str(key): _number_list(values, key) for key, values in powers.items()}
        return _number_list(powers, "powers")

    def get_total_power(
        self, usage_values: Sequence[Sequence[float]], system_values: Sequence[str]
    ) -> list[float]:
        """Return one total power per row of usage values."""
        if not self._valid:
            raise EstimatorError(f"invalid power model call: {self.output_type}")
        powers = self._make_request(usage_values, system_values)
        if not isinstance(powers, list):
            raise EstimatorError(f"model type {self.output_type} does not give total power")
        return powers

    def get_component_power(
        self, usage_values: Sequence[Sequence[float]], system_values: Sequence[str]
    ) -> dict[str, list[float]]:
        """Return, per component, one power per row of usage values."""
        if not self._valid:
            raise EstimatorError(f"invalid power model call: {self.output_type}")
        powers = self._make_request(usage_values, system_values)
        if not isinstance(powers, dict):
            raise EstimatorError(f"model type {self.output_type} does not give component power")
        return powers