"""Power estimation by linear regression over trained model weights.

Weights come from a model server or from an initial model file or URL.
"""

from __future__ import annotations

import json
import logging
import math
import urllib.error
import urllib.request
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kepwatt.types import ModelOutputType, is_component_type

logger = logging.getLogger(__name__)


class ModelError(Exception):
    """Raised when model weights cannot be obtained, decoded or applied."""


@dataclass
class ModelRequest:
    """Request to a model server for model weights."""

    model_name: str = ""
    metric_names: list[str] = field(default_factory=list)
    select_filter: str = ""
    output_type: str = ""

    def to_json(self) -> str:
        """Return the request as the compact JSON the model server expects."""
        return json.dumps(
            {
                "model_name": self.model_name,
                "metrics": list(self.metric_names),
                "filter": self.select_filter,
                "output_type": self.output_type,
            },
            separators=(",", ":"),
        )


@dataclass(frozen=True)
class CategoricalFeature:
    """Weight of one value of a categorical feature."""

    weight: float = 0.0


@dataclass(frozen=True)
class NormalizedNumericalFeature:
    """Weight of a numerical feature, normalized by its mean and variance."""

    mean: float = 0.0
    variance: float = 0.0
    weight: float = 0.0


_NO_CATEGORY = CategoricalFeature()
_NO_NUMERIC = NormalizedNumericalFeature()


def _mapping(value: Any, what: str) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ModelError(f"model unmarshal error: {what} is not an object")
    return value


def _as_float(value: Any, what: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ModelError(f"model unmarshal error: {what} is not a number")
    return float(value)


def _normalize(value: float, mean: float, variance: float) -> float:
    std = math.sqrt(variance) if variance >= 0 else math.nan
    diff = value - mean
    if std == 0:
        if diff == 0 or math.isnan(diff):
            return math.nan
        return math.copysign(math.inf, diff)
    return diff / std


@dataclass
class ModelWeights:
    """Bias, categorical and normalized numerical weights of a linear model."""

    bias_weight: float = 0.0
    categorical_variables: dict[str, dict[str, CategoricalFeature]] = field(default_factory=dict)
    numerical_variables: dict[str, NormalizedNumericalFeature] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> ModelWeights:
        """Build weights from the decoded ``{"All_Weights": {...}}`` document."""
        all_weights = _mapping(_mapping(data, "model").get("All_Weights"), "All_Weights")
        categorical = {
            feature: {
                value: CategoricalFeature(
                    _as_float(_mapping(entry, value).get("weight"), f"{feature}/{value} weight")
                )
                for value, entry in _mapping(values, feature).items()
            }
            for feature, values in _mapping(
                all_weights.get("Categorical_Variables"), "Categorical_Variables"
            ).items()
        }
        numerical = {}
        for metric, entry in _mapping(
            all_weights.get("Numerical_Variables"), "Numerical_Variables"
        ).items():
            entry = _mapping(entry, metric)
            numerical[metric] = NormalizedNumericalFeature(
                mean=_as_float(entry.get("mean"), f"{metric} mean"),
                variance=_as_float(entry.get("variance"), f"{metric} variance"),
                weight=_as_float(entry.get("weight"), f"{metric} weight"),
            )
        return cls(
            bias_weight=_as_float(all_weights.get("Bias_Weight"), "Bias_Weight"),
            categorical_variables=categorical,
            numerical_variables=numerical,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the weights in the model server's document layout."""
        return {
            "All_Weights": {
                "Bias_Weight": self.bias_weight,
                "Categorical_Variables": {
                    feature: {value: {"weight": entry.weight} for value, entry in values.items()}
                    for feature, values in self.categorical_variables.items()
                },
                "Numerical_Variables": {
                    metric: {
                        "mean": entry.mean,
                        "variance": entry.variance,
                        "weight": entry.weight,
                    }
                    for metric, entry in self.numerical_variables.items()
                },
            }
        }

    def predict(
        self,
        usage_metrics: Sequence[str],
        usage_values: Sequence[Sequence[float]],
        system_features: Sequence[str],
        system_values: Sequence[str],
    ) -> list[float]:
        """Return one predicted power per row of usage values."""
        if len(system_values) < len(system_features):
            raise ValueError("fewer system values than system features")
        base_power = self.bias_weight
        for feature, value in zip(system_features, system_values):
            base_power += self.categorical_variables.get(feature, {}).get(value, _NO_CATEGORY).weight
        coefficients = [self.numerical_variables.get(m, _NO_NUMERIC) for m in usage_metrics]
        powers = []
        for row in usage_values:
            if len(row) < len(coefficients):
                raise ValueError("fewer usage values than usage metrics")
            power = base_power
            for coeff, value in zip(coefficients, row):
                if coeff.weight == 0:
                    continue
                power += coeff.weight * _normalize(value, coeff.mean, coeff.variance)
            powers.append(power)
        return powers


def parse_component_weights(data: Any) -> dict[str, ModelWeights]:
    """Build per-component weights from a decoded ``{component: model}`` document."""
    return {
        component: ModelWeights.from_dict(weights)
        for component, weights in _mapping(data, "component model").items()
    }


@dataclass
class LinearRegressor:
    """Power estimator that applies linear regression weights."""

    endpoint: str = ""
    usage_metrics: list[str] = field(default_factory=list)
    output_type: ModelOutputType = ModelOutputType.ABS_MODEL_WEIGHT
    system_features: list[str] = field(default_factory=list)
    model_name: str = ""
    select_filter: str = ""
    init_model_url: str = ""
    model_server_enable: bool = True
    timeout: float | None = None
    _valid: bool = field(default=False, init=False, repr=False)
    _model_weight: Any = field(default=None, init=False, repr=False)

    @property
    def valid(self) -> bool:
        return self._valid

    def init(self) -> bool:
        """Obtain the weights; return True if some were found."""
        weight: Any = None
        error: ModelError | None = None
        output = str(self.output_type)
        if self.model_server_enable and self.endpoint:
            try:
                weight = self._get_weight_from_server()
            except ModelError as exc:
                error = exc
            logger.debug("LR Model (%s): weight from server: %s", output, weight)
        if weight is None and self.init_model_url:
            try:
                weight = self._load_weight_from_url_or_local()
            except ModelError as exc:
                error = exc
            logger.debug("LR Model (%s): weight from %s: %s", output, self.init_model_url, weight)
        if weight is not None:
            self._valid = True
            self._model_weight = weight
        else:
            if error is None:
                logger.debug("LR Model (%s): no config", output)
            else:
                logger.debug("LR Model (%s): %s", output, error)
            self._valid = False
        return self._valid

    def _decode(self, body: bytes) -> ModelWeights | dict[str, ModelWeights]:
        try:
            data = json.loads(body)
        except ValueError as exc:
            text = body.decode("utf-8", errors="replace")
            raise ModelError(f"model unmarshal error: {exc} ({text})") from exc
        if is_component_type(self.output_type):
            return parse_component_weights(data)
        return ModelWeights.from_dict(data)

    def _get_weight_from_server(self) -> ModelWeights | dict[str, ModelWeights]:
        model_request = ModelRequest(
            model_name=self.model_name,
            metric_names=[*self.usage_metrics, *self.system_features],
            select_filter=self.select_filter,
            output_type=str(self.output_type),
        )
        request = urllib.request.Request(
            self.endpoint,
            data=model_request.to_json().encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json; charset=UTF-8"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                status = response.status
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise ModelError(f"status not ok: {exc.code} {exc.reason} ({model_request})") from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise ModelError(f"connection error: {exc} ({self.endpoint})") from exc
        if status != 200:
            raise ModelError(f"status not ok: {status} ({model_request})")
        return self._decode(body)

    def _load_weight_from_url_or_local(self) -> ModelWeights | dict[str, ModelWeights]:
        if self.init_model_url.startswith("/"):
            try:
                body = Path(self.init_model_url).read_bytes()
            except OSError as exc:
                raise ModelError(str(exc)) from exc
        else:
            body = self._fetch_url()
        return self._decode(body)

    def _fetch_url(self) -> bytes:
        try:
            with urllib.request.urlopen(self.init_model_url, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as exc:
            return exc.read()
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise ModelError(f"connection error: {exc} ({self.init_model_url})") from exc

    def get_total_power(
        self, usage_values: Sequence[Sequence[float]], system_values: Sequence[str]
    ) -> list[float]:
        """Return one total power per row of usage values."""
        if not self._valid:
            raise ModelError(f"invalid power model call: {self.output_type}")
        if not isinstance(self._model_weight, ModelWeights):
            raise ModelError(f"model Weight for model type {self.output_type} is nil")
        return self._model_weight.predict(
            self.usage_metrics, usage_values, self.system_features, system_values
        )

    def get_component_power(
        self, usage_values: Sequence[Sequence[float]], system_values: Sequence[str]
    ) -> dict[str, list[float]]:
        """Return, per component, one power per row of usage values."""
        if not self._valid:
            raise ModelError(f"invalid power model call: {self.output_type}")
        if not isinstance(self._model_weight, dict):
            raise ModelError(f"model Weight for model type {self.output_type} is not per component")
        return {
            component: weights.predict(
                self.usage_metrics, usage_values, self.system_features, system_values
            )
            for component, weights in self._model_weight.items()
        }