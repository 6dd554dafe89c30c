import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from kepwatt.lr import (
    CategoricalFeature,
    LinearRegressor,
    ModelError,
    ModelRequest,
    ModelWeights,
    NormalizedNumericalFeature,
    parse_component_weights,
)
from kepwatt.types import ModelOutputType

USAGE_METRICS = [
    "bytes_read",
    "bytes_writes",
    "cache_miss",
    "cgroupfs_cpu_usage_us",
    "cgroupfs_memory_usage_bytes",
    "cgroupfs_system_cpu_usage_us",
    "cgroupfs_user_cpu_usage_us",
    "cpu_cycles",
    "cpu_instr",
    "cpu_time",
]
SYSTEM_FEATURES = ["cpu_architecture"]
USAGE_VALUES = [[1.0] * 10, [1.0] * 10]
NODE_USAGE_VALUE = USAGE_VALUES[0]
SYSTEM_VALUES = ["Sandy Bridge"]


def gen_weights(numerical):
    return ModelWeights(
        bias_weight=1.0,
        categorical_variables={"cpu_architecture": {"Sandy Bridge": CategoricalFeature(1.0)}},
        numerical_variables=numerical,
    )


CORE_NUMERICAL = {"cpu_cycles": NormalizedNumericalFeature(mean=0, variance=1, weight=1.0)}
DRAM_NUMERICAL = {"cache_miss": NormalizedNumericalFeature(mean=0, variance=1, weight=1.0)}
COMPONENT_RESPONSE = {
    "core": gen_weights(CORE_NUMERICAL).to_dict(),
    "dram": gen_weights(DRAM_NUMERICAL).to_dict(),
}
POWER_RESPONSE = gen_weights(CORE_NUMERICAL).to_dict()


class _Handler(BaseHTTPRequestHandler):
    requests: list = []

    def _send(self, status, payload):
        body = payload.encode() if isinstance(payload, str) else json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        request = json.loads(self.rfile.read(length))
        type(self).requests.append(request)
        if self.path == "/fail":
            self._send(500, "oops")
        elif "ComponentModelWeight" in request["output_type"]:
            self._send(200, COMPONENT_RESPONSE)
        else:
            self._send(200, POWER_RESPONSE)

    def do_GET(self):
        if self.path == "/component":
            self._send(200, COMPONENT_RESPONSE)
        else:
            self._send(404, "not found")

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    _Handler.requests = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}"
    httpd.shutdown()
    httpd.server_close()


def gen_linear_regressor(output_type, endpoint, init_model_url):
    return LinearRegressor(
        endpoint=endpoint,
        usage_metrics=USAGE_METRICS,
        output_type=output_type,
        system_features=SYSTEM_FEATURES,
        init_model_url=init_model_url,
        model_server_enable=True,
        timeout=10,
    )


def test_use_weight_from_model_server(server):
    endpoint = f"{server}/model"

    r = gen_linear_regressor(ModelOutputType.ABS_MODEL_WEIGHT, endpoint, "")
    assert r.init() is True
    powers = r.get_total_power([NODE_USAGE_VALUE], SYSTEM_VALUES)
    assert len(powers) == 1
    assert powers[0] == pytest.approx(3)

    r = gen_linear_regressor(ModelOutputType.ABS_COMPONENT_MODEL_WEIGHT, endpoint, "")
    assert r.init() is True
    comp_powers = r.get_component_power([NODE_USAGE_VALUE], SYSTEM_VALUES)
    assert len(comp_powers["core"]) == 1
    assert comp_powers["core"][0] == pytest.approx(3)

    r = gen_linear_regressor(ModelOutputType.DYN_MODEL_WEIGHT, endpoint, "")
    assert r.init() is True
    powers = r.get_total_power(USAGE_VALUES, SYSTEM_VALUES)
    assert len(powers) == len(USAGE_VALUES)
    assert powers[0] == pytest.approx(3)

    r = gen_linear_regressor(ModelOutputType.DYN_COMPONENT_MODEL_WEIGHT, endpoint, "")
    assert r.init() is True
    comp_powers = r.get_component_power(USAGE_VALUES, SYSTEM_VALUES)
    assert len(comp_powers["core"]) == len(USAGE_VALUES)
    assert comp_powers["core"][0] == pytest.approx(3)


def test_server_receives_request_fields(server):
    r = gen_linear_regressor(ModelOutputType.ABS_MODEL_WEIGHT, f"{server}/model", "")
    r.model_name = "ModelName"
    assert r.init() is True
    request = _Handler.requests[-1]
    assert request["metrics"] == USAGE_METRICS + SYSTEM_FEATURES
    assert request["output_type"] == "AbsModelWeight"
    assert request["model_name"] == "ModelName"


def test_use_init_model_url(server):
    r = gen_linear_regressor(ModelOutputType.ABS_COMPONENT_MODEL_WEIGHT, "", f"{server}/component")
    assert r.init() is True
    comp_powers = r.get_component_power([NODE_USAGE_VALUE], SYSTEM_VALUES)
    assert set(comp_powers) == {"core", "dram"}


def test_use_init_model_local_file(tmp_path):
    model_file = tmp_path / "model.json"
    model_file.write_text(json.dumps(COMPONENT_RESPONSE))
    r = gen_linear_regressor(ModelOutputType.DYN_COMPONENT_MODEL_WEIGHT, "", str(model_file))
    assert r.init() is True
    comp_powers = r.get_component_power(USAGE_VALUES, SYSTEM_VALUES)
    assert comp_powers["dram"] == [pytest.approx(3), pytest.approx(3)]


def test_server_failure_falls_back_to_init_url(server, tmp_path):
    model_file = tmp_path / "model.json"
    model_file.write_text(json.dumps(POWER_RESPONSE))
    r = gen_linear_regressor(ModelOutputType.ABS_MODEL_WEIGHT, f"{server}/fail", str(model_file))
    assert r.init() is True
    assert r.get_total_power([NODE_USAGE_VALUE], SYSTEM_VALUES) == [pytest.approx(3)]


def test_server_failure_without_fallback_is_invalid(server):
    r = gen_linear_regressor(ModelOutputType.ABS_MODEL_WEIGHT, f"{server}/fail", "")
    assert r.init() is False
    with pytest.raises(ModelError, match="invalid power model call: AbsModelWeight"):
        r.get_total_power([NODE_USAGE_VALUE], SYSTEM_VALUES)


def test_no_config_is_invalid():
    r = gen_linear_regressor(ModelOutputType.DYN_COMPONENT_MODEL_WEIGHT, "", "")
    assert r.init() is False
    with pytest.raises(ModelError):
        r.get_component_power(USAGE_VALUES, SYSTEM_VALUES)


def test_bad_json_file_is_invalid(tmp_path):
    model_file = tmp_path / "model.json"
    model_file.write_text("not json")
    r = gen_linear_regressor(ModelOutputType.ABS_MODEL_WEIGHT, "", str(model_file))
    assert r.init() is False


def test_missing_local_file_is_invalid(tmp_path):
    r = gen_linear_regressor(ModelOutputType.ABS_MODEL_WEIGHT, "", str(tmp_path / "absent.json"))
    assert r.init() is False


def test_model_request_json_keys():
    request = ModelRequest("m", ["a", "b"], "f", "DynPower")
    assert json.loads(request.to_json()) == {
        "model_name": "m",
        "metrics": ["a", "b"],
        "filter": "f",
        "output_type": "DynPower",
    }


def test_model_weights_round_trip():
    weights = gen_weights(CORE_NUMERICAL)
    assert ModelWeights.from_dict(weights.to_dict()) == weights


def test_from_dict_rejects_non_number():
    with pytest.raises(ModelError):
        ModelWeights.from_dict({"All_Weights": {"Bias_Weight": "high"}})


def test_parse_component_weights_round_trip():
    parsed = parse_component_weights(COMPONENT_RESPONSE)
    assert parsed["core"] == gen_weights(CORE_NUMERICAL)
    assert parsed["dram"] == gen_weights(DRAM_NUMERICAL)


def test_predict_ignores_unknown_category_and_zero_weight():
    weights = ModelWeights(
        bias_weight=1.0,
        categorical_variables={"cpu_architecture": {"Sandy Bridge": CategoricalFeature(1.0)}},
        numerical_variables={"cpu_cycles": NormalizedNumericalFeature(mean=0, variance=0, weight=0)},
    )
    powers = weights.predict(["cpu_cycles"], [[5.0]], SYSTEM_FEATURES, ["Unknown"])
    assert powers == [1.0]


def test_predict_empty_rows():
    assert gen_weights(CORE_NUMERICAL).predict(USAGE_METRICS, [], SYSTEM_FEATURES, SYSTEM_VALUES) == []


def test_wrong_weight_kind_raises(tmp_path):
    model_file = tmp_path / "model.json"
    model_file.write_text(json.dumps(COMPONENT_RESPONSE))
    r = gen_linear_regressor(ModelOutputType.ABS_COMPONENT_MODEL_WEIGHT, "", str(model_file))
    assert r.init() is True
    with pytest.raises(ModelError):
        r.get_total_power([NODE_USAGE_VALUE], SYSTEM_VALUES)