import pytest
from fastapi.testclient import TestClient

from main import create_app
from pipeline.settings import PipelineSettings

SENSOR = {"temperature": 25, "humidity": 60}
WIDGET = {
    "componentType": "gauge",
    "base": {"deviceId": "d1", "title": "Sensor"},
    "dataSource": {"dataSources": [{"id": "dataSource1", "type": "static", "config": {"data": SENSOR}}]},
}


@pytest.fixture
def client():
    app = create_app(PipelineSettings())
    with TestClient(app) as c:
        yield c


def test_register_execute_and_read_data(client):
    response = client.post("/api/components/comp1", json=WIDGET)
    assert response.status_code == 200
    assert response.json()["phase"] == "registered"

    executed = client.post("/api/components/comp1/execute").json()
    assert executed["success"]
    assert executed["data"] == {"dataSource1": SENSOR}

    cached = client.get("/api/components/comp1/data").json()
    assert cached == {"component_id": "comp1", "data": {"dataSource1": SENSOR}, "cached": True}

    metrics = client.get("/api/metrics").json()
    assert metrics["warehouse"]["cache_hits"] == 1
    assert metrics["storage"]["total_components"] == 1
    assert metrics["bridge"]["executions"] == 1


def test_execute_with_explicit_requirement(client):
    body = {
        "componentId": "ignored",
        "dataSources": [{"id": "main", "type": "json", "config": {"jsonString": "[1, 2]"}}],
    }
    result = client.post("/api/components/adhoc/execute", json=body).json()
    assert result["success"]
    assert result["data"] == {"main": [1, 2]}
    assert client.get("/api/components/adhoc/data").json()["cached"]


def test_section_update_and_unregister(client):
    client.post("/api/components/comp1", json=WIDGET)

    response = client.put("/api/components/comp1/config/base", json={"values": {"title": "Renamed"}})
    assert response.status_code == 200
    detail = client.get("/api/components/comp1").json()
    assert detail["config"]["base"]["title"] == "Renamed"
    assert client.get("/api/metrics").json()["events"]["events_emitted"] == 3

    assert client.delete("/api/components/comp1").status_code == 200
    assert client.get("/api/components/comp1").status_code == 404
    assert client.put("/api/components/comp1/config/base", json={"values": {}}).status_code == 404


def test_unknown_component_is_404(client):
    assert client.get("/api/components/nope").status_code == 404
    assert client.post("/api/components/nope/execute").status_code == 404


def test_cache_endpoints(client):
    client.post("/api/components/comp1", json=WIDGET)
    client.post("/api/components/comp1/execute")
    client.delete("/api/components/comp1/cache")
    assert not client.get("/api/components/comp1/data").json()["cached"]

    client.post("/api/components/comp1/execute")
    client.delete("/api/cache")
    assert client.get("/api/components/comp1/data").json()["data"] is None


def test_normalize_and_validate(client):
    normalized = client.post("/api/normalize", json={"component_id": "x", "config": {"type": "static", "config": {"data": 1}}}).json()
    assert normalized["errors"] == []
    assert normalized["config"]["componentId"] == "x"
    assert normalized["config"]["dataSources"][0]["sourceId"] == "main"

    http = client.post("/api/validate/http", json={"url": "ftp://x"}).json()
    assert not http["valid"]
    assert http["level"] == "incompatible"

    component = client.post("/api/validate/component", json={"componentId": "c"}).json()
    assert component["valid"]
    assert component["level"] == "warning"


def test_binding_rule_endpoints(client):
    assert "base.deviceId" in client.get("/api/bindings/whitelist").json()

    client.post("/api/bindings/triggers", json={"propertyPath": "base.title"})
    assert "base.title" in client.get("/api/bindings/whitelist").json()
    assert client.delete("/api/bindings/triggers", params={"property_path": "base.title"}).status_code == 200
    assert client.delete("/api/bindings/triggers", params={"property_path": "base.title"}).status_code == 404

    rule = {"property_path": "base.title", "param_name": "title", "transform": "str"}
    assert client.post("/api/bindings/rules", json=rule).json()["param_name"] == "title"
    info = client.get("/api/bindings").json()
    assert "title" in [r["param_name"] for r in info["bindingRules"]]
