# backend/tests/integration/test_api.py

from chatflow.config.settings import settings

API_PREFIX = f"/api/{settings.api_version}/chatbot"
ORG = {"X-Organization-Id": "org_1"}
OTHER_ORG = {"X-Organization-Id": "org_2"}


def _create(test_client, **body):
    payload = {"name": "Welcome", "trigger_type": "keyword", "trigger_keywords": ["hi"], **body}
    response = test_client.post(f"{API_PREFIX}/flows", json=payload, headers=ORG)
    assert response.status_code == 201
    return response.json()["data"]["flow"]


def _greeting_graph():
    return {
        "nodes": [
            {"id": "start", "type": "trigger", "data": {}, "position": {"x": 0, "y": 0}},
            {"id": "greet", "type": "message", "data": {"text": "Hello {{name}}"}, "position": {"x": 0, "y": 100}},
            {"id": "done", "type": "end", "data": {}},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "greet"},
            {"id": "e2", "source": "greet", "target": "done"},
        ],
    }


def test_root_and_health(test_client):
    assert test_client.get("/").json()["status"] == "operational"
    assert test_client.get("/health").json()["status"] == "healthy"
    assert test_client.get("/metrics").status_code == 200


def test_organization_header_is_required(test_client):
    response = test_client.get(f"{API_PREFIX}/flows")
    assert response.status_code == 400


def test_new_flow_has_only_start_node(test_client):
    flow = _create(test_client)

    assert flow["is_active"] is False
    assert flow["edges"] == []
    assert [n["id"] for n in flow["nodes"]] == ["start"]
    assert flow["nodes"][0]["type"] == "trigger"
    assert flow["nodes"][0]["data"]["keywords"] == ["hi"]


def test_flow_crud(test_client):
    flow = _create(test_client)
    flow_url = f"{API_PREFIX}/flows/{flow['id']}"

    listed = test_client.get(f"{API_PREFIX}/flows", headers=ORG).json()["data"]["flows"]
    assert [f["id"] for f in listed] == [flow["id"]]

    updated = test_client.put(flow_url, json={"name": "Greeting", **_greeting_graph()}, headers=ORG)
    assert updated.status_code == 200
    body = updated.json()["data"]["flow"]
    assert body["name"] == "Greeting"
    assert len(body["nodes"]) == 3
    assert body["trigger_keywords"] == ["hi"]

    assert test_client.get(flow_url, headers=ORG).json()["data"]["flow"]["name"] == "Greeting"
    assert test_client.delete(flow_url, headers=ORG).status_code == 200
    assert test_client.get(flow_url, headers=ORG).status_code == 404


def test_flows_are_scoped_to_organization(test_client):
    flow = _create(test_client)
    flow_url = f"{API_PREFIX}/flows/{flow['id']}"

    assert test_client.get(flow_url, headers=OTHER_ORG).status_code == 404
    assert test_client.delete(flow_url, headers=OTHER_ORG).status_code == 404
    assert test_client.get(f"{API_PREFIX}/flows", headers=OTHER_ORG).json()["data"]["flows"] == []


def test_duplicate_and_toggle(test_client):
    flow = _create(test_client)
    flow_url = f"{API_PREFIX}/flows/{flow['id']}"

    toggled = test_client.post(f"{flow_url}/toggle", headers=ORG).json()["data"]["flow"]
    assert toggled["is_active"] is True

    copy = test_client.post(f"{flow_url}/duplicate", headers=ORG)
    assert copy.status_code == 201
    copy_flow = copy.json()["data"]["flow"]
    assert copy_flow["id"] != flow["id"]
    assert copy_flow["name"] == "Welcome (copy)"
    assert copy_flow["is_active"] is False

    assert test_client.post(f"{flow_url}/toggle", headers=ORG).json()["data"]["flow"]["is_active"] is False


def test_process_runs_the_flow_and_records_analytics(test_client):
    flow = _create(test_client)
    flow_url = f"{API_PREFIX}/flows/{flow['id']}"
    test_client.put(flow_url, json={**_greeting_graph(), "is_active": True}, headers=ORG)

    event = {"customer_id": "cust_1", "phone": "+15551234567", "message": "hi there"}
    response = test_client.post(f"{API_PREFIX}/process", json=event, headers=ORG)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["matched"] is True
    assert data["completed"] is True
    assert data["actions"] == [{"type": "send_message", "text": "Hello {{name}}", "delay": 0}]

    no_match = test_client.post(f"{API_PREFIX}/process", json={**event, "message": "bye"}, headers=ORG).json()
    assert no_match["data"]["matched"] is False
    assert no_match["message"] == "No matching flow"

    sessions = test_client.get(f"{flow_url}/sessions", headers=ORG).json()["data"]
    assert len(sessions["sessions"]) == 1
    assert sessions["analytics"]["total"] == 1
    assert sessions["analytics"]["completed"] == 1
    assert sessions["analytics"]["dropped"] == 0
    assert sessions["analytics"]["completion_rate"] == 100


def test_process_rejects_unknown_channel(test_client):
    event = {"customer_id": "cust_1", "phone": "+15551234567", "message": "hi", "channel": "sms"}
    assert test_client.post(f"{API_PREFIX}/process", json=event, headers=ORG).status_code == 422


def test_validate_flow(test_client):
    flow = _create(test_client)
    flow_url = f"{API_PREFIX}/flows/{flow['id']}"

    assert test_client.get(f"{flow_url}/validate", headers=ORG).json()["data"]["is_valid"] is True

    graph = _greeting_graph()
    graph["edges"].append({"id": "e3", "source": "greet", "target": "missing"})
    test_client.put(flow_url, json=graph, headers=ORG)

    result = test_client.get(f"{flow_url}/validate", headers=ORG).json()["data"]
    assert result["is_valid"] is False
    assert result["error_code"] == "DANGLING_EDGE"


def test_node_types(test_client):
    node_types = test_client.get(f"{API_PREFIX}/node-types").json()["data"]["node_types"]
    assert len(node_types) == 15
    assert {"trigger", "condition", "end"} <= {t["type"] for t in node_types}

    condition = test_client.get(f"{API_PREFIX}/node-types/condition").json()["data"]
    assert condition["outputs"] == ["true", "false"]
    assert test_client.get(f"{API_PREFIX}/node-types/carousel").status_code == 404
