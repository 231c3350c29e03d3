"""REST API end to end through the Flask test client."""
import pytest

from conftest import make_token
from idmsync.connectors import ConnectorObject


@pytest.fixture
def created(client, auth_headers):
    response = client.post("/users", headers=auth_headers, json={
        "username": "jdoe",
        "realm": "/employees",
        "password": "Secret-Passw0rd",
        "resources": ["ldap"],
        "plainAttrs": [{"schema": "email", "values": ["jdoe@example.com"]}],
    })
    assert response.status_code == 201
    return response


def test_missing_token_is_401(client):
    response = client.get("/users")

    assert response.status_code == 401
    assert response.get_json()["status"] == 401


def test_missing_entitlement_is_403(client):
    headers = {"Authorization": f"Bearer {make_token(['USER_READ'])}"}

    response = client.post("/users", headers=headers, json={"username": "jdoe", "realm": "/employees"})

    assert response.status_code == 403
    assert response.get_json()["type"] == "Unauthorized"
    assert response.get_json()["elements"] == ["USER_CREATE"]


def test_create_returns_entity_etag_and_statuses(created, connector):
    body = created.get_json()

    assert body["entity"]["username"] == "jdoe"
    assert body["entity"]["resources"] == ["ldap"]
    assert "password" not in body["entity"] or body["entity"]["password"] is None
    assert [s["status"] for s in body["propagationStatuses"]] == ["SUCCESS"]
    assert created.headers["ETag"].strip('"').isdigit()
    assert [o.uid for o in connector("ldap").objects("__ACCOUNT__")] == ["jdoe"]


def test_read_and_search(client, auth_headers, created):
    key = created.get_json()["entity"]["key"]

    read = client.get(f"/users/{key}", headers=auth_headers)
    search = client.get("/users?realm=/employees&name=jdoe", headers=auth_headers)

    assert read.status_code == 200
    assert read.get_json()["username"] == "jdoe"
    assert read.headers["ETag"] == created.headers["ETag"]
    assert search.get_json()["totalCount"] == 1
    assert client.get("/users?realm=/partners", headers=auth_headers).get_json()["totalCount"] == 0


def test_patch_requires_matching_etag(client, auth_headers, created):
    key = created.get_json()["entity"]["key"]
    patch = {"plainAttrs": [{"operation": "ADD_REPLACE", "attr": {"schema": "email", "values": ["john@example.com"]}}]}

    stale = client.patch(f"/users/{key}", headers={**auth_headers, "If-Match": '"1"'}, json=patch)
    fresh = client.patch(f"/users/{key}", headers={**auth_headers, "If-Match": created.headers["ETag"]}, json=patch)

    assert stale.status_code == 412
    assert stale.get_json()["type"] == "ConcurrentModification"
    assert fresh.status_code == 200
    assert fresh.get_json()["entity"]["plainAttrs"] == [{"schema": "email", "values": ["john@example.com"]}]
    assert [s["resource"] for s in fresh.get_json()["propagationStatuses"]] == ["ldap"]


def test_delete(client, auth_headers, created, connector):
    key = created.get_json()["entity"]["key"]

    response = client.delete(f"/users/{key}", headers=auth_headers)

    assert response.status_code == 200
    assert client.get(f"/users/{key}", headers=auth_headers).status_code == 404
    assert connector("ldap").objects("__ACCOUNT__") == []


def test_unknown_collection_is_json_404(client, auth_headers):
    response = client.get("/widgets", headers=auth_headers)

    assert response.status_code == 404
    assert response.get_json()["type"] == "NotFound"


def test_invalid_body_is_400(client, auth_headers):
    response = client.post("/users", headers=auth_headers, data="not json", content_type="text/plain")

    assert response.status_code == 400


def test_associate_assign_and_validation(client, auth_headers, services):
    user = client.post("/users", headers=auth_headers, json={"username": "jdoe", "realm": "/employees"})
    key = user.get_json()["entity"]["key"]

    assigned = client.post(f"/users/{key}/associate/assign", headers=auth_headers, json={"resources": ["ldap"]})
    empty = client.post(f"/users/{key}/associate/assign", headers=auth_headers, json={"resources": []})
    unknown = client.post(f"/users/{key}/associate/merge", headers=auth_headers, json={"resources": ["ldap"]})

    assert assigned.status_code == 200
    assert assigned.get_json()["entity"]["resources"] == ["ldap"]
    assert [s["status"] for s in assigned.get_json()["propagationStatuses"]] == ["SUCCESS"]
    assert empty.status_code == 400
    assert unknown.status_code == 404


def test_tasks_list_and_execute(client, auth_headers):
    tasks = client.get("/tasks", headers=auth_headers).get_json()
    response = client.post("/tasks/ldap-push/execute", headers=auth_headers)

    assert [t["key"] for t in tasks] == ["hr-pull", "ldap-push"]
    assert response.status_code == 200
    assert response.get_json()["status"] == "SUCCESS"
    executions = client.get("/tasks/ldap-push/executions", headers=auth_headers).get_json()
    assert len(executions) == 1


def test_execute_respond_async(client, auth_headers, services, connector):
    connector("hr").put(ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe", mail="jdoe@example.com"))

    response = client.post("/tasks/hr-pull/execute", headers={**auth_headers, "Prefer": "respond-async"})
    services.job_runner.wait(timeout=5)

    assert response.status_code == 202
    assert response.headers["Preference-Applied"] == "respond-async"
    assert response.get_json() == {"task": "hr-pull", "status": "QUEUED"}
    assert client.get("/users?name=jdoe", headers=auth_headers).get_json()["totalCount"] == 1


def test_interrupt_idle_task(client, auth_headers):
    response = client.post("/tasks/hr-pull/interrupt", headers=auth_headers)

    assert response.get_json() == {"task": "hr-pull", "interrupted": False}


def test_remediations_flow(client, auth_headers, services, connector):
    connector("hr").put(ConnectorObject.build("__ACCOUNT__", "nokey", mail="nokey@example.com"))
    client.post("/tasks/hr-pull/execute", headers=auth_headers)
    services.job_runner.wait(timeout=5)

    listing = client.get("/remediations", headers=auth_headers).get_json()
    assert listing["totalCount"] == 1
    key = listing["result"][0]["key"]

    assert client.get(f"/remediations/{key}", headers=auth_headers).get_json()["remoteName"] == "nokey"
    assert client.delete(f"/remediations/{key}", headers=auth_headers).status_code == 204
    assert client.get(f"/remediations/{key}", headers=auth_headers).status_code == 404


def test_resources(client, auth_headers, connector):
    connector("hr").put(ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe"))

    listing = client.get("/resources", headers=auth_headers).get_json()
    check = client.post("/resources/hr/check", headers=auth_headers)
    objects = client.get("/resources/hr/USER?size=10", headers=auth_headers).get_json()
    missing = client.get("/resources/nope", headers=auth_headers)

    assert [r["key"] for r in listing] == ["crm", "hr", "ldap"]
    assert check.status_code == 200 and check.get_json()["ok"] is True
    assert [o["fiql"] for o in objects["result"]] == ["uid==jdoe"]
    assert objects["nextPageCookie"] is None
    assert missing.status_code == 404
