from types import SimpleNamespace

import pytest
import requests

from idmsync.connectors import ConnInstance
from idmsync.connectors.base import NAME, PASSWORD, UID, Attribute, GuardedString
from idmsync.connectors.exceptions import ConnectionFailedError, ConnectorAPIError, ConnectorInstantiationError
from idmsync.connectors.rest import RestConnector


class FakeResponse:
    def __init__(self, status_code=200, payload=None, url="http://store/api"):
        self.status_code = status_code
        self._payload = payload
        self.url = url
        self.text = "" if payload is None else str(payload)
        self.content = b"" if payload is None else b"{}"

    def json(self):
        return self._payload


class FakeSession:
    """Records requests and replays queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append(SimpleNamespace(method=method, url=url, headers=headers, **kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _connector(session, **config):
    connector = RestConnector(ConnInstance("rest", {"baseUrl": "http://store/api/", **config}))
    connector._session = session
    return connector


def test_base_url_is_required():
    with pytest.raises(ConnectorInstantiationError):
        RestConnector(ConnInstance("rest", {}))


def test_get_object_maps_json_and_restricts_attributes():
    session = FakeSession(FakeResponse(payload={"id": 7, "name": "jdoe", "attributes": {"mail": "j@x", "tags": ["a"]}}))
    connector = _connector(session)

    obj = connector.get_object("__ACCOUNT__", "7", connector.get_operation_options([
        SimpleNamespace(ext_attr_name="mail", password=False),
        SimpleNamespace(ext_attr_name=PASSWORD, password=True),
    ]))

    assert (obj.uid, obj.name) == ("7", "jdoe")
    assert obj.get_attribute_by_name("mail").values == ["j@x"]
    assert obj.get_attribute_by_name("tags").values == ["a"]
    assert session.calls[0].url == "http://store/api/users/7"
    assert session.calls[0].params == {"attributes": "mail"}


def test_get_object_not_found_is_none():
    assert _connector(FakeSession(FakeResponse(404))).get_object("__ACCOUNT__", "nope") is None


def test_http_error_raises_api_error():
    connector = _connector(FakeSession(FakeResponse(500, {"error": "boom"})))

    with pytest.raises(ConnectorAPIError) as exc:
        connector.get_object("__ACCOUNT__", "7")

    assert exc.value.status_code == 500


def test_network_failure_raises_connection_failed():
    connector = _connector(FakeSession(requests.ConnectionError("refused")))

    with pytest.raises(ConnectionFailedError):
        connector.test()


def test_unsupported_object_class():
    with pytest.raises(ConnectorAPIError):
        _connector(FakeSession()).get_object("__PRINTER__", "1")


def test_search_pages_with_cookie_and_filter():
    session = FakeSession(FakeResponse(payload={
        "items": [{"id": "a", "attributes": {"mail": "a@x"}}, {"id": "b", "attributes": {"mail": "b@y"}}],
        "next": 2,
        "remaining": 1,
    }))
    seen = []

    result = _connector(session).search(
        "__GROUP__", lambda o: o.get_attribute_by_name("mail").single_value.endswith("@x"),
        lambda o: seen.append(o.uid) or True, page_size=2, paged_results_cookie="0", order_by=["mail"])

    assert seen == ["a"]
    assert (result.paged_results_cookie, result.remaining_paged_results) == ("2", 1)
    assert session.calls[0].url == "http://store/api/groups"
    assert session.calls[0].params == {"offset": "0", "limit": 2, "orderBy": "mail"}


def test_create_reveals_guarded_password():
    session = FakeSession(FakeResponse(201, {"id": "42"}))

    uid = _connector(session).create("__ACCOUNT__", [
        Attribute(NAME, ["jdoe"]),
        Attribute(UID, ["jdoe"]),
        Attribute(PASSWORD, [GuardedString("s3cret")]),
        Attribute("mail", ["j@x"]),
    ])

    assert uid == "42"
    assert session.calls[0].method == "POST"
    assert session.calls[0].json == {
        "name": "jdoe",
        "id": "jdoe",
        "attributes": {PASSWORD: ["s3cret"], "mail": ["j@x"]},
    }


def test_update_without_body_keeps_uid():
    session = FakeSession(FakeResponse(204))

    assert _connector(session).update("__ACCOUNT__", "jdoe", [Attribute("mail", ["new@x"])]) == "jdoe"
    assert session.calls[0].method == "PUT"


def test_delete_of_missing_object_is_tolerated():
    session = FakeSession(FakeResponse(404))

    _connector(session).delete("__ACCOUNT__", "gone")

    assert session.calls[0].method == "DELETE"


def test_client_credentials_token_is_cached(monkeypatch):
    token_calls = []

    def fake_post(url, data, timeout):
        token_calls.append(data)
        return FakeResponse(payload={"access_token": "tok", "expires_in": 300})

    monkeypatch.setattr(requests, "post", fake_post)
    session = FakeSession(FakeResponse(200, {}), FakeResponse(200, {}))
    connector = _connector(session, tokenUrl="http://sso/token", clientId="idm", clientSecret="pw")

    connector.test()
    connector.test()

    assert len(token_calls) == 1
    assert token_calls[0]["client_id"] == "idm"
    assert all(c.headers["Authorization"] == "Bearer tok" for c in session.calls)


def test_authenticate():
    rejected = _connector(FakeSession(FakeResponse(401)), authenticatePath="/login")
    accepted = _connector(FakeSession(FakeResponse(200, {"id": "7"})), authenticatePath="/login")

    assert rejected.authenticate("jdoe", "bad") is None
    assert accepted.authenticate("jdoe", "good") == "7"
    assert _connector(FakeSession()).authenticate("jdoe", "pw") is None
