"""Tests for the HTTP store client (requests mocked out)."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from convoy.exceptions import StoreError, StoreUnavailableError
from convoy.sdk import StoreClient
from convoy.store import open_store


def response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return resp


@pytest.fixture
def client():
    return StoreClient("https://beads.example.test/", name="gastown", api_key="secret", timeout=5)


class TestRequests:
    def test_auth_header_and_base_url(self, client):
        assert client.server_url == "https://beads.example.test"
        assert client.session.headers["Authorization"] == "Bearer secret"

    def test_get_item(self, client):
        with patch.object(client.session, "request", return_value=response(payload={"id": "gt-a", "status": "hooked"})) as mock_req:
            item = client.get_item("gt-a")

        assert item.status == "hooked"
        mock_req.assert_called_once_with(
            "GET", "https://beads.example.test/api/v1/items/gt-a", params=None, json=None, timeout=5,
        )

    def test_get_missing_item(self, client):
        with patch.object(client.session, "request", return_value=response(404)):
            assert client.get_item("gt-a") is None

    def test_events_since(self, client):
        payload = {"events": [{"ordinal": 12, "event_type": "closed", "item_id": "gt-a"}]}
        with patch.object(client.session, "request", return_value=response(payload=payload)) as mock_req:
            events = client.events_since(11)

        assert events[0].is_close
        assert mock_req.call_args.kwargs["params"] == {"since": 11}

    def test_list_items_status_filter(self, client):
        with patch.object(client.session, "request", return_value=response(payload=[])) as mock_req:
            client.list_items(type="convoy", statuses=["open", "staged:ready"])

        assert mock_req.call_args.kwargs["params"] == {"type": "convoy", "status": "open,staged:ready"}

    def test_dependencies_with_status(self, client):
        payload = [{"item_id": "gt-b", "depends_on_id": "gt-a", "type": "blocks", "target_status": "open"}]
        with patch.object(client.session, "request", return_value=response(payload=payload)):
            result = client.dependencies_with_status("gt-b")

        dep, status = result[0]
        assert (dep.depends_on_id, dep.type, status) == ("gt-a", "blocks", "open")


class TestErrors:
    def test_connection_error_is_unavailable(self, client):
        with patch.object(client.session, "request", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(StoreUnavailableError, match="cannot reach"):
                client.get_item("gt-a")

    def test_timeout_is_unavailable(self, client):
        with patch.object(client.session, "request", side_effect=requests.Timeout()):
            with pytest.raises(StoreUnavailableError, match="timed out"):
                client.events_since(0)

    def test_server_error_is_unavailable(self, client):
        with patch.object(client.session, "request", return_value=response(503)):
            with pytest.raises(StoreUnavailableError):
                client.events_since(0)

    def test_client_error_is_store_error(self, client):
        with patch.object(client.session, "request", return_value=response(400)):
            with pytest.raises(StoreError):
                client.update_item("gt-a", status="bogus")


class TestOpenStore:
    def test_url_spec_opens_client(self, convoy_dir):
        store = open_store("gastown", {"url": "https://beads.example.test", "api_key": "k"}, timeout=7)
        assert isinstance(store, StoreClient)
        assert store.timeout == 7
        assert store.name == "gastown"
