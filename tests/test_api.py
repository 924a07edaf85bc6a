"""
Tests for the control API with a mocked lifecycle manager.
"""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from llama_lifecycle.entities.health_state import HealthState
from llama_lifecycle.entities.server_handle import ServerProcessHandle
from llama_lifecycle.entities.server_state import ServerState
from llama_lifecycle.frameworks_drivers.server_lifecycle_manager import ServerSlot
from llama_lifecycle.interface_adapters.api import API
from llama_lifecycle.shared.errors import (
    ClientRemoteError,
    HealthTimeout,
    InfeasiblePlacement,
    SchemaError,
    TerminationTimeout,
)

SERVER_ID = "llama-server_http_127.0.0.1_auto"


@pytest.fixture
def handle():
    return ServerProcessHandle(
        stable_id=SERVER_ID, pid=4242, command=["llama-server"], launched_at=1.0,
        port=8080, client=Mock(), health=HealthState.alive(),
    )


@pytest.fixture
def mock_manager(handle):
    """Create a mock lifecycle manager tracking one server."""
    manager = Mock()
    manager.ensure_ready = AsyncMock(return_value=handle)
    manager.stop = AsyncMock(return_value=None)
    manager.reap_orphans = AsyncMock(return_value=["llama-server_uds"])
    manager.sweep_unrecorded = AsyncMock(return_value=[5150])
    manager.select_model = AsyncMock(return_value=Mock(metadata=Mock(path="/models/a.Q8_0.gguf")))
    manager.check_health = AsyncMock(return_value={SERVER_ID: {**handle.summary(), "state": "ready"}})
    manager.send = AsyncMock(return_value=b'{"content": "hello"}')
    manager.shutdown = AsyncMock(return_value=None)
    manager.slots = {SERVER_ID: ServerSlot(stable_id=SERVER_ID, lock=asyncio.Lock(),
                                           state=ServerState.READY, handle=handle)}
    return manager


@pytest.fixture
def mock_inventory(cpu_budget):
    inventory = Mock()
    inventory.snapshot.return_value = [cpu_budget]
    return inventory


@pytest.fixture
def client(mock_manager, mock_inventory):
    return TestClient(API(mock_manager, mock_inventory).app)


class TestEnsureReadyEndpoint:
    """Test cases for POST /servers."""

    def test_returns_handle_summary(self, client, mock_manager):
        """Test that a ready server is described in the response."""
        response = client.post("/servers", json={"model_path": " /models/a.gguf ", "context_size": 2048})

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == SERVER_ID
        assert data["pid"] == 4242
        assert data["endpoint"] == "http://127.0.0.1:8080"
        mock_manager.ensure_ready.assert_awaited_once_with("/models/a.gguf", 2048, None, None)

    @pytest.mark.parametrize("body", [
        {},
        {"model_path": ""},
        {"model_path": "/m.gguf", "context_size": 0},
        {"model_path": "/m.gguf", "batch_size": "512"},
        {"model_path": "/m.gguf", "context_size": True},
        {"model_path": "/m.gguf", "timeout": -1},
        {"model_path": "/m.gguf", "model_candidates": ["/n.gguf"]},
        {"model_candidates": []},
        {"model_candidates": "/m.gguf"},
        {"model_candidates": ["/m.gguf", ""]},
    ])
    def test_invalid_request(self, client, body, mock_manager):
        """Test that malformed requests are rejected before reaching the manager."""
        response = client.post("/servers", json=body)

        assert response.status_code == 400
        mock_manager.ensure_ready.assert_not_awaited()

    def test_model_candidates(self, client, mock_manager):
        """Test that the selected candidate is the model the server is ensured for."""
        candidates = ["/models/a.Q4_K_M.gguf", " /models/a.Q8_0.gguf "]

        response = client.post("/servers", json={"model_candidates": candidates, "context_size": 4096})

        assert response.status_code == 200
        mock_manager.select_model.assert_awaited_once_with(
            ["/models/a.Q4_K_M.gguf", "/models/a.Q8_0.gguf"], 4096, None
        )
        mock_manager.ensure_ready.assert_awaited_once_with("/models/a.Q8_0.gguf", 4096, None, None)

    def test_no_candidate_fits(self, client, mock_manager):
        mock_manager.select_model.side_effect = InfeasiblePlacement({"candidates": 2})

        response = client.post("/servers", json={"model_candidates": ["/a.gguf", "/b.gguf"]})

        assert response.status_code == 409
        mock_manager.ensure_ready.assert_not_awaited()

    def test_missing_model_file(self, client, mock_manager):
        """Test that a missing model file maps to 404."""
        mock_manager.ensure_ready.side_effect = FileNotFoundError("/models/absent.gguf")

        response = client.post("/servers", json={"model_path": "/models/absent.gguf"})

        assert response.status_code == 404

    @pytest.mark.parametrize("error, status_code, error_type", [
        (SchemaError("llama.block_count", "integer"), 400, "invalid_model"),
        (InfeasiblePlacement({"context_size": 131072}), 409, "infeasible_placement"),
        (HealthTimeout(HealthState.unreachable("refused"), 45.0), 504, "health_timeout"),
        (TerminationTimeout("terminate", 3.0, [77]), 500, "termination_timeout"),
    ])
    def test_lifecycle_errors(self, client, mock_manager, error, status_code, error_type):
        """Test that lifecycle failures map to structured error responses."""
        mock_manager.ensure_ready.side_effect = error

        response = client.post("/servers", json={"model_path": "/models/a.gguf"})

        assert response.status_code == status_code
        assert response.json()["error"]["type"] == error_type
        assert response.json()["error"]["message"] == str(error)


class TestServerEndpoints:
    """Test cases for stop, reap and forwarding."""

    def test_stop(self, client, mock_manager):
        response = client.delete(f"/servers/{SERVER_ID}")

        assert response.status_code == 200
        assert response.json() == {"stopped": SERVER_ID}
        mock_manager.stop.assert_awaited_once_with(SERVER_ID)

    def test_stop_unknown(self, client, mock_manager):
        """Test that stopping an untracked server is a 404."""
        mock_manager.stop.side_effect = KeyError("unknown")

        response = client.delete("/servers/unknown")

        assert response.status_code == 404
        assert response.json()["error"]["type"] == "unknown_server"

    def test_reap(self, client, mock_manager):
        response = client.post("/servers/reap", params={"pattern": "llama-server_*"})

        assert response.status_code == 200
        assert response.json() == {"reaped": ["llama-server_uds"]}
        mock_manager.reap_orphans.assert_awaited_once_with("llama-server_*")
        mock_manager.sweep_unrecorded.assert_not_awaited()

    def test_reap_with_sweep(self, client, mock_manager):
        """Test that a sweep runs after the records are reaped and reports pids."""
        response = client.post("/servers/reap", params={"sweep": "true"})

        assert response.status_code == 200
        assert response.json() == {"reaped": ["llama-server_uds"], "swept": [5150]}
        mock_manager.reap_orphans.assert_awaited_once_with(None)
        mock_manager.sweep_unrecorded.assert_awaited_once_with()

    def test_forward_post(self, client, mock_manager, handle):
        """Test that a POST body is forwarded to the managed server."""
        response = client.post(f"/servers/{SERVER_ID}/completion", content=b'{"prompt": "hi"}')

        assert response.status_code == 200
        assert response.json() == {"content": "hello"}
        mock_manager.send.assert_awaited_once_with(handle, "completion", b'{"prompt": "hi"}')

    def test_forward_get(self, client, mock_manager, handle):
        response = client.get(f"/servers/{SERVER_ID}/v1/models")

        assert response.status_code == 200
        mock_manager.send.assert_awaited_once_with(handle, "v1/models", None)

    def test_forward_remote_error_keeps_status(self, client, mock_manager):
        """Test that the engine's own error status is passed through."""
        mock_manager.send.side_effect = ClientRemoteError(400, "prompt too long")

        response = client.post(f"/servers/{SERVER_ID}/completion", content=b"{}")

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "prompt too long"

    def test_forward_unknown_server(self, client):
        response = client.get("/servers/unknown/health")

        assert response.status_code == 404


class TestHealthEndpoint:
    """Test cases for GET /health."""

    def test_health(self, client, cpu_budget):
        """Test that health lists servers and devices."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["servers"][SERVER_ID]["state"] == "ready"
        assert data["devices"][0]["kind"] == "cpu"
        assert data["devices"][0]["usable_bytes"] == cpu_budget.usable_bytes


class TestLifespan:
    """Test cases for application startup and shutdown."""

    def test_shutdown_stops_servers_and_releases_devices(self, mock_manager, mock_inventory):
        with TestClient(API(mock_manager, mock_inventory).app) as client:
            assert client.get("/health").status_code == 200
            mock_inventory.close.assert_not_called()

        mock_manager.shutdown.assert_awaited_once_with()
        mock_inventory.close.assert_called_once_with()
