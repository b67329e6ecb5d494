"""Tests for configuration loading and the HTTP surface."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import prometheus_client.core
import pydantic
import pytest
from starlette.testclient import TestClient

from slurm_monitor import fetcher, metrics, models, poller, server
from slurm_monitor.remote import ConnectionState, session

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _write_config(tmp_path, **data):
    path = tmp_path / "slurminal.json"
    path.write_text(json.dumps(data))
    return path


def test_load_config_defaults(tmp_path):
    """Only host and user are required."""
    config = server.load_config(str(_write_config(tmp_path, host="ozstar", user="alice")))

    assert config.host == "ozstar"
    assert config.user == "alice"
    assert config.name == "Slurminal"
    assert config.poll_interval == poller.DEFAULT_POLL_INTERVAL
    assert config.reconnect_delay == session.DEFAULT_RECONNECT_DELAY
    assert config.command_timeout == session.DEFAULT_COMMAND_TIMEOUT
    assert config.quota_filesystems == list(fetcher.DEFAULT_QUOTA_FILESYSTEMS)
    assert config.log_tail_lines == 4
    assert config.metrics_path == "/metrics"


def test_load_config_overrides(tmp_path):
    path = _write_config(
        tmp_path,
        host="ozstar",
        user="alice",
        name="OzSTAR",
        poll_interval=10,
        command_timeout=None,
        quota_filesystems=["/fred", "/home"],
    )
    config = server.load_config(str(path))

    assert config.name == "OzSTAR"
    assert config.poll_interval == 10
    assert config.command_timeout is None
    assert config.quota_filesystems == ["/fred", "/home"]


def test_load_config_missing_file(tmp_path):
    """A missing config file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        server.load_config(str(tmp_path / "absent.json"))


@pytest.mark.parametrize(
    "data",
    [
        {"host": "ozstar"},
        {"host": "", "user": "alice"},
        {"host": "ozstar", "user": "alice", "poll_interval": 0},
        {"host": "ozstar", "user": "alice", "port": 70000},
    ],
)
def test_load_config_invalid(tmp_path, data):
    """Invalid settings are rejected by validation."""
    with pytest.raises(pydantic.ValidationError):
        server.load_config(str(_write_config(tmp_path, **data)))


def test_create_app_from_environment(tmp_path, monkeypatch):
    """The config path can come from the environment."""
    path = _write_config(tmp_path, host="ozstar", user="alice", key_dir=str(tmp_path))
    monkeypatch.setenv(server.CONFIG_ENV_VAR, str(path))
    app = server.create_app()
    assert {route.path for route in app.routes} >= {"/metrics", "/snapshot", "/status"}


def test_create_monitor_wires_components():
    """create_monitor() builds a session and a custom registry."""
    config = server.MonitorConfig(host="ozstar", user="alice", reconnect_delay=2.5)
    monitor = server.create_monitor(config)

    assert monitor.session.host == "ozstar"
    assert monitor.session.reconnect_delay == 2.5
    assert monitor.orchestrator.user == "alice"
    assert monitor.session.status is ConnectionState.DISCONNECTED
    assert monitor.registry is not prometheus_client.REGISTRY


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_session() -> MagicMock:
    mock = MagicMock(spec=session.SessionManager)
    mock.status = ConnectionState.CONNECTED
    return mock


@pytest.fixture
def mock_driver() -> MagicMock:
    driver = MagicMock(spec=poller.PollDriver)
    driver.latest = None
    driver.last_duration = None
    driver.error_count = 0
    return driver


@pytest.fixture
def monitor(mock_session, mock_driver) -> server.Monitor:
    registry = prometheus_client.core.CollectorRegistry()
    registry.register(metrics.SnapshotCollector(mock_driver, lambda: mock_session.status))
    return server.Monitor(
        config=server.MonitorConfig(host="ozstar", user="alice", name="OzSTAR"),
        session=mock_session,
        orchestrator=MagicMock(spec=fetcher.SnapshotOrchestrator),
        driver=mock_driver,
        registry=registry,
    )


@pytest.fixture
def client(monitor) -> TestClient:
    """Client without lifespan, so no connection or polling is started."""
    return TestClient(server.create_starlette_app(monitor))


def test_metrics_endpoint(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert 'slurm_monitor_connection_state{state="connected"} 1.0' in response.text


def test_snapshot_before_first_fetch(client):
    """/snapshot is unavailable until a snapshot exists."""
    response = client.get("/snapshot")
    assert response.status_code == 503


def test_snapshot_endpoint(client, mock_driver):
    mock_driver.latest = models.Snapshot(
        jobs=(models.Job(job_id=7, name="train", state="RUNNING"),),
        node_summary=models.NodeSummary(total_nodes=2, idle_nodes=2),
        top_users=(models.UserUsage("alice", 8),),
        fair_share=models.FairShareInfo("alice", fair_share_factor=0.5),
        captured_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    response = client.get("/snapshot")

    assert response.status_code == 200
    body = response.json()
    assert body["jobs"][0]["job_id"] == 7
    assert body["jobs"][0]["exit_code"] is None
    assert body["node_summary"]["total_nodes"] == 2
    assert body["top_users"] == [{"user": "alice", "cpus": 8}]
    assert body["fair_share"]["fair_share_factor"] == 0.5
    assert body["quota"] == {"filesystems": []}
    assert body["captured_at"] == "2024-01-01T00:00:00+00:00"


def test_status_endpoint(client, mock_session):
    mock_session.status = ConnectionState.RECONNECTING
    response = client.get("/status")
    assert response.json() == {"name": "OzSTAR", "status": "reconnecting"}


def test_refresh_endpoint(client, mock_driver):
    """POST /refresh accepts the request and runs a cycle in the background."""
    response = client.post("/refresh")
    assert response.status_code == 202
    mock_driver.refresh_now.assert_called_once()


def test_refresh_requires_post(client):
    assert client.get("/refresh").status_code == 405


def test_logtail_endpoint(client, mock_driver):
    mock_driver.tail_log.return_value = "epoch 9\nepoch 10\n"
    response = client.get("/logtail", params={"path": "/home/alice/slurm-7.out"})

    assert response.status_code == 200
    assert response.text == "epoch 9\nepoch 10\n"
    mock_driver.tail_log.assert_called_once_with("/home/alice/slurm-7.out", 4)


def test_logtail_custom_lines(client, mock_driver):
    mock_driver.tail_log.return_value = ""
    client.get("/logtail", params={"path": "/x.out", "lines": "25"})
    mock_driver.tail_log.assert_called_once_with("/x.out", 25)


def test_logtail_missing_path(client, mock_driver):
    assert client.get("/logtail").status_code == 400
    mock_driver.tail_log.assert_not_called()


def test_logtail_bad_lines(client):
    response = client.get("/logtail", params={"path": "/x.out", "lines": "many"})
    assert response.status_code == 400


def test_logtail_missing_file(client, mock_driver):
    """A failed tail returns 404 with the remote error."""
    mock_driver.tail_log.side_effect = session.CommandFailed(1, "tail: cannot open '/x.out'")
    response = client.get("/logtail", params={"path": "/x.out"})
    assert response.status_code == 404
    assert "cannot open" in response.text


def test_logtail_not_connected(client, mock_driver):
    mock_driver.tail_log.side_effect = session.NotConnected("disconnected")
    response = client.get("/logtail", params={"path": "/x.out"})
    assert response.status_code == 503


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def test_lifespan_connects_polls_and_disposes(monitor, mock_session, mock_driver):
    """Startup connects and starts polling; shutdown stops and disposes."""
    with TestClient(server.create_starlette_app(monitor)):
        mock_session.connect.assert_called_once()
        mock_driver.start.assert_called_once()
    mock_driver.stop.assert_called_once()
    mock_session.dispose.assert_called_once()


def test_lifespan_survives_connect_failure(monitor, mock_session, mock_driver):
    """A failed initial connect still starts polling."""
    mock_session.connect.side_effect = session.NoCredentialFound("no key")
    with TestClient(server.create_starlette_app(monitor)) as client:
        assert client.get("/status").json()["status"] == "connected"
    mock_driver.start.assert_called_once()
