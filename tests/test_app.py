from datetime import datetime, timezone

import pytest

from chatsync import settings
from chatsync.app import ChatSession, build_network_monitor, log_sync_state
from chatsync.checkpoint import SyncCheckpoint
from chatsync.message_store import MemoryMessageStore
from chatsync.models import ConnectionStatus, DeliveryStatus, SyncState
from chatsync.network_monitor import NetworkMonitor, ProbeNetworkMonitor
from fakes import ChannelFactory, run_inline


@pytest.fixture
def session(tmp_path, timers):
    channels = ChannelFactory()
    session = ChatSession(
        store=MemoryMessageStore(),
        network_monitor=NetworkMonitor(online=True),
        queue_dir=tmp_path / "queue",
        checkpoint_dir=tmp_path / "checkpoints",
        coordinator_options={"timer_factory": timers, "spawn": run_inline},
        url="ws://chat.test/ws",
        device_id="device-1",
        channel_factory=channels,
        timer_factory=timers,
        spawn=run_inline,
        health_check=None,
    )
    session.channels = channels
    yield session
    session.sign_out()


def test_sign_in_connects_and_sends(session):
    session.sign_in("token-1")

    message = session.send_message("conv-1", "hello there")

    assert session.connection.is_connected
    assert message.delivery_status is DeliveryStatus.SENT
    assert session.channels.last.sent_of_type("message")[0]["payload"]["content"] == "hello there"
    assert [m.id for m in session.history("conv-1")] == [message.id]


def test_sign_out_tears_everything_down(session):
    session.sign_in("token-1")
    channel = session.channels.last

    session.sign_out()

    assert channel.closed
    assert not session.signed_in
    assert session.credentials.get_token() is None
    with pytest.raises(RuntimeError):
        session.send_message("conv-1", "too late")


def test_sign_in_twice_is_rejected(session):
    session.sign_in("token-1")

    with pytest.raises(RuntimeError):
        session.sign_in("token-2")


def test_messages_queued_before_connection_survive(session):
    session.network_monitor.report(False)
    session.sign_in("token-1")
    states = []
    session.register(states.append)

    message = session.send_message("conv-1", "offline hello")
    assert message.delivery_status is DeliveryStatus.PENDING
    assert states[-1].queue_size == 1

    session.network_monitor.report(True)

    assert session.connection.is_connected
    assert states[-1].queue_size == 0
    assert session.store.find("conv-1", message.id).delivery_status is DeliveryStatus.DELIVERED


def test_status_observer_passthrough(session):
    session.sign_in("token-1")
    statuses = []
    session.on_status_change(statuses.append)

    session.channels.last.drop()

    assert statuses == [ConnectionStatus.DISCONNECTED]


def test_build_network_monitor_uses_probe_url(monkeypatch):
    monkeypatch.setattr(settings, "NETWORK_PROBE_URL", None)
    assert type(build_network_monitor()) is NetworkMonitor

    monkeypatch.setattr(settings, "NETWORK_PROBE_URL", "http://probe.test")
    assert isinstance(build_network_monitor(), ProbeNetworkMonitor)


def test_log_sync_state_formats_snapshot(caplog):
    with caplog.at_level("INFO"):
        log_sync_state(SyncState(queue_size=3, is_syncing=True))

    assert "queue 3" in caplog.text
    assert "syncing" in caplog.text


def test_validate_config_collects_errors(monkeypatch):
    monkeypatch.setattr(settings, "WS_URL", "http://chat.test")
    monkeypatch.setattr(settings, "MESSAGE_STORE", "postgres")
    monkeypatch.setattr(settings, "DATABASE_URL", None)

    with pytest.raises(ValueError) as excinfo:
        settings.validate_config()

    assert "WS_URL" in str(excinfo.value)
    assert "DATABASE_URL" in str(excinfo.value)


def test_checkpoint_round_trip(tmp_path):
    checkpoint = SyncCheckpoint(tmp_path)
    assert checkpoint.get_last_sync_time() is None

    synced_at = datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)
    checkpoint.save_sync_time(synced_at)

    assert SyncCheckpoint(tmp_path).get_last_sync_time() == synced_at


def test_checkpoint_ignores_corrupt_file(tmp_path):
    (tmp_path / "sync.json").write_text("garbage")

    assert SyncCheckpoint(tmp_path).get_last_sync_time() is None


def test_validate_config_rejects_backoff_factor_that_lets_delays_shrink(monkeypatch):
    monkeypatch.setattr(settings, "WS_URL", "ws://chat.test")
    monkeypatch.setattr(settings, "MESSAGE_STORE", "memory")
    monkeypatch.setattr(settings, "BACKOFF_FACTOR", 1.2)
    monkeypatch.setattr(settings, "USE_EXPONENTIAL_BACKOFF", True)

    with pytest.raises(ValueError) as excinfo:
        settings.validate_config()
    assert "BACKOFF_FACTOR" in str(excinfo.value)

    monkeypatch.setattr(settings, "USE_EXPONENTIAL_BACKOFF", False)
    settings.validate_config()

    monkeypatch.setattr(settings, "USE_EXPONENTIAL_BACKOFF", True)
    monkeypatch.setattr(settings, "BACKOFF_FACTOR", settings.MIN_BACKOFF_FACTOR)
    settings.validate_config()
