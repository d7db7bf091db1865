from unittest.mock import Mock

import pytest

from chatsync.connection_manager import (
    ConnectionManager,
    calculate_backoff_delay,
    classify_quality,
    default_jitter,
)
from chatsync.credentials import CredentialProvider
from chatsync.errors import AuthenticationError, ConnectivityError, NotConnectedError
from chatsync.models import ConnectionQuality, ConnectionStatus, Message, WireMessage
from chatsync.network_monitor import NetworkMonitor
from fakes import ChannelFactory, DeferredSpawn, run_inline

RECONNECT = "_on_reconnect_timer"
HEARTBEAT = "_on_heartbeat"
PONG_TIMEOUT = "<lambda>"


def make_manager(channels, timers, **overrides):
    options = dict(
        url="ws://chat.test/ws",
        device_id="device-1",
        channel_factory=channels,
        timer_factory=timers,
        spawn=run_inline,
        jitter=lambda: 1.0,
        base_interval=1,
        max_interval=30,
        max_attempts=10,
        backoff_factor=2,
        use_exponential_backoff=True,
        ping_interval=30,
        pong_timeout=2,
        max_missed_pongs=3,
    )
    options.update(overrides)
    return ConnectionManager(**options)


def test_exponential_backoff_is_capped():
    delays = [calculate_backoff_delay(n, 2, 60, 1.5) for n in range(15)]

    assert delays[:3] == [2, 3, 4.5]
    assert delays == sorted(delays)
    assert max(delays) == 60


def test_linear_backoff_grows_by_base():
    delays = [calculate_backoff_delay(n, 2, 7, 1.5, use_exponential=False) for n in range(5)]

    assert delays == [2, 4, 6, 7, 7]


def test_jitter_stays_within_fifteen_percent():
    samples = [default_jitter() for _ in range(200)]

    assert all(0.85 <= s <= 1.15 for s in samples)


def test_quality_thresholds():
    connected = ConnectionStatus.CONNECTED
    assert classify_quality(ConnectionStatus.DISCONNECTED, 10, 0) is ConnectionQuality.UNKNOWN
    assert classify_quality(connected, None, 0) is ConnectionQuality.UNKNOWN
    assert classify_quality(connected, 50, 0) is ConnectionQuality.EXCELLENT
    assert classify_quality(connected, 300, 0) is ConnectionQuality.GOOD
    assert classify_quality(connected, 700, 0) is ConnectionQuality.FAIR
    assert classify_quality(connected, 1500, 0) is ConnectionQuality.POOR
    assert classify_quality(connected, 50, 0.6) is ConnectionQuality.POOR


def test_initialize_connects_and_reports_transitions(channels, timers):
    manager = make_manager(channels, timers)
    statuses = []
    manager.on_status_change(statuses.append)

    manager.initialize("token-1")

    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    assert manager.is_connected
    assert channels.last.token == "token-1"
    assert channels.last.device_id == "device-1"
    assert channels.last.sent_of_type("ping")


def test_initialize_with_same_token_is_a_no_op(channels, timers):
    manager = make_manager(channels, timers)
    manager.initialize("token-1")
    manager.initialize("token-1")

    assert len(channels.channels) == 1


def test_initialize_requires_credential(channels, timers):
    with pytest.raises(ValueError):
        make_manager(channels, timers).initialize("")


def test_attempt_counter_resets_after_success(timers):
    channels = ChannelFactory(ConnectivityError("refused"), ConnectivityError("refused"))
    manager = make_manager(channels, timers)

    manager.initialize("token-1")
    assert manager.status is ConnectionStatus.DISCONNECTED
    assert manager.reconnect_attempt == 1
    assert manager.last_reconnect_delay == 1

    timers.fire(RECONNECT)
    assert manager.reconnect_attempt == 2
    assert manager.last_reconnect_delay == 2

    timers.fire(RECONNECT)
    assert manager.is_connected
    assert manager.reconnect_attempt == 0

    channels.last.drop(ConnectivityError("reset by peer"))
    assert manager.status is ConnectionStatus.DISCONNECTED
    assert manager.last_reconnect_delay == 1


def test_channel_that_fails_to_start_is_closed(channels, timers):
    channels.start_failures.append(ConnectivityError("reader thread did not start"))
    manager = make_manager(channels, timers)

    manager.initialize("token-1")

    failed = channels.last
    assert failed.opened
    assert failed.closed
    assert manager.status is ConnectionStatus.DISCONNECTED
    assert manager.reconnect_attempt == 1
    assert timers.armed(RECONNECT)

    timers.fire(RECONNECT)
    assert manager.is_connected
    assert channels.last is not failed
    assert not channels.last.closed


def test_gives_up_after_max_attempts_until_network_returns(timers):
    failures = [ConnectivityError("refused")] * 3
    channels = ChannelFactory(*failures)
    network = NetworkMonitor(online=True)
    manager = make_manager(channels, timers, max_attempts=2, network_monitor=network)
    offline_events = []
    manager.on_offline_mode(offline_events.append)

    manager.initialize("token-1")
    timers.fire(RECONNECT)
    timers.fire(RECONNECT)

    assert len(channels.channels) == 3
    assert manager.state.degraded
    assert len(offline_events) == 1
    assert timers.armed(RECONNECT) == []

    network.report(False)
    network.report(True)

    assert manager.is_connected
    assert not manager.state.degraded


def test_auth_rejection_pauses_reconnect(timers):
    channels = ChannelFactory(AuthenticationError("HTTP 401", 401))
    network = NetworkMonitor(online=True)
    manager = make_manager(channels, timers, network_monitor=network)
    failures = []
    manager.on_auth_failure(failures.append)

    manager.initialize("expired")

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert manager.state.auth_paused
    assert failures[0].status_code == 401
    assert timers.armed(RECONNECT) == []

    network.report(False)
    network.report(True)
    assert len(channels.channels) == 1

    manager.update_credential("fresh")
    assert manager.is_connected
    assert channels.last.token == "fresh"


def test_credential_provider_change_reconnects(channels, timers):
    provider = CredentialProvider("token-1")
    manager = make_manager(channels, timers, credential_provider=provider)
    manager.initialize("token-1")
    first = channels.last

    provider.set_token("token-2")

    assert first.closed
    assert channels.last.token == "token-2"
    assert manager.is_connected


def test_clearing_credential_disconnects(channels, timers):
    manager = make_manager(channels, timers)
    manager.initialize("token-1")

    manager.update_credential(None)

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert channels.last.closed
    assert timers.armed(RECONNECT) == []


def test_send_while_disconnected_raises(channels, timers):
    manager = make_manager(channels, timers)

    with pytest.raises(NotConnectedError):
        manager.send(Message(conversation_id="c", content="hi"))


def test_send_writes_message_frame(channels, timers):
    manager = make_manager(channels, timers)
    manager.initialize("token-1")
    message = Message(conversation_id="c", content="hi")

    manager.send(message)

    frame = channels.last.sent_of_type("message")[0]
    assert frame["payload"]["id"] == message.id
    assert frame["payload"]["sessionId"] == "c"


def test_send_failure_disconnects_and_schedules_reconnect(channels, timers):
    manager = make_manager(channels, timers)
    manager.initialize("token-1")
    channels.last.broken = True

    with pytest.raises(NotConnectedError):
        manager.send(WireMessage(type="status", metadata={"typing": True}))

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert len(timers.armed(RECONNECT)) == 1


def test_pong_updates_latency_and_quality(channels, timers):
    manager = make_manager(channels, timers)
    qualities = []
    manager.on_quality_change(qualities.append)
    manager.initialize("token-1")
    assert manager.quality is ConnectionQuality.UNKNOWN

    ping = channels.last.sent_of_type("ping")[0]
    channels.last.receive({"type": "pong", "metadata": {"pingId": ping["metadata"]["pingId"]}})

    assert manager.quality is ConnectionQuality.EXCELLENT
    assert qualities == [ConnectionQuality.EXCELLENT]
    assert manager.packet_loss_ratio == 0.0
    assert timers.armed(PONG_TIMEOUT) == []


def test_missed_pongs_force_reconnect(channels, timers):
    manager = make_manager(channels, timers)
    manager.initialize("token-1")
    channel = channels.last

    for _ in range(3):
        timers.fire(PONG_TIMEOUT)
        assert manager.is_connected
        timers.fire(HEARTBEAT)

    assert manager.quality is ConnectionQuality.POOR
    assert manager.packet_loss_ratio == 1.0

    timers.fire(PONG_TIMEOUT)

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert channel.closed
    assert len(timers.armed(RECONNECT)) == 1


def test_server_ping_is_answered(channels, timers):
    manager = make_manager(channels, timers)
    manager.initialize("token-1")

    channels.last.receive({"type": "ping", "metadata": {"pingId": "srv-1"}})

    pongs = channels.last.sent_of_type("pong")
    assert pongs[0]["metadata"]["pingId"] == "srv-1"


def test_inbound_frames_reach_listeners_and_garbage_is_dropped(channels, timers):
    manager = make_manager(channels, timers)
    frames = []
    manager.on_message(frames.append)
    manager.initialize("token-1")

    channels.last.receive("not json")
    channels.last.receive({"type": "teleport"})
    channels.last.receive({
        "type": "message",
        "timestamp": 1700000000000,
        "payload": {"id": "msg_in", "sessionId": "c", "content": "hello", "senderType": "customer"},
    })

    assert manager.is_connected
    assert len(frames) == 1
    assert frames[0].payload.id == "msg_in"


def test_network_loss_drops_channel_and_waits(channels, timers):
    network = NetworkMonitor(online=True)
    manager = make_manager(channels, timers, network_monitor=network)
    manager.initialize("token-1")

    network.report(False)

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert channels.last.closed
    assert timers.armed(RECONNECT) == []

    network.report(True)
    assert manager.is_connected
    assert len(channels.channels) == 2


def test_initialize_while_offline_waits_for_network(channels, timers):
    network = NetworkMonitor(online=False)
    manager = make_manager(channels, timers, network_monitor=network)

    manager.initialize("token-1")
    assert channels.channels == []

    network.report(True)
    assert manager.is_connected


def test_close_stops_everything(channels, timers):
    network = NetworkMonitor(online=True)
    manager = make_manager(channels, timers, network_monitor=network)
    manager.initialize("token-1")
    channel = channels.last

    manager.close()

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert channel.closed
    assert timers.armed() == []

    channel.drop(ConnectivityError("closed"))
    network.report(False)
    network.report(True)
    assert timers.armed() == []
    assert len(channels.channels) == 1


def test_health_check_failure_counts_as_failed_attempt(channels, timers):
    health = Mock()
    health.is_available.return_value = False
    manager = make_manager(channels, timers, health_check=health)

    manager.initialize("token-1")

    assert channels.channels == []
    assert manager.status is ConnectionStatus.DISCONNECTED
    assert len(timers.armed(RECONNECT)) == 1


def test_late_handshake_from_superseded_attempt_is_discarded(timers):
    spawn = DeferredSpawn()
    channels = ChannelFactory()
    manager = make_manager(channels, timers, spawn=spawn)
    manager.initialize("token-1")
    manager.close()

    spawn.run_all()

    assert channels.last.closed
    assert manager.status is ConnectionStatus.DISCONNECTED


def test_failing_listener_does_not_block_others(channels, timers):
    manager = make_manager(channels, timers)

    def broken(status):
        raise RuntimeError("listener bug")

    statuses = []
    manager.on_status_change(broken)
    unsubscribe = manager.on_status_change(statuses.append)
    manager.initialize("token-1")
    unsubscribe()
    manager.close()

    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]


def test_dispose_unsubscribes_from_collaborators(channels, timers):
    network = NetworkMonitor(online=True)
    provider = CredentialProvider()
    manager = make_manager(channels, timers, network_monitor=network, credential_provider=provider)
    manager.initialize("token-1")

    manager.dispose()
    provider.set_token("other")
    network.report(False)
    network.report(True)

    assert len(channels.channels) == 1
