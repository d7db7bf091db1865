"""Deterministic stand-ins for sockets, timers and threads."""
import json

from chatsync.errors import ConnectivityError, NotConnectedError
from chatsync.models import ConnectionQuality, ConnectionStatus


def run_inline(target):
    target()


class DeferredSpawn:
    """Collects spawned work so a test decides when it runs."""

    def __init__(self):
        self.pending = []

    def __call__(self, target):
        self.pending.append(target)

    def run_all(self):
        while self.pending:
            self.pending.pop(0)()


class FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    @property
    def name(self):
        return getattr(self.function, "__name__", "")

    @property
    def active(self):
        return self.started and not self.cancelled and not self.fired

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        assert self.active, f"timer {self.name} is not armed"
        self.fired = True
        self.function()


class TimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    def armed(self, name=None):
        return [t for t in self.timers if t.active and (name is None or t.name == name)]

    def fire(self, name):
        armed = self.armed(name)
        assert armed, f"no armed {name} timer"
        armed[-1].fire()


class FakeChannel:
    def __init__(self, url, token, device_id, failure=None):
        self.url = url
        self.token = token
        self.device_id = device_id
        self.failure = failure
        self.start_failure = None
        self.opened = False
        self.closed = False
        self.broken = False
        self.sent = []
        self.on_frame = None
        self.on_close = None

    def open(self):
        if self.failure is not None:
            raise self.failure
        self.opened = True

    def start(self, on_frame, on_close):
        if self.start_failure is not None:
            raise self.start_failure
        self.on_frame = on_frame
        self.on_close = on_close

    def send(self, text):
        if self.broken:
            raise ConnectivityError("socket is gone")
        self.sent.append(json.loads(text))

    def close(self):
        self.closed = True

    def receive(self, frame):
        self.on_frame(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def drop(self, error=None):
        self.on_close(error)

    def sent_of_type(self, frame_type):
        return [frame for frame in self.sent if frame["type"] == frame_type]


class ChannelFactory:
    """Each call builds a channel; queued failures are used up in order."""

    def __init__(self, *failures):
        self.failures = list(failures)
        self.start_failures = []
        self.channels = []

    def fail_next(self, *failures):
        self.failures.extend(failures)

    def __call__(self, url, token, device_id, connect_timeout=None):
        failure = self.failures.pop(0) if self.failures else None
        channel = FakeChannel(url, token, device_id, failure)
        if self.start_failures:
            channel.start_failure = self.start_failures.pop(0)
        self.channels.append(channel)
        return channel

    @property
    def last(self):
        return self.channels[-1]


class FakeConnection:
    """Connection manager double for coordinator tests."""

    def __init__(self, connected=True):
        self.status = ConnectionStatus.CONNECTED if connected else ConnectionStatus.DISCONNECTED
        self.quality = ConnectionQuality.UNKNOWN
        self.reject = False
        self.attempts = 0
        self.sent = []
        self._listeners = {"status": [], "quality": [], "message": []}

    @property
    def is_connected(self):
        return self.status is ConnectionStatus.CONNECTED

    def send(self, payload):
        self.attempts += 1
        if not self.is_connected or self.reject:
            raise NotConnectedError("server did not accept the frame")
        self.sent.append(payload)

    def on_status_change(self, callback):
        return self._add("status", callback)

    def on_quality_change(self, callback):
        return self._add("quality", callback)

    def on_message(self, callback):
        return self._add("message", callback)

    def set_status(self, status):
        self.status = status
        for callback in list(self._listeners["status"]):
            callback(status)

    def push(self, frame):
        for callback in list(self._listeners["message"]):
            callback(frame)

    def listener_count(self):
        return sum(len(callbacks) for callbacks in self._listeners.values())

    def _add(self, kind, callback):
        self._listeners[kind].append(callback)

        def unsubscribe():
            if callback in self._listeners[kind]:
                self._listeners[kind].remove(callback)

        return unsubscribe
