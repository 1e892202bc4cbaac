import heapq
import itertools

import pytest

from streams import PortIOError


class FakeHandle:

    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Manual clock: callbacks only run when the test advances time."""

    def __init__(self):
        self._now = 0.0
        self._queue = []
        self._counter = itertools.count()

    def time(self):
        return self._now

    def call_later(self, delay, callback, *args):
        handle = FakeHandle(self._now + delay, callback, args)
        heapq.heappush(self._queue, (handle.when, next(self._counter), handle))
        return handle

    def call_soon(self, callback, *args):
        return self.call_later(0, callback, *args)

    @property
    def pending(self):
        return [handle for _, _, handle in self._queue if not handle.cancelled]

    def advance(self, dt=0):
        deadline = self._now + dt
        while self._queue and self._queue[0][0] <= deadline:
            when, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, when)
            if not handle.cancelled:
                handle.callback(*handle.args)
        self._now = deadline


class FakePort:
    """
    Scripted instrument: `responses` maps a written frame to the bytes the device
    answers with, delivered on the next loop iteration.
    """

    def __init__(self, loop, responses=None):
        self.loop = loop
        self.responses = dict(responses or {})
        self.written = []
        self.buffer = bytearray()
        self.callback = None
        self.error_callback = None
        self.fail_writes = False
        self.closed = False

    def add_reader(self, callback, error_callback=None):
        self.callback = callback
        self.error_callback = error_callback

    def remove_reader(self):
        self.callback = None
        self.error_callback = None

    def close(self):
        self.closed = True

    def write(self, data):
        if self.fail_writes:
            raise PortIOError("device unplugged")
        self.written.append(bytes(data))
        response = self.responses.get(bytes(data))
        if response:
            self.loop.call_soon(self.feed, response)

    def feed(self, data):
        self.buffer.extend(data)
        if self.callback is not None:
            self.callback()

    @property
    def in_waiting(self):
        return len(self.buffer)

    def read(self, nbytes=None):
        if nbytes is None:
            nbytes = len(self.buffer)
        data = bytes(self.buffer[:nbytes])
        del self.buffer[:nbytes]
        return data

    def reset_input_buffer(self):
        self.buffer.clear()

    def opcodes(self):
        return [chr(frame[0]) for frame in self.written]


class Recorder:

    def __init__(self):
        self.frames = []
        self.replies = []
        self.errors = []

    def frame_received(self, frame):
        self.frames.append(frame)

    def reply_received(self, data):
        self.replies.append(data)

    def error_received(self, exc):
        self.errors.append(exc)


@pytest.fixture
def loop():
    return FakeLoop()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def port(loop):
    return FakePort(loop)


@pytest.fixture
def sawtooth():
    return bytes(0x80 + (i * 127) // 199 for i in range(200))
