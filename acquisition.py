"""
acquisition
===========

Length-driven state machine that takes one capture off the instrument: paced
setup frames, arm, wait for the acknowledgment byte, then read each channel back
by exact byte count. The device has no framing and no retry, so every waiting
state is guarded by a timeout that returns the machine to `Idle`.

The machine never blocks. It is driven by the port's readable notifications and
by timer handles on the loop, and reports upwards through a listener object
with `frame_received(frame)`, `reply_received(data)` and `error_received(exc)`.
"""

# pylama:ignore=W1203

import asyncio
from collections import namedtuple
from enum import IntEnum
import logging

import protocol
from streams import PortIOError


LOG = logging.getLogger(__name__)


class AcquisitionInProgress(RuntimeError):
    pass


class AcquisitionAborted(RuntimeError):
    pass


class AcquisitionTimeout(TimeoutError):
    def __init__(self, state):
        super().__init__(f"Timed out in state {state.name}")
        self.state = state


class AcquisitionState(IntEnum):
    Idle         = 0
    Configuring  = 1
    ArmPending   = 2
    AwaitCapture = 3
    AwaitCh1     = 4
    AwaitCh2     = 5
    AwaitReply   = 6
    Complete     = 7
    Failed       = 8


UNGUARDED_STATES = {AcquisitionState.Idle, AcquisitionState.Complete}


class Timings(namedtuple('Timings', ['state_timeout', 'settle', 'setup_gap', 'dds_gap', 'digital_gap', 'quiet'],
                           defaults=(5.0, 0.1, 0.05, 0.02, 0.03, 0.1))):
    def scaled(self, factor):
        return Timings(*(value * factor for value in self))


class CaptureFrame(namedtuple('CaptureFrame', ['sequence', 'config', 'ch1', 'ch2'])):
    @property
    def channels(self):
        return [name for name in ('ch1', 'ch2') if getattr(self, name)]


class AcquisitionMachine:

    def __init__(self, port, listener, loop=None, timings=None):
        self._port = port
        self._listener = listener
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self.timings = timings if timings is not None else Timings()
        self.state = AcquisitionState.Idle
        self.step = None
        self.config = None
        self.sequence = 0
        self._setup = None
        self._plan = None
        self._expected = None
        self._channel = None
        self._data = None
        self._reply = None
        self._timeout_handle = None
        self._pending = None
        port.add_reader(self._readable, self._port_failed)

    def __repr__(self):
        state = self.state.name if self.step is None else f'{self.state.name}({self.step})'
        return f'<{self.__class__.__name__}:{state}>'

    @property
    def idle(self):
        return self.state == AcquisitionState.Idle

    @property
    def timeout_pending(self):
        return self._timeout_handle is not None

    def close(self):
        self._reset()
        self._port.remove_reader()

    def start(self, config):
        if not self.idle:
            raise AcquisitionInProgress(f"Capture already in flight ({self!r})")
        config = config.validate()
        self.config = config
        self.sequence += 1
        self._setup = config.setup_frames()
        self._plan = config.read_plan()
        self._data = {'ch1': b'', 'ch2': b''}
        LOG.debug(f"Starting capture {self.sequence} in mode {config.acquisition_mode.name}")
        self._port.reset_input_buffer()
        self._configure(0)

    def abort(self):
        LOG.info(f"Abort requested in {self!r}")
        try:
            self.send(protocol.abort())
        finally:
            self._reset()

    def send(self, frame):
        try:
            self._port.write(frame)
        except PortIOError:
            self._reset()
            raise

    def query(self, frame, nbytes=None):
        if not self.idle:
            raise AcquisitionInProgress(f"Cannot query while {self!r}")
        self._expected = nbytes
        self._reply = bytearray()
        self._port.reset_input_buffer()
        self._transition(AcquisitionState.AwaitReply)
        self._write(frame)

    def _transition(self, state, step=None):
        LOG.debug(f"{self.state.name} -> {state.name}" + ('' if step is None else f"({step})"))
        self.state = state
        self.step = step
        self._cancel_timeout()
        if state not in UNGUARDED_STATES:
            self._timeout_handle = self._loop.call_later(self.timings.state_timeout, self._timed_out)

    def _cancel_timeout(self):
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _cancel_pending(self):
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _reset(self):
        self._cancel_pending()
        self._cancel_timeout()
        self._port.reset_input_buffer()
        self.state = AcquisitionState.Idle
        self.step = None
        self._setup = self._plan = self._expected = self._channel = self._reply = None

    def _write(self, frame):
        try:
            self._port.write(frame)
        except PortIOError as exc:
            self._fail(exc)
            return False
        return True

    def _fail(self, exc):
        LOG.error(f"Transport failure in {self!r}: {exc}")
        self._reset()
        # Failed is visible to the listener, Idle once it returns
        self.state = AcquisitionState.Failed
        try:
            self._listener.error_received(exc)
        finally:
            if self.state == AcquisitionState.Failed:
                self.state = AcquisitionState.Idle

    def _port_failed(self, exc):
        if not isinstance(exc, PortIOError):
            exc = PortIOError(str(exc))
        self._fail(exc)

    def _timed_out(self):
        self._timeout_handle = None
        state = self.state
        LOG.warning(f"Timed out waiting in state {state.name}")
        self._reset()
        self._listener.error_received(AcquisitionTimeout(state))

    def _configure(self, step):
        self._pending = None
        self._transition(AcquisitionState.Configuring, step)
        if not self._write(self._setup[step]):
            return
        if step + 1 < len(self._setup):
            self._pending = self._loop.call_later(self.timings.setup_gap, self._configure, step + 1)
        else:
            self._transition(AcquisitionState.ArmPending)
            self._pending = self._loop.call_later(self.timings.setup_gap, self._arm)

    def _arm(self):
        self._pending = None
        self._transition(AcquisitionState.AwaitCapture)
        self._write(protocol.capture())

    def _acknowledged(self):
        ack = self._port.read(1)
        LOG.debug(f"Capture acknowledged with {ack!r}")
        self._port.reset_input_buffer()
        self._transition(AcquisitionState.AwaitCapture)
        self._pending = self._loop.call_later(self.timings.settle, self._request_next)

    def _request_next(self):
        self._pending = None
        frame, self._expected, self._channel = self._plan.pop(0)
        self._port.reset_input_buffer()
        self._transition(AcquisitionState.AwaitCh1 if self._channel == 'ch1' else AcquisitionState.AwaitCh2)
        self._write(frame)

    def _collect(self):
        if self._port.in_waiting < self._expected:
            return
        self._data[self._channel] = self._port.read(self._expected)
        LOG.debug(f"Read {self._expected} bytes of {self._channel}")
        if self._plan:
            self._request_next()
        else:
            self._complete()

    def _complete(self):
        self._transition(AcquisitionState.Complete)
        frame = CaptureFrame(self.sequence, self.config, self._data['ch1'], self._data['ch2'])
        self._data = None
        self._reset()
        LOG.debug(f"Capture {frame.sequence} complete")
        self._listener.frame_received(frame)

    def _reply_quiet(self):
        self._pending = None
        self._finish_reply()

    def _finish_reply(self):
        data = bytes(self._reply)
        self._reset()
        LOG.debug(f"Reply {data!r}")
        self._listener.reply_received(data)

    def _readable(self):
        state = self.state
        if state == AcquisitionState.AwaitCapture:
            if self._pending is None:
                if self._port.in_waiting:
                    self._acknowledged()
            else:
                self._port.reset_input_buffer()
        elif state in (AcquisitionState.AwaitCh1, AcquisitionState.AwaitCh2):
            self._collect()
        elif state == AcquisitionState.AwaitReply:
            if self._expected is None:
                self._reply.extend(self._port.read())
                self._cancel_pending()
                self._pending = self._loop.call_later(self.timings.quiet, self._reply_quiet)
            elif self._port.in_waiting >= self._expected:
                self._reply.extend(self._port.read(self._expected))
                self._finish_reply()
        elif self._port.in_waiting:
            LOG.debug(f"Discarding {self._port.in_waiting} unexpected bytes in state {state.name}")
            self._port.reset_input_buffer()
