"""
streams
=======

Serial line to the instrument as a buffered duplex byte stream driven by the
asyncio loop. Incoming bytes are gathered into an input buffer and a registered
readable callback is notified; outgoing frames are queued in order.
"""

# pylama:ignore=W1203,R0916,W0703

import asyncio
import logging
import sys
import threading

import serial
from serial.tools.list_ports import comports


Log = logging.getLogger(__name__)


DEFAULT_VID = 0x03eb
DEFAULT_PID = 0x2404
DEFAULT_BAUDRATE = 115200


class PortOpenError(IOError):
    pass


class PortIOError(IOError):
    pass


class SerialStream:

    @classmethod
    def devices_matching(cls, vid=None, pid=None, serial_number=None):
        for port in comports():
            if (vid is None or vid == port.vid) and (pid is None or pid == port.pid) and (serial_number is None or serial_number == port.serial_number):
                yield port.device

    @classmethod
    def stream_matching(cls, vid=DEFAULT_VID, pid=DEFAULT_PID, serial_number=None, **kwargs):
        for device in cls.devices_matching(vid, pid, serial_number):
            return SerialStream(device, **kwargs)
        raise PortOpenError(f"No serial device matching VID {vid:04x} PID {pid:04x}")

    def __init__(self, device, use_threads=None, loop=None, baudrate=DEFAULT_BAUDRATE, **kwargs):
        self._device = device
        self._use_threads = sys.platform == 'win32' if use_threads is None else use_threads
        settings = dict(baudrate=baudrate, bytesize=serial.EIGHTBITS, parity=serial.PARITY_NONE,
                        stopbits=serial.STOPBITS_ONE, xonxoff=False, rtscts=False, dsrdtr=False)
        settings.update(kwargs)
        try:
            self._connection = serial.Serial(self._device, timeout=0.1, **settings) if self._use_threads else \
                serial.Serial(self._device, timeout=0, write_timeout=0, **settings)
        except (serial.SerialException, OSError) as exc:
            raise PortOpenError(f"Unable to open {device}: {exc}") from exc
        Log.debug(f"Opened SerialStream on {device} at {baudrate} baud")
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self._input_buffer = bytearray()
        self._readable_callback = None
        self._error_callback = None
        self._reader_thread = None
        self._output_buffer = bytes()
        self._output_buffer_empty = None
        self._output_buffer_lock = threading.Lock() if self._use_threads else None

    def __repr__(self):
        return f'<{self.__class__.__name__}:{self._device}>'

    def close(self):
        if self._connection is not None:
            self.remove_reader()
            if self._output_buffer_empty is not None and not self._use_threads:
                self._loop.remove_writer(self._connection)
            self._connection.close()
            self._connection = None
            Log.debug(f"Closed SerialStream on {self._device}")

    def add_reader(self, callback, error_callback=None):
        self._readable_callback = callback
        self._error_callback = error_callback
        if self._use_threads:
            if self._reader_thread is None:
                self._reader_thread = threading.Thread(target=self._read_blocking, name=f'reader:{self._device}', daemon=True)
                self._reader_thread.start()
        else:
            self._loop.add_reader(self._connection, self._fill_buffer)

    def remove_reader(self):
        self._readable_callback = None
        self._error_callback = None
        if not self._use_threads and self._connection is not None:
            self._loop.remove_reader(self._connection)

    def _fill_buffer(self):
        try:
            data = self._connection.read(self._connection.in_waiting or 1)
        except (serial.SerialException, OSError) as exc:
            Log.exception("Error reading from stream")
            self._loop.remove_reader(self._connection)
            self._failed(PortIOError(f"Read from {self._device} failed: {exc}"))
            return
        self._received(data)

    def _read_blocking(self):
        connection = self._connection
        while self._connection is connection:
            try:
                data = connection.read(max(1, connection.in_waiting))
            except (serial.SerialException, OSError) as exc:
                if self._connection is connection:
                    self._loop.call_soon_threadsafe(self._failed, PortIOError(f"Read from {self._device} failed: {exc}"))
                return
            if data:
                self._loop.call_soon_threadsafe(self._received, data)

    def _received(self, data):
        if not data:
            return
        Log.debug(f"Read {bytes(data)!r}")
        self._input_buffer.extend(data)
        if self._readable_callback is not None:
            self._readable_callback()

    def _failed(self, exc):
        if self._error_callback is not None:
            self._error_callback(exc)

    @property
    def in_waiting(self):
        return len(self._input_buffer)

    def read(self, nbytes=None):
        if nbytes is None:
            nbytes = len(self._input_buffer)
        data = bytes(self._input_buffer[:nbytes])
        del self._input_buffer[:nbytes]
        return data

    def reset_input_buffer(self):
        if self._input_buffer:
            Log.debug(f"Discard {len(self._input_buffer)} buffered bytes")
        self._input_buffer.clear()

    def write(self, data):
        if self._connection is None:
            raise PortIOError(f"{self._device} is closed")
        if self._use_threads:
            with self._output_buffer_lock:
                self._output_buffer += data
                if self._output_buffer_empty is None:
                    self._output_buffer_empty = self._loop.run_in_executor(None, self._write_blocking)
            return
        if not self._output_buffer:
            try:
                nbytes = self._connection.write(data)
            except serial.SerialTimeoutException:
                nbytes = 0
            except (serial.SerialException, OSError) as exc:
                Log.exception("Error writing to stream")
                raise PortIOError(f"Write to {self._device} failed: {exc}") from exc
            if nbytes:
                Log.debug(f"Write {data[:nbytes]!r}")
            self._output_buffer = data[nbytes:]
        else:
            self._output_buffer += data
        if self._output_buffer and self._output_buffer_empty is None:
            self._output_buffer_empty = self._loop.create_future()
            self._loop.add_writer(self._connection, self._feed_data)

    async def drain(self):
        if self._output_buffer_empty is not None:
            await self._output_buffer_empty

    def _feed_data(self):
        try:
            nbytes = self._connection.write(self._output_buffer)
        except serial.SerialTimeoutException:
            nbytes = 0
        except (serial.SerialException, OSError) as exc:
            Log.exception("Error writing to stream")
            self._loop.remove_writer(self._connection)
            error = PortIOError(f"Write to {self._device} failed: {exc}")
            self._output_buffer_empty.set_exception(error)
            self._output_buffer_empty = None
            self._output_buffer = bytes()
            self._failed(error)
            return
        if nbytes:
            Log.debug(f"Write {self._output_buffer[:nbytes]!r}")
            self._output_buffer = self._output_buffer[nbytes:]
        if not self._output_buffer:
            self._loop.remove_writer(self._connection)
            self._output_buffer_empty.set_result(None)
            self._output_buffer_empty = None

    def _write_blocking(self):
        with self._output_buffer_lock:
            while self._output_buffer:
                data = bytes(self._output_buffer)
                self._output_buffer_lock.release()
                error = None
                try:
                    nbytes = self._connection.write(data)
                except (serial.SerialException, OSError) as exc:
                    error = PortIOError(f"Write to {self._device} failed: {exc}")
                finally:
                    self._output_buffer_lock.acquire()
                if error is not None:
                    self._output_buffer = bytes()
                    self._output_buffer_empty = None
                    self._loop.call_soon_threadsafe(self._failed, error)
                    raise error
                Log.debug(f"Write {self._output_buffer[:nbytes]!r}")
                self._output_buffer = self._output_buffer[nbytes:]
            self._output_buffer_empty = None
