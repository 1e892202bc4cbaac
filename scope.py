#!/usr/bin/env python3

import argparse
import asyncio
from enum import IntEnum
import logging
from pathlib import Path
import sys
from urllib.parse import urlparse

import numpy as np

from acquisition import AcquisitionAborted, AcquisitionMachine, AcquisitionState, Timings
import analysis
import calibration
import dds
import digital
import export
import protocol
from protocol import DEFAULT_CONFIG, InvalidParameter, TriggerSource
import streams
from sweep import BodeSweep
import trigger
from utils import DotDict


LOG = logging.getLogger(__name__)


class UsageError(Exception):
    pass


class RunMode(IntEnum):
    Continuous = 0
    Overwrite  = 1
    Add        = 2


RUN_BATCH = 2
PULSE_WIDTH = 0.2


def trigger_settings(config):
    return config.trig_source, config.trig_polarity, config.trig_level


def concatenate(batch):
    traces = DotDict(sequence=batch[-1].sequence, config=batch[-1].config)
    for name in ('ch1', 'ch2'):
        parts = [item[name] for item in batch if name in item]
        if not parts:
            continue
        samples = np.concatenate([part.samples for part in parts])
        period = parts[0].sample_period
        traces[name] = DotDict(samples=samples, timestamps=np.arange(len(samples)) * period,
                               sample_period=period, sample_rate=parts[0].sample_rate)
    return traces


class Scope:

    def __init__(self, timings=None, params=None, filtered=False):
        self.url = None
        self.config = DEFAULT_CONFIG
        self.timings = timings if timings is not None else Timings()
        self.params = params
        self.filtered = filtered
        self.last_traces = None
        self.last_bode = None
        self.waveform = None
        self.digital_clock = None
        self._port = None
        self._machine = None
        self._waiter = None
        self._running = False
        self._sweep = None

    async def connect(self, url=None):
        if url is None:
            for device in streams.SerialStream.devices_matching(vid=streams.DEFAULT_VID, pid=streams.DEFAULT_PID):
                url = f'file:{device}'
                break
            else:
                raise streams.PortOpenError("No matching serial device found")
        LOG.info(f"Connecting to scope at {url}")
        self.close()
        parts = urlparse(url, scheme='file')
        if parts.scheme != 'file':
            raise ValueError(f"Don't know what to do with url: {url}")
        port = streams.SerialStream(device=parts.path, loop=asyncio.get_running_loop())
        self.url = url
        if self.params is None:
            self.params = calibration.load_calibration(url)
        self.attach(port)
        return self

    def attach(self, port, loop=None):
        self._port = port
        self._machine = AcquisitionMachine(port, self, loop=loop, timings=self.timings)
        LOG.info(f"Attached to {port!r}")
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        if self._machine is not None:
            self._machine.close()
            self._machine = None
        if self._port is not None:
            self._port.close()
            self._port = None
            LOG.info("Closed scope")

    @property
    def connected(self):
        return self._machine is not None

    @property
    def state(self):
        return self._machine.state if self._machine is not None else AcquisitionState.Idle

    def _check_connected(self):
        if self._machine is None:
            raise UsageError("Scope not connected")

    def frame_received(self, frame):
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(frame)

    def reply_received(self, data):
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(data)

    def error_received(self, exc):
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(exc)
        else:
            LOG.error(f"Unhandled acquisition error: {exc}")

    async def _wait(self, begin):
        self._check_connected()
        waiter = self._waiter = asyncio.get_running_loop().create_future()
        try:
            begin()
            return await waiter
        except asyncio.CancelledError:
            if self._machine is not None and not self._machine.idle:
                self._machine.abort()
            raise
        finally:
            self._waiter = None

    def configure(self, **changes):
        self._check_connected()
        try:
            config = self.config._replace(**changes).validate()
        except ValueError as exc:
            raise InvalidParameter(str(exc)) from None
        if (config.ch1_gain, config.ch2_gain) != (self.config.ch1_gain, self.config.ch2_gain):
            for frame in config.gain_frames():
                self._machine.send(frame)
        self.config = config
        LOG.debug(f"Configuration now {config}")
        return config

    async def acquire(self, config=None):
        config = (self.config if config is None else config).validate()
        frame = await self._wait(lambda: self._machine.start(config))
        traces = calibration.calibrate(frame, self.params, self.filtered)
        LOG.info(f"Capture {frame.sequence} complete, traces: {', '.join(frame.channels)}")
        return traces

    async def capture(self):
        traces = await self.acquire()
        config = traces.config
        try:
            result = trigger.evaluate(traces, config)
        except trigger.TriggerOutOfRange as exc:
            config = config._replace(trig_source=TriggerSource.Auto)
            result = trigger.evaluate(traces, config)
            if trigger_settings(self.config) == trigger_settings(traces.config):
                LOG.warning(f"{exc}, switching to auto trigger")
                self.config = self.config._replace(trig_source=TriggerSource.Auto)
            else:
                LOG.warning(f"{exc}, trigger settings changed since capture started")
        traces.trigger = result
        self.last_traces = traces
        return traces

    async def run(self, consumer, mode=RunMode.Continuous, count=None):
        self._check_connected()
        mode = RunMode(mode)
        self._running = True
        delivered = 0
        batch = []
        LOG.info(f"Running in {mode.name} mode")
        try:
            while self._running and (count is None or delivered < count):
                try:
                    traces = await self.capture()
                except AcquisitionAborted:
                    break
                if not traces.trigger:
                    continue
                if mode == RunMode.Continuous:
                    consumer(traces)
                    delivered += 1
                    continue
                batch.append(traces)
                if len(batch) == RUN_BATCH:
                    consumer(concatenate(batch) if mode == RunMode.Overwrite else batch)
                    delivered += 1
                    batch = []
        finally:
            self._running = False
        LOG.info(f"Stopped after {delivered} deliveries")
        return delivered

    def stop(self):
        self._running = False

    def abort(self):
        self._check_connected()
        self._running = False
        if self._sweep is not None:
            self._sweep.cancel()
        self._machine.abort()
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(AcquisitionAborted("Acquisition aborted"))

    def measure(self, channel='ch1'):
        if self.last_traces is None:
            raise UsageError("Nothing captured to measure")
        if channel not in self.last_traces:
            raise UsageError(f"No {channel} in last capture")
        trace = self.last_traces[channel]
        return analysis.measure(trace.samples, trace.sample_period)

    def export_csv(self, path, spectrum=False):
        if self.last_traces is None:
            raise UsageError("Nothing captured to export")
        return export.write_scope_csv(path, self.last_traces, spectrum=spectrum)

    def export_bode_csv(self, path):
        if self.last_bode is None:
            raise UsageError("No sweep results to export")
        return export.write_bode_csv(path, self.last_bode)

    async def send_paced(self, frames, gap):
        for frame in frames:
            self._machine.send(frame)
            await asyncio.sleep(gap)

    async def start_waveform(self, frequency, waveform='sine'):
        self._check_connected()
        if isinstance(waveform, (str, Path)) and str(waveform).lower().endswith('.csv'):
            waveform = dds.load_arbitrary(waveform)
        plan = dds.plan(frequency, waveform)
        await self.send_paced(plan.frames(), self.timings.dds_gap)
        self.waveform = plan
        LOG.info(f"Signal generator running at {plan.frequency:0.1f}Hz")
        return plan.frequency

    async def sweep(self, start, end, points, delay_ms):
        self._check_connected()
        if self._sweep is not None:
            raise UsageError("Sweep already running")
        self._sweep = BodeSweep(self, start, end, points, delay_ms)
        try:
            self.last_bode = await self._sweep.run()
        finally:
            self._sweep = None
        return self.last_bode

    def cancel_sweep(self):
        if self._sweep is None:
            raise UsageError("No sweep running")
        self._sweep.cancel()

    async def apply_trigger(self):
        self._check_connected()
        config = self.config
        if config.trig_source == TriggerSource.CH1:
            gain = config.ch1_gain
        elif config.trig_source == TriggerSource.CH2:
            gain = config.ch2_gain
        else:
            gain = 1
        code = trigger.trigger_dac_code(config.trig_level, gain)
        frames = [protocol.set_trigger_source(config.trig_source),
                  protocol.set_trigger_polarity(config.trig_polarity),
                  protocol.encode_frame(protocol.Opcode.SetTriggerLevel, *trigger.encode_trigger_dac(code))]
        await self.send_paced(frames, self.timings.dds_gap)
        level = trigger.trigger_level_volts(config.trig_level, gain)
        name = {TriggerSource.CH1: 'ch1', TriggerSource.CH2: 'ch2'}.get(config.trig_source)
        if name is not None and self.last_traces is not None and name in self.last_traces:
            samples = self.last_traces[name].samples
            if not samples.min() <= level <= samples.max():
                LOG.warning(f"Trigger level {level:.2f}V outside signal range, switching to auto trigger")
                self.config = config._replace(trig_source=TriggerSource.Auto)
        return level

    def set_digital_outputs(self, mask):
        self._check_connected()
        if not 0 <= mask <= 0xff:
            raise InvalidParameter(f"Digital output mask out of range: {mask}")
        self._machine.send(protocol.set_digital_outputs(mask))

    async def pulse_digital_output(self, bit, width=PULSE_WIDTH):
        if not 0 <= bit <= 7:
            raise InvalidParameter(f"Digital output bit out of range (0-7): {bit}")
        self.set_digital_outputs(1 << bit)
        await asyncio.sleep(width)
        self.set_digital_outputs(0)

    async def read_digital_inputs(self):
        reply = await self._wait(lambda: self._machine.query(protocol.read_digital_inputs(), 1))
        levels = reply[0] & 0x0f
        LOG.debug(f"Digital inputs {levels:04b}")
        return levels

    async def start_digital_clock(self, frequency):
        self._check_connected()
        clock = digital.plan_clock(frequency)
        count_frame, divider_frame = clock.frames()
        self._machine.send(count_frame)
        await asyncio.sleep(self.timings.digital_gap)
        self._machine.send(divider_frame)
        self.digital_clock = clock
        LOG.info(f"Digital clock running at {clock.frequency:0.1f}Hz")
        return clock.frequency

    async def read_signature(self):
        reply = await self._wait(lambda: self._machine.query(protocol.read_signature()))
        signature = reply.decode('ascii', errors='replace').strip()
        LOG.info(f"Device signature: {signature}")
        return signature

    def blink_led(self):
        self._check_connected()
        self._machine.send(protocol.blink_led())

    def __repr__(self):
        return f"<Scope {self.url}>"


"""
$ ipython3 --pylab
Using matplotlib backend: MacOSX

In [1]: run scope --verbose

In [2]: start_waveform(1000)
Out[2]: 1008.0645161290323

In [3]: traces = capture()

In [4]: plot(traces.ch1.timestamps, traces.ch1.samples)
Out[4]: [<matplotlib.lines.Line2D at 0x10c782160>]

In [5]: result = sweep(100, 10000, 50, 200)
"""


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(description="bodescope")
    parser.add_argument('url', nargs='?', default=None, type=str, help="Device to connect to")
    parser.add_argument('--debug', action='store_true', default=False, help="Debug logging")
    parser.add_argument('--verbose', action='store_true', default=False, help="Verbose logging")
    parser.add_argument('--dds', type=float, default=None, metavar='HZ', help="Start the waveform generator")
    parser.add_argument('--waveform', default='sine', help=f"Waveform name ({', '.join(dds.WAVEFORMS)}) or CSV file")
    parser.add_argument('--sweep', nargs=3, type=float, default=None, metavar=('START', 'END', 'POINTS'), help="Run a Bode sweep")
    parser.add_argument('--delay', type=int, default=200, metavar='MS', help="Delay between sweep steps")
    parser.add_argument('--capture', action='store_true', default=False, help="Take one capture")
    parser.add_argument('--filter', action='store_true', default=False, help="Low-pass filter captures")
    parser.add_argument('--csv', type=Path, default=None, help="Export capture or sweep to CSV")
    return parser.parse_args(argv)


async def main(argv=None):
    global s
    args = parse_arguments(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else (logging.INFO if args.verbose else logging.WARNING), stream=sys.stdout)
    s = await Scope(filtered=args.filter).connect(args.url)
    if args.dds is not None:
        await s.start_waveform(args.dds, args.waveform)
    if args.sweep is not None:
        start, end, points = args.sweep
        result = await s.sweep(start, end, int(points), args.delay)
        for frequency, magnitude, phase in zip(result.frequencies, result.magnitudes, result.phases):
            print(f"{frequency:10.1f}Hz {magnitude:7.2f}dB {phase:7.1f}°")
        if args.csv is not None:
            s.export_bode_csv(args.csv)
    if args.capture:
        traces = await s.capture()
        for name in ('ch1', 'ch2'):
            if name in traces:
                print(f"{name}: {len(traces[name].samples)} samples, {traces[name].samples.min():.2f}V to {traces[name].samples.max():.2f}V")
                measurement = s.measure(name)
                if measurement.frequency is not None:
                    print(f"{name}: {measurement.frequency:.1f}Hz, {measurement.peak_to_peak:.2f}V pk-pk, mean {measurement.mean:.2f}V")
        if args.csv is not None:
            s.export_csv(args.csv, spectrum=True)


_loop = None


def await_(g):
    global _loop
    if _loop is None:
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    task = _loop.create_task(g)
    while True:
        try:
            return _loop.run_until_complete(task)
        except KeyboardInterrupt:
            task.cancel()


def capture(*args, **kwargs):
    return await_(s.capture(*args, **kwargs))


def start_waveform(*args, **kwargs):
    return await_(s.start_waveform(*args, **kwargs))


def sweep(*args, **kwargs):
    return await_(s.sweep(*args, **kwargs))


def cli():
    await_(main())


if __name__ == '__main__':
    cli()
