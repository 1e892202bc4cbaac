"""
sweep
=====

Bode plot sweep: step the DDS sine output across a logarithmic frequency grid,
capture the stimulus on CH1 and the response on CH2 at each step, then extract
gain and phase from the captured waveforms.
"""

# pylama:ignore=W1203

import asyncio
from collections import namedtuple
import logging
import math

import numpy as np

from acquisition import AcquisitionAborted
from analysis import amplitude, phase_difference, smooth
from protocol import AcquisitionMode, InvalidParameter, SAMPLE_RATES, TriggerSource


LOG = logging.getLogger(__name__)

MIN_FREQUENCY = 10
MAX_FREQUENCY = 20000
MIN_POINTS = 10
MAX_POINTS = 1000
MIN_DELAY_MS = 100
MAX_DELAY_MS = 1000

OVERSAMPLING = 9
MIN_SETTLE = 0.05
SETTLE_CYCLES = 3
TRIM = 20
AMPLITUDE_FLOOR = 1e-9
SMOOTHING_PASSES = 3


class BodeResult(namedtuple('BodeResult', ['frequencies', 'magnitudes', 'phases', 'invalid', 'aborted'])):
    def __len__(self):
        return len(self.frequencies)


def log_frequencies(start, end, points):
    log_start = math.log10(start)
    step = (math.log10(end) - log_start) / (points - 1)
    return np.array([10 ** (log_start + k * step) for k in range(points)])


def select_sample_rate(frequency):
    for rate in reversed(SAMPLE_RATES):
        if rate.rate > OVERSAMPLING * frequency:
            return rate
    return SAMPLE_RATES[0]


def settle_time(frequency):
    return max(MIN_SETTLE, SETTLE_CYCLES / frequency)


def analyse_point(inp, out, sample_period):
    """Returns `(magnitude_db, phase_degrees, invalid)` for one captured pair."""
    n = min(len(inp), len(out))
    if n <= TRIM:
        return 0.0, 0.0, True
    inp = np.asarray(inp[TRIM:n], dtype='double')
    out = np.asarray(out[TRIM:n], dtype='double')
    amp_in, amp_out = amplitude(inp), amplitude(out)
    if amp_in <= AMPLITUDE_FLOOR or amp_out <= AMPLITUDE_FLOOR:
        magnitude, invalid = 0.0, True
    else:
        magnitude, invalid = 20 * math.log10(amp_out / amp_in), False
    return magnitude, phase_difference(inp, out, sample_period), invalid


def analyse(frequencies, inputs, outputs, sample_periods, aborted=False):
    magnitudes, phases, invalid = [], [], []
    for frequency, inp, out, sample_period in zip(frequencies, inputs, outputs, sample_periods):
        magnitude, phase, bad = analyse_point(inp, out, sample_period)
        if bad:
            LOG.warning(f"No usable signal at {frequency:.1f}Hz")
        LOG.debug(f"{frequency:.1f}Hz: {magnitude:.2f}dB {phase:.1f}°")
        magnitudes.append(magnitude)
        phases.append(phase)
        invalid.append(bad)
    return BodeResult(np.asarray(frequencies[:len(magnitudes)], dtype='double'),
                      smooth(magnitudes, SMOOTHING_PASSES), smooth(phases, SMOOTHING_PASSES),
                      np.array(invalid, dtype=bool), aborted)


class BodeSweep:

    def __init__(self, scope, start, end, points, delay_ms, sleep=asyncio.sleep):
        for name, value in (('start', start), ('end', end)):
            if not MIN_FREQUENCY <= value <= MAX_FREQUENCY:
                raise InvalidParameter(f"Sweep {name} frequency out of range ({MIN_FREQUENCY}-{MAX_FREQUENCY}Hz): {value}")
        if not MIN_POINTS <= points <= MAX_POINTS:
            raise InvalidParameter(f"Sweep points out of range ({MIN_POINTS}-{MAX_POINTS}): {points}")
        if not MIN_DELAY_MS <= delay_ms <= MAX_DELAY_MS:
            raise InvalidParameter(f"Sweep delay out of range ({MIN_DELAY_MS}-{MAX_DELAY_MS}ms): {delay_ms}")
        self.scope = scope
        self.frequencies = log_frequencies(start, end, points)
        self.delay = delay_ms / 1000
        self._sleep = sleep
        self._cancelled = False
        self.running = False
        self.index = 0
        self.inputs = []
        self.outputs = []
        self.sample_periods = []

    def __repr__(self):
        return f'<{self.__class__.__name__}:{self.index}/{len(self.frequencies)}>'

    @property
    def cancelled(self):
        return self._cancelled

    def cancel(self):
        LOG.info("Sweep cancel requested")
        self._cancelled = True

    def step_config(self, frequency):
        return self.scope.config._replace(sample_rate_index=select_sample_rate(frequency).index,
                                          acquisition_mode=AcquisitionMode.BothChannels,
                                          trig_source=TriggerSource.Auto)

    async def step(self, frequency):
        """Returns False, having recorded nothing, if the sweep was cancelled before capture."""
        await self.scope.start_waveform(frequency, 'sine')
        if self._cancelled:
            return False
        config = self.step_config(frequency)
        await self._sleep(settle_time(frequency))
        if self._cancelled:
            return False
        traces = await self.scope.acquire(config)
        self.inputs.append(traces.ch1.samples)
        self.outputs.append(traces.ch2.samples)
        self.sample_periods.append(traces.ch1.sample_period)
        return True

    async def run(self):
        self._cancelled = False
        self.running = True
        self.index = 0
        self.inputs, self.outputs, self.sample_periods = [], [], []
        LOG.info(f"Sweeping {len(self.frequencies)} points from {self.frequencies[0]:.1f}Hz to {self.frequencies[-1]:.1f}Hz")
        try:
            for k, frequency in enumerate(self.frequencies):
                if self._cancelled:
                    break
                if k:
                    await self._sleep(self.delay)
                    if self._cancelled:
                        break
                try:
                    recorded = await self.step(frequency)
                except AcquisitionAborted:
                    self._cancelled = True
                    break
                if not recorded:
                    break
                self.index = k + 1
                LOG.info(f"Sweep step {self.index}/{len(self.frequencies)} at {frequency:.1f}Hz")
        finally:
            self.running = False
        aborted = self._cancelled and self.index < len(self.frequencies)
        if aborted:
            LOG.info(f"Sweep aborted after {self.index} points")
        result = analyse(self.frequencies[:self.index], self.inputs, self.outputs, self.sample_periods, aborted=aborted)
        self.inputs, self.outputs, self.sample_periods = [], [], []
        return result
