"""
trigger
=======

Host-side trigger evaluation over a calibrated capture, mirroring the edge
detection done by the instrument so that frames are only released to consumers
when they contain a real signal or the selected edge.
"""

# pylama:ignore=W1203

from collections import namedtuple
import logging

import numpy as np

from protocol import TriggerPolarity, TriggerSource


LOG = logging.getLogger(__name__)

AUTO_THRESHOLD = 0.1
DAC_MAX = 4095
DAC_CENTRE = 2048


class TriggerOutOfRange(ValueError):
    def __init__(self, level, low, high):
        super().__init__(f"Trigger level {level:.2f}V outside signal range {low:.2f}V to {high:.2f}V")
        self.level = level
        self.low = low
        self.high = high


class TriggerResult(namedtuple('TriggerResult', ['triggered', 'index', 'level'])):
    def __bool__(self):
        return bool(self.triggered)


def trigger_level_volts(raw, gain):
    return round((raw * 10.0 / 2048.0 - 10.0) / gain, 2)


def trigger_dac_code(raw, gain):
    code = DAC_CENTRE + int(((raw - DAC_CENTRE) / gain) / (4.0 / 3.0))
    return min(max(code, 0), DAC_MAX)


def encode_trigger_dac(code):
    msb8 = code // 16
    lsb4 = (code - msb8 * 16) * 16
    return msb8, lsb4


def find_edge(samples, level, polarity):
    samples = np.asarray(samples, dtype='double')
    before, after = samples[:-1], samples[1:]
    if polarity == TriggerPolarity.FallingEdge:
        hits = np.nonzero((before > level) & (level >= after))[0]
    else:
        hits = np.nonzero((before < level) & (level <= after))[0]
    return int(hits[0]) + 1 if len(hits) else None


def evaluate(traces, config):
    source = TriggerSource(config.trig_source)
    if source in (TriggerSource.Auto, TriggerSource.External):
        if 'ch1' not in traces:
            return TriggerResult(False, None, None)
        samples = traces.ch1.samples
        triggered = len(samples) > 0 and (samples.max() - samples.min()) > AUTO_THRESHOLD
        return TriggerResult(bool(triggered), None, None)
    name = 'ch1' if source == TriggerSource.CH1 else 'ch2'
    level = trigger_level_volts(config.trig_level, config.gain(name))
    if name not in traces or len(traces[name].samples) == 0:
        return TriggerResult(False, None, level)
    samples = traces[name].samples
    low, high = float(samples.min()), float(samples.max())
    if not low <= level <= high:
        raise TriggerOutOfRange(level, low, high)
    index = find_edge(samples, level, config.trig_polarity)
    if index is None:
        LOG.debug(f"No {TriggerPolarity(config.trig_polarity).name} at {level:.2f}V on {name}")
        return TriggerResult(False, None, level)
    return TriggerResult(True, index, level)
