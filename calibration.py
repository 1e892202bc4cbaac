"""
calibration
===========

Conversion of raw 8-bit ADC codes into volts, the decimation average applied at
the fastest sample rate, and the optional low-pass filter. The conversion is a
property of the instrument's analog path and is evaluated in exactly the order
the firmware's reference software uses, so results match to the last bit.

Device-specific constants live in `~/.config/bodescope/calibration.conf`, with a
section per device URL overriding `[DEFAULT]`.
"""

# pylama:ignore=W1203

from collections import namedtuple
from configparser import ConfigParser
import logging
from pathlib import Path

import numpy as np

from analysis import moving_average
from utils import DotDict


LOG = logging.getLogger(__name__)

CALIBRATION_PATH = Path('~/.config/bodescope/calibration.conf').expanduser()

LEAD_IN = 10
LOW_PASS_WIDTH = 5
DECIMATED_RATE_INDEX = 1


class CalibrationParams(namedtuple('CalibrationParams', ['scale', 'baseline', 'correction', 'offset_correction'])):
    def __repr__(self):
        return (f"scale={self.scale:.6f} baseline={self.baseline:.3f}V correction={self.correction:.3f}V "
                f"offset_correction={self.offset_correction:.3f}V")


DEFAULT_PARAMS = CalibrationParams(scale=5.0 / 4.8, baseline=4.0, correction=3.78, offset_correction=0.0)


def adc_to_volts(adc, gain, ui_offset=0, params=None):
    if params is None:
        params = DEFAULT_PARAMS
    oc = params.offset_correction
    adc = np.asarray(adc, dtype='double')
    volts = (((adc * 10.0 / 128.0) - 10.0 + oc) * params.scale / gain) + oc + params.baseline + (ui_offset / 100.0) / 2.0
    volts = volts - params.correction
    return float(volts) if volts.ndim == 0 else volts


def decimation_average(volts, length=None):
    """
    Rebuild the sample grid at 2Ms/s: even outputs take `volts[i/2]`, odd outputs
    average `volts[i/2]` and `volts[i/2+1]`.
    """
    volts = np.asarray(volts, dtype='double')
    n = len(volts)
    if length is None:
        length = n
    if n == 0 or length == 0:
        return np.zeros(length)
    index = np.arange(length)
    half = np.minimum(index // 2, n - 1)
    after = np.minimum(half + 1, n - 1)
    return np.where(index % 2 == 1, (volts[half] + volts[after]) / 2, volts[half])


def low_pass(volts, width=LOW_PASS_WIDTH):
    return moving_average(volts, width)


def calibrate(frame, params=None, filtered=False):
    config = frame.config
    rate = config.sample_rate
    traces = DotDict(sequence=frame.sequence, config=config)
    for name in frame.channels:
        raw = np.frombuffer(getattr(frame, name), dtype='uint8')
        samples = adc_to_volts(raw, config.gain(name), config.offset(name), params)
        if config.sample_rate_index == DECIMATED_RATE_INDEX:
            samples = decimation_average(samples, len(raw))
        start = 0
        if filtered:
            samples = low_pass(samples)[LEAD_IN:]
            start = LEAD_IN
        timestamps = (np.arange(len(samples)) + start) * rate.period
        traces[name] = DotDict(samples=samples, timestamps=timestamps, sample_period=rate.period,
                               sample_rate=rate.rate, gain=config.gain(name), offset=config.offset(name))
    return traces


def load_calibration(url=None, path=None):
    path = CALIBRATION_PATH if path is None else Path(path)
    config = ConfigParser()
    config.read(path)
    section = config[url] if url is not None and config.has_section(url) else config.defaults()
    values = {field: float(section[field]) for field in CalibrationParams._fields if field in section}
    params = DEFAULT_PARAMS._replace(**values)
    if values:
        LOG.info(f"Loaded calibration for {url or 'default'}: {params!r}")
    return params


def save_calibration(url, params, path=None):
    path = CALIBRATION_PATH if path is None else Path(path)
    LOG.info(f"Saving calibration for {url}")
    config = ConfigParser()
    config.read(path)
    config[url] = {field: repr(value) for field, value in zip(CalibrationParams._fields, params)}
    parent = path.parent
    if not parent.is_dir():
        parent.mkdir(parents=True)
    with open(path, 'w') as calibration_file:
        config.write(calibration_file)
