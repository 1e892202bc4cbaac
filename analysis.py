"""
analysis
========

Library code for analysing calibrated traces returned by `Scope.capture()`.
"""

# pylama:ignore=C0103,R1716

import numpy as np

from utils import DotDict


def rms(f):
    return np.sqrt((f ** 2).mean())


def sine_wave(n, cycles=1, phase=0):
    return np.sin(np.linspace(0, 2*np.pi*cycles, n, endpoint=False) + phase)


def moving_average(samples, width):
    """Centred moving average of `width` samples, truncated at the edges."""
    samples = np.asarray(samples, dtype='double')
    n = len(samples)
    hwidth = width // 2
    cumulative = np.concatenate([[0.0], samples.cumsum()])
    index = np.arange(n)
    lo = np.maximum(index - hwidth, 0)
    hi = np.minimum(index - hwidth + width, n)
    return (cumulative[hi] - cumulative[lo]) / (hi - lo)


def smooth(values, passes=3):
    """
    Repeated length-3 centred average. The first and last values are left
    untouched on every pass.
    """
    values = np.array(values, dtype='double')
    for _ in range(passes):
        if len(values) > 2:
            values[1:-1] = (values[:-2] + values[1:-1] + values[2:]) / 3
    return values


def local_extrema(samples):
    samples = np.asarray(samples, dtype='double')
    if len(samples) < 3:
        return None, None
    middle = samples[1:-1]
    maxima = middle[(middle > samples[:-2]) & (middle > samples[2:])]
    minima = middle[(middle < samples[:-2]) & (middle < samples[2:])]
    return (maxima.mean() if len(maxima) else None), (minima.mean() if len(minima) else None)


def amplitude(samples):
    high, low = local_extrema(samples)
    if high is None or low is None:
        return 0.0
    return (high - low) / 2


def rising_crossings(samples, level=0):
    """Fractional sample indices at which `samples` rises through `level`."""
    samples = np.asarray(samples, dtype='double') - level
    before, after = samples[:-1], samples[1:]
    i = np.nonzero((before < 0) & (after >= 0))[0]
    return i + (-before[i]) / (after[i] - before[i])


def phase_difference(inp, out, sample_period=1):
    """
    Phase of `out` relative to `inp` in degrees, wrapped to [-180, 180), using the
    first rising zero crossing of each and the mean period of the input. An
    output lagging the input gives a negative phase.
    """
    input_crossings = rising_crossings(inp)
    output_crossings = rising_crossings(out)
    if len(input_crossings) < 2 or len(output_crossings) == 0:
        return 0.0
    period = np.diff(input_crossings).mean() * sample_period
    if period <= 0:
        return 0.0
    phase = (input_crossings[0] - output_crossings[0]) * sample_period / period * 360
    return (phase + 180) % 360 - 180


def dft_magnitude(samples):
    """
    Magnitudes of the first N/2 bins of the discrete Fourier transform of
    `samples`, normalised by N. Computed directly, which is adequate for the
    few hundred samples in a capture.
    """
    samples = np.asarray(samples, dtype='double')
    n = len(samples)
    if n == 0:
        return np.zeros(0)
    k = np.arange(n // 2)
    t = np.arange(n)
    basis = np.exp(-2j * np.pi * np.outer(k, t) / n)
    return np.abs(basis @ samples) / n


def spectrum(trace, floor=1e-12):
    magnitudes = dft_magnitude(trace.samples)
    frequencies = np.arange(len(magnitudes)) * trace.sample_rate / len(trace.samples)
    return DotDict(frequencies=frequencies, magnitudes=magnitudes,
                   decibels=20 * np.log10(np.maximum(magnitudes, floor)))


def measure(samples, sample_period):
    samples = np.asarray(samples, dtype='double')
    if len(samples) == 0:
        return None
    high, low = samples.max(), samples.min()
    mean = samples.mean()
    result = DotDict(max=high, min=low, peak_to_peak=high - low, amplitude=(high - low) / 2,
                     mean=mean, rms=rms(samples), period=None, frequency=None)
    crossings = rising_crossings(samples, mean)
    if len(crossings) >= 2:
        result.period = np.diff(crossings).mean() * sample_period
        result.frequency = 1 / result.period
    return result
