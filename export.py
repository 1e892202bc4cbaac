"""
export
======

CSV files for captured traces and Bode sweep results.
"""

# pylama:ignore=W1203

from datetime import datetime
import logging

import numpy as np
import pandas as pd

from analysis import spectrum as compute_spectrum


LOG = logging.getLogger(__name__)

CHANNELS = ('ch1', 'ch2')


def _timestamp():
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def _column(traces, name, field):
    if name in traces:
        return pd.Series(np.asarray(traces[name][field], dtype='double'))
    return pd.Series([], dtype='double')


def scope_frame(traces):
    times = [traces[name].timestamps for name in CHANNELS if name in traces]
    frame = pd.DataFrame({
        'Time(us)': pd.Series(np.asarray(times[0], dtype='double') * 1e6) if times else pd.Series([], dtype='double'),
        'CH1(V)': _column(traces, 'ch1', 'samples'),
        'CH2(V)': _column(traces, 'ch2', 'samples'),
    })
    missing_time = frame['Time(us)'].isna()
    frame.loc[missing_time, 'Time(us)'] = frame.index[missing_time]
    return frame.fillna(0.0)


def spectrum_frame(traces):
    spectra = {name: compute_spectrum(traces[name]) for name in CHANNELS if name in traces}
    if not spectra:
        return None
    first = next(iter(spectra.values()))
    return pd.DataFrame({
        'Frequency(Hz)': pd.Series(first.frequencies),
        'CH1_FFT(dB)': pd.Series(spectra['ch1'].decibels) if 'ch1' in spectra else pd.Series([], dtype='double'),
        'CH2_FFT(dB)': pd.Series(spectra['ch2'].decibels) if 'ch2' in spectra else pd.Series([], dtype='double'),
    }).fillna(0.0)


def write_scope_csv(path, traces, spectrum=False):
    frame = scope_frame(traces)
    with open(path, 'w', newline='') as csv_file:
        csv_file.write("# Oscilloscope Data Export\n")
        csv_file.write(f"# Generated: {_timestamp()}\n")
        csv_file.write(f"# Data Points: {len(frame)}\n")
        csv_file.write("# Time Unit: microseconds\n")
        csv_file.write("# Voltage Unit: Volts\n")
        csv_file.write("\n")
        frame.to_csv(csv_file, index=False, float_format='%.3f', lineterminator='\n')
        if spectrum:
            fft = spectrum_frame(traces)
            if fft is not None:
                csv_file.write("\n")
                csv_file.write("# FFT Data\n")
                csv_file.write("# Frequency Unit: Hz\n")
                csv_file.write("# Magnitude Unit: dB\n")
                csv_file.write("\n")
                fft.to_csv(csv_file, index=False, float_format='%.2f', lineterminator='\n')
    LOG.info(f"Exported {len(frame)} samples to {path}")
    return frame


def bode_frame(result):
    return pd.DataFrame({
        'Frequency(Hz)': np.asarray(result.frequencies, dtype='double'),
        'Magnitude(dB)': np.asarray(result.magnitudes, dtype='double'),
        'Phase(degrees)': np.asarray(result.phases, dtype='double'),
    })


def write_bode_csv(path, result):
    frame = bode_frame(result)
    with open(path, 'w', newline='') as csv_file:
        csv_file.write("# Bode Plot Export\n")
        csv_file.write(f"# Generated: {_timestamp()}\n")
        csv_file.write(f"# Points: {len(frame)}\n")
        if result.aborted:
            csv_file.write("# Sweep aborted, partial results\n")
        csv_file.write("\n")
        frame.to_csv(csv_file, index=False, float_format='%.4f', lineterminator='\n')
    LOG.info(f"Exported {len(frame)} Bode points to {path}")
    return frame
