"""
protocol
========

Command frames understood by the instrument firmware, the enumerations carried in
them, and the device configuration record that a capture is taken under.

Every command is a three byte frame `op | a | b`; the only exception is the DDS
waveform upload, which is the frame `r | 0 | 0` followed by the table bytes.
Replies carry no framing at all, so the number of bytes to expect is decided by
the command that was sent (see `DeviceConfig.read_plan()`).
"""

from collections import namedtuple
from enum import IntEnum
import logging


LOG = logging.getLogger(__name__)


class InvalidParameter(ValueError):
    pass


class Opcode(IntEnum):
    SetGain           = 0x47  # G
    SetOffsetCh1      = 0x4f  # O
    SetOffsetCh2      = 0x6f  # o
    SetTriggerSource  = 0x54  # T
    SetTriggerPolarity = 0x50  # P
    SetTriggerLevel   = 0x4c  # L
    SetMode           = 0x46  # F
    SetSampleRate     = 0x53  # S
    Capture           = 0x43  # C
    ReadData          = 0x44  # D
    Abort             = 0x41  # A
    SetDDSPeriod      = 0x70  # p
    SetDDSSamples     = 0x4e  # N
    UploadWaveform    = 0x72  # r
    StartDDS          = 0x66  # f
    SetDigitalOut     = 0x68  # h
    ReadDigitalIn     = 0x69  # i
    ReadSignature     = 0x65  # e
    SetDigitalCount   = 0x63  # c
    SetDigitalDivider = 0x64  # d
    BlinkLED          = 0x74  # t

class TriggerSource(IntEnum):
    Auto     = 0
    CH1      = 1
    CH2      = 2
    External = 3

class TriggerPolarity(IntEnum):
    RisingEdge  = 0
    FallingEdge = 1

class AcquisitionMode(IntEnum):
    BothChannels = 1
    CH1Only      = 2
    CH2Only      = 3

class ReadCommand(IntEnum):
    Both    = 1
    CH1Only = 2
    CH2Pair = 3
    CH2Only = 4


GAINS = (1, 2, 4, 8, 16, 32)

OFFSET_MIN = -1694
OFFSET_MAX = 1695
TRIGGER_LEVEL_MAX = 4095

DUAL_SAMPLES = 200
SINGLE_SAMPLES = 400


class SampleRate(namedtuple('SampleRate', ['index', 'rate', 'period_us'])):
    @property
    def period(self):
        return self.period_us * 1e-6


SAMPLE_RATES = [
    SampleRate( 1, 2000000,     0.5),
    SampleRate( 2, 1000000,     1.0),
    SampleRate( 3,  500000,     2.0),
    SampleRate( 4,  200000,     5.0),
    SampleRate( 5,  100000,    10.0),
    SampleRate( 6,   50000,    20.0),
    SampleRate( 7,   20000,    50.0),
    SampleRate( 8,   10000,   100.0),
    SampleRate( 9,    5000,   200.0),
    SampleRate(10,    2000,   500.0),
    SampleRate(11,    1000,  1000.0),
    SampleRate(12,     500,  2000.0),
    SampleRate(13,     200,  5000.0),
    SampleRate(14,     100, 10000.0),
]


def sample_rate(index):
    if not 1 <= index <= len(SAMPLE_RATES):
        raise InvalidParameter(f"Sample rate index out of range (1-{len(SAMPLE_RATES)}): {index}")
    return SAMPLE_RATES[index-1]


def gain_step(gain):
    try:
        return GAINS.index(gain)
    except ValueError:
        raise InvalidParameter(f"Unsupported gain {gain!r}, expected one of {GAINS}") from None


def encode_frame(op, a=0, b=0):
    return bytes([int(op), a & 0xff, b & 0xff])


def encode_word(op, value):
    value &= 0xffff
    return encode_frame(op, value >> 8, value & 0xff)


def set_gain(channel, gain):
    if channel not in (0, 1):
        raise InvalidParameter(f"Unrecognised channel index: {channel}")
    return encode_frame(Opcode.SetGain, channel, gain_step(gain))


def set_offset(channel, offset):
    if not OFFSET_MIN <= offset <= OFFSET_MAX:
        raise InvalidParameter(f"Offset out of range ({OFFSET_MIN}-{OFFSET_MAX}): {offset}")
    op = Opcode.SetOffsetCh1 if channel == 0 else Opcode.SetOffsetCh2
    return encode_word(op, offset)


def set_trigger_source(source):
    return encode_frame(Opcode.SetTriggerSource, TriggerSource(source))


def set_trigger_polarity(polarity):
    return encode_frame(Opcode.SetTriggerPolarity, TriggerPolarity(polarity))


def set_trigger_level(level):
    if not 0 <= level <= TRIGGER_LEVEL_MAX:
        raise InvalidParameter(f"Trigger level out of range (0-{TRIGGER_LEVEL_MAX}): {level}")
    return encode_word(Opcode.SetTriggerLevel, level)


def set_mode(mode):
    return encode_frame(Opcode.SetMode, AcquisitionMode(mode))


def set_sample_rate(index):
    return encode_frame(Opcode.SetSampleRate, sample_rate(index).index)


def capture():
    return encode_frame(Opcode.Capture)


def read_data(command):
    return encode_frame(Opcode.ReadData, ReadCommand(command))


def abort():
    return encode_frame(Opcode.Abort)


def set_dds_period(period):
    return encode_word(Opcode.SetDDSPeriod, period)


def set_dds_samples(count):
    return encode_word(Opcode.SetDDSSamples, count)


def upload_waveform(table):
    return encode_frame(Opcode.UploadWaveform) + bytes(table)


def start_dds():
    return encode_frame(Opcode.StartDDS)


def set_digital_outputs(mask):
    return encode_frame(Opcode.SetDigitalOut, mask)


def read_digital_inputs():
    return encode_frame(Opcode.ReadDigitalIn)


def read_signature():
    return encode_frame(Opcode.ReadSignature)


def set_digital_count(count):
    return encode_word(Opcode.SetDigitalCount, count)


def set_digital_divider(index):
    return encode_frame(Opcode.SetDigitalDivider, index)


def blink_led():
    return encode_frame(Opcode.BlinkLED)


class DeviceConfig(namedtuple('DeviceConfig', ['ch1_gain', 'ch2_gain', 'ch1_offset', 'ch2_offset', 'trig_level',
                                               'trig_source', 'trig_polarity', 'sample_rate_index', 'acquisition_mode'])):
    """
    Immutable snapshot of the instrument settings. The façade keeps the current one
    and hands a copy to every capture, so changing a setting never affects a
    capture that is already running.
    """

    def validate(self):
        gain_step(self.ch1_gain)
        gain_step(self.ch2_gain)
        for offset in (self.ch1_offset, self.ch2_offset):
            if not OFFSET_MIN <= offset <= OFFSET_MAX:
                raise InvalidParameter(f"Offset out of range ({OFFSET_MIN}-{OFFSET_MAX}): {offset}")
        if not 0 <= self.trig_level <= TRIGGER_LEVEL_MAX:
            raise InvalidParameter(f"Trigger level out of range (0-{TRIGGER_LEVEL_MAX}): {self.trig_level}")
        sample_rate(self.sample_rate_index)
        try:
            return self._replace(trig_source=TriggerSource(self.trig_source),
                                 trig_polarity=TriggerPolarity(self.trig_polarity),
                                 acquisition_mode=AcquisitionMode(self.acquisition_mode))
        except ValueError as exc:
            raise InvalidParameter(str(exc)) from None

    @property
    def dual(self):
        return self.acquisition_mode == AcquisitionMode.BothChannels

    @property
    def samples_per_channel(self):
        return DUAL_SAMPLES if self.dual else SINGLE_SAMPLES

    @property
    def sample_rate(self):
        return sample_rate(self.sample_rate_index)

    def gain(self, channel):
        return self.ch1_gain if channel == 'ch1' else self.ch2_gain

    def offset(self, channel):
        return self.ch1_offset if channel == 'ch1' else self.ch2_offset

    def setup_frames(self):
        return [set_offset(0, self.ch1_offset),
                set_offset(1, self.ch2_offset),
                set_trigger_source(self.trig_source),
                set_trigger_polarity(self.trig_polarity),
                set_trigger_level(self.trig_level),
                set_mode(self.acquisition_mode),
                set_sample_rate(self.sample_rate_index)]

    def gain_frames(self):
        return [set_gain(0, self.ch1_gain), set_gain(1, self.ch2_gain)]

    def read_plan(self):
        n = self.samples_per_channel
        if self.dual:
            return [(read_data(ReadCommand.Both), n, 'ch1'), (read_data(ReadCommand.CH2Pair), n, 'ch2')]
        if self.acquisition_mode == AcquisitionMode.CH1Only:
            return [(read_data(ReadCommand.CH1Only), n, 'ch1')]
        return [(read_data(ReadCommand.CH2Only), n, 'ch2')]


DEFAULT_CONFIG = DeviceConfig(ch1_gain=1, ch2_gain=1, ch1_offset=0, ch2_offset=0, trig_level=2048,
                              trig_source=TriggerSource.Auto, trig_polarity=TriggerPolarity.RisingEdge,
                              sample_rate_index=4, acquisition_mode=AcquisitionMode.BothChannels)
