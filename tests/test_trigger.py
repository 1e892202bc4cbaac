import numpy as np
import pytest

from protocol import DEFAULT_CONFIG, TriggerPolarity, TriggerSource
from trigger import (TriggerOutOfRange, encode_trigger_dac, evaluate, find_edge, trigger_dac_code,
                     trigger_level_volts)
from utils import DotDict


SQUARE = np.array([-1.0, -1.0, 1.0, 1.0, -1.0, -1.0, 1.0])


def traces_of(**channels):
    return DotDict({name: DotDict(samples=np.asarray(samples, dtype='double')) for name, samples in channels.items()})


def test_level_volts():
    assert trigger_level_volts(2048, 1) == 0.0
    assert trigger_level_volts(3072, 1) == 5.0
    assert trigger_level_volts(3072, 2) == 2.5
    assert trigger_level_volts(0, 1) == -10.0


def test_dac_code():
    assert trigger_dac_code(2048, 1) == 2048
    assert trigger_dac_code(3072, 1) == 2816
    assert trigger_dac_code(3072, 4) == 2240
    assert 0 <= trigger_dac_code(0, 1) <= trigger_dac_code(4095, 1) <= 4095


def test_dac_encoding():
    assert encode_trigger_dac(2816) == (176, 0)
    assert encode_trigger_dac(2817) == (176, 16)
    assert encode_trigger_dac(4095) == (255, 240)


def test_find_edge():
    assert find_edge(SQUARE, 0.0, TriggerPolarity.RisingEdge) == 2
    assert find_edge(SQUARE, 0.0, TriggerPolarity.FallingEdge) == 4
    assert find_edge(np.zeros(10), 0.5, TriggerPolarity.RisingEdge) is None


def test_auto_needs_signal_on_ch1():
    config = DEFAULT_CONFIG._replace(trig_source=TriggerSource.Auto)
    assert evaluate(traces_of(ch1=np.sin(np.linspace(0, 6, 200))), config)
    assert not evaluate(traces_of(ch1=np.full(200, 0.3), ch2=SQUARE), config)
    assert not evaluate(traces_of(ch2=SQUARE), config)


def test_external_behaves_like_auto():
    config = DEFAULT_CONFIG._replace(trig_source=TriggerSource.External)
    assert evaluate(traces_of(ch1=SQUARE), config).triggered


@pytest.mark.parametrize('polarity, index', [(TriggerPolarity.RisingEdge, 2), (TriggerPolarity.FallingEdge, 4)])
def test_edge_on_channel(polarity, index):
    config = DEFAULT_CONFIG._replace(trig_source=TriggerSource.CH2, trig_polarity=polarity, trig_level=2048)
    result = evaluate(traces_of(ch1=np.zeros(7), ch2=SQUARE), config)
    assert result.triggered
    assert result.index == index
    assert result.level == 0.0


def test_no_edge_is_not_triggered():
    config = DEFAULT_CONFIG._replace(trig_source=TriggerSource.CH1, trig_level=2048)
    result = evaluate(traces_of(ch1=np.linspace(1.0, -1.0, 50)), config)
    assert not result
    assert result.index is None


def test_level_outside_signal_raises():
    config = DEFAULT_CONFIG._replace(trig_source=TriggerSource.CH1, trig_level=3072)
    with pytest.raises(TriggerOutOfRange) as info:
        evaluate(traces_of(ch1=SQUARE), config)
    assert info.value.level == 5.0
    assert info.value.high == 1.0
    assert isinstance(info.value, ValueError)


def test_missing_source_channel():
    config = DEFAULT_CONFIG._replace(trig_source=TriggerSource.CH2)
    result = evaluate(traces_of(ch1=SQUARE), config)
    assert not result.triggered
    assert result.level == 0.0
