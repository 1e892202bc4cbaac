import pytest

from digital import DIVIDER_LADDER, DigitalClock, plan_clock
from protocol import InvalidParameter


def test_ladder_divisions_multiply_to_prescaler():
    total = 1
    for divider, division in DIVIDER_LADDER:
        total *= division
        assert total == divider


def test_direct_count():
    clock = plan_clock(1000)
    assert clock == DigitalClock(32000, 0, 1)
    assert clock.frequency == 1000


def test_prescaled():
    clock = plan_clock(100)
    assert clock.index == 3
    assert clock.divider == 8
    assert clock.count == 40000
    assert clock.frequency == pytest.approx(100)


def test_slowest_step():
    clock = plan_clock(1)
    assert clock == DigitalClock(31250, 6, 1024)
    assert clock.frequency == pytest.approx(1)


def test_frames():
    assert plan_clock(100).frames() == [b'c\x9c\x40', b'd\x03\x00']


@pytest.mark.parametrize('frequency', [0, -5, 0.1, 64e6])
def test_unreachable(frequency):
    with pytest.raises(InvalidParameter):
        plan_clock(frequency)
