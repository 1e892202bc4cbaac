"""
digital
=======

Count and prescaler selection for the instrument's digital frequency generator.
"""

from collections import namedtuple
import logging

import protocol
from protocol import InvalidParameter


LOG = logging.getLogger(__name__)

SOURCE_CLOCK = 32000000
MAX_COUNT = 65535

# (prescaler, division applied to the count on reaching it)
DIVIDER_LADDER = [(1, 1), (2, 2), (4, 2), (8, 2), (64, 8), (256, 4), (1024, 4)]


class DigitalClock(namedtuple('DigitalClock', ['count', 'index', 'divider'])):
    @property
    def frequency(self):
        return SOURCE_CLOCK / self.divider / self.count

    def frames(self):
        return [protocol.set_digital_count(self.count), protocol.set_digital_divider(self.index)]


def plan_clock(frequency):
    if frequency <= 0:
        raise InvalidParameter(f"Digital frequency must be positive: {frequency}")
    count = int(SOURCE_CLOCK // frequency)
    if count < 1:
        raise InvalidParameter(f"Digital frequency above {SOURCE_CLOCK}Hz: {frequency}")
    for index, (divider, division) in enumerate(DIVIDER_LADDER):
        count //= division
        if count <= MAX_COUNT:
            clock = DigitalClock(count, index, divider)
            LOG.debug(f"Digital clock for {frequency}Hz: count={count} divider={divider} index={index}")
            return clock
    raise InvalidParameter(f"Digital frequency too low: {frequency}Hz")
