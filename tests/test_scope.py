import asyncio

import numpy as np
import pytest

from acquisition import AcquisitionTimeout, Timings
from conftest import FakePort
import protocol
from protocol import InvalidParameter, ReadCommand, TriggerSource
from scope import AcquisitionAborted, RunMode, Scope, UsageError, concatenate


FAST = Timings().scaled(0.01)


def responses(ch1, ch2):
    return {protocol.capture(): b'\x06',
            protocol.read_data(ReadCommand.Both): ch1,
            protocol.read_data(ReadCommand.CH2Pair): ch2,
            protocol.read_digital_inputs(): b'\x35',
            protocol.read_signature(): b'SCOPE v1.4\r\n'}


def run_with_scope(coroutine, ch1=None, ch2=None, script=None):
    async def wrapper():
        port = FakePort(asyncio.get_running_loop(), script if script is not None else responses(ch1, ch2))
        with Scope(timings=FAST).attach(port) as scope:
            return await coroutine(scope, port)
    return asyncio.run(wrapper())


def test_acquire(sawtooth):
    async def go(scope, port):
        traces = await scope.acquire()
        assert port.opcodes() == ['O', 'o', 'T', 'P', 'L', 'F', 'S', 'C', 'D', 'D']
        return traces
    traces = run_with_scope(go, sawtooth, bytes([128] * 200))
    assert len(traces.ch1.samples) == len(traces.ch2.samples) == 200
    assert np.allclose(traces.ch2.samples, 0.22)
    assert traces.ch1.samples[-1] > traces.ch1.samples[0]
    assert traces.ch1.sample_rate == 200000


def test_capture_with_auto_trigger(sawtooth):
    async def go(scope, port):
        traces = await scope.capture()
        assert scope.last_traces is traces
        return traces
    traces = run_with_scope(go, sawtooth, sawtooth)
    assert traces.trigger.triggered


def test_capture_falls_back_to_auto(sawtooth):
    async def go(scope, port):
        scope.configure(trig_source=TriggerSource.CH1, trig_level=2048)
        traces = await scope.capture()
        return scope, traces
    scope, traces = run_with_scope(go, bytes([128] * 200), sawtooth)
    assert scope.config.trig_source == TriggerSource.Auto
    assert not traces.trigger


def test_run_continuous(sawtooth):
    delivered = []

    async def go(scope, port):
        return await scope.run(delivered.append, count=3)
    assert run_with_scope(go, sawtooth, sawtooth) == 3
    assert [traces.sequence for traces in delivered] == [1, 2, 3]


def test_run_overwrite_concatenates(sawtooth):
    delivered = []

    async def go(scope, port):
        return await scope.run(delivered.append, mode=RunMode.Overwrite, count=1)
    run_with_scope(go, sawtooth, sawtooth)
    assert len(delivered) == 1
    assert len(delivered[0].ch1.samples) == 400
    assert delivered[0].ch1.timestamps[-1] == pytest.approx(399 * 5e-6)


def test_run_add_delivers_batches(sawtooth):
    delivered = []

    async def go(scope, port):
        return await scope.run(delivered.append, mode=RunMode.Add, count=1)
    run_with_scope(go, sawtooth, sawtooth)
    assert len(delivered[0]) == 2


def test_configure_sends_gain_only_on_change():
    async def go(scope, port):
        scope.configure(sample_rate_index=6)
        assert port.written == []
        scope.configure(ch1_gain=2)
        assert port.written == [b'G\x00\x01', b'G\x01\x00']
        with pytest.raises(InvalidParameter):
            scope.configure(ch2_gain=3)
        return scope.config
    config = run_with_scope(go, script={})
    assert config.ch1_gain == 2
    assert config.sample_rate_index == 6


def test_start_waveform():
    async def go(scope, port):
        frequency = await scope.start_waveform(50000, 'triangle')
        assert port.opcodes() == ['p', 'N', 'r', 'f']
        assert port.written[0] == b'p\x00\x28'
        return frequency
    assert run_with_scope(go, script={}) == 50000


def test_start_waveform_from_file(tmp_path):
    path = tmp_path / 'wave.csv'
    path.write_text('\n'.join(str(value) for value in range(0, 256)))

    async def go(scope, port):
        await scope.start_waveform(100, str(path))
        return port.written[2]
    upload = run_with_scope(go, script={})
    assert upload[3] == 0
    assert upload[-1] == 255


def test_digital_io():
    async def go(scope, port):
        levels = await scope.read_digital_inputs()
        await scope.pulse_digital_output(3, width=0.001)
        frequency = await scope.start_digital_clock(1000)
        return levels, frequency, port.written
    levels, frequency, written = run_with_scope(go, script=responses(b'', b''))
    assert levels == 5
    assert frequency == 1000
    assert written[1:] == [b'h\x08\x00', b'h\x00\x00', b'c\x7d\x00', b'd\x00\x00']


def test_digital_output_range():
    async def go(scope, port):
        with pytest.raises(InvalidParameter):
            scope.set_digital_outputs(256)
        with pytest.raises(InvalidParameter):
            await scope.pulse_digital_output(8)
    run_with_scope(go, script={})


def test_signature_and_led():
    async def go(scope, port):
        signature = await scope.read_signature()
        scope.blink_led()
        return signature, port.written[-1]
    assert run_with_scope(go, script=responses(b'', b'')) == ('SCOPE v1.4', b't\x00\x00')


def test_apply_trigger():
    async def go(scope, port):
        scope.configure(trig_source=TriggerSource.CH1, trig_level=3072)
        level = await scope.apply_trigger()
        return level, port.written
    level, written = run_with_scope(go, script={})
    assert level == 5.0
    assert written == [b'T\x01\x00', b'P\x00\x00', b'L\xb0\x00']


def test_timeout_surfaces():
    async def go(scope, port):
        with pytest.raises(AcquisitionTimeout):
            await scope.acquire()
        assert scope.state == 0
    run_with_scope(go, script={})


def test_abort_unblocks_acquire():
    async def go(scope, port):
        task = asyncio.ensure_future(scope.acquire())
        await asyncio.sleep(0.01)
        scope.abort()
        with pytest.raises(AcquisitionAborted):
            await task
        assert port.written[-1] == protocol.abort()
    run_with_scope(go, script={})


def test_not_connected():
    scope = Scope()
    assert not scope.connected
    with pytest.raises(UsageError):
        scope.configure(ch1_gain=2)
    with pytest.raises(UsageError):
        scope.blink_led()
    with pytest.raises(UsageError):
        asyncio.run(scope.acquire())
    with pytest.raises(UsageError):
        scope.export_csv('capture.csv')
    with pytest.raises(UsageError):
        scope.export_bode_csv('bode.csv')
    with pytest.raises(UsageError):
        scope.cancel_sweep()


def test_export_after_capture(tmp_path, sawtooth):
    async def go(scope, port):
        await scope.capture()
        return scope.export_csv(tmp_path / 'capture.csv', spectrum=True)
    frame = run_with_scope(go, sawtooth, sawtooth)
    assert len(frame) == 200
    assert "# FFT Data" in (tmp_path / 'capture.csv').read_text()


def test_concatenate_skips_missing_channels(sawtooth):
    async def go(scope, port):
        return [await scope.acquire(), await scope.acquire()]
    batch = run_with_scope(go, sawtooth, sawtooth)
    del batch[0]['ch2']
    traces = concatenate(batch)
    assert len(traces.ch1.samples) == 400
    assert len(traces.ch2.samples) == 200


def test_trigger_judged_against_capture_snapshot(sawtooth):
    async def go(scope, port):
        task = asyncio.ensure_future(scope.capture())
        await asyncio.sleep(0.001)
        scope.configure(trig_source=TriggerSource.CH1, trig_level=0)
        return scope, await task
    scope, traces = run_with_scope(go, sawtooth, sawtooth)
    assert traces.config.trig_source == TriggerSource.Auto
    assert traces.trigger.triggered
    assert scope.config.trig_source == TriggerSource.CH1
    assert scope.config.trig_level == 0


def test_fallback_keeps_settings_changed_mid_capture(sawtooth):
    async def go(scope, port):
        scope.configure(trig_source=TriggerSource.CH1, trig_level=2048)
        task = asyncio.ensure_future(scope.capture())
        await asyncio.sleep(0.001)
        scope.configure(trig_source=TriggerSource.CH2, trig_level=3000)
        return scope, await task
    scope, traces = run_with_scope(go, bytes([128] * 200), sawtooth)
    assert not traces.trigger
    assert scope.config.trig_source == TriggerSource.CH2
    assert scope.config.trig_level == 3000


def test_abort_during_sweep_settle_sends_nothing_more(sawtooth):
    async def go(scope, port):
        task = asyncio.ensure_future(scope.sweep(10, 20, 10, 100))
        await asyncio.sleep(0.05)
        assert port.opcodes() == ['p', 'N', 'r', 'f']
        scope.abort()
        written = len(port.written)
        result = await task
        return result, port.opcodes()[written - 1:]
    result, after = run_with_scope(go, sawtooth, sawtooth)
    assert after == ['A']
    assert result.aborted
    assert len(result) == 0


def test_measure_last_capture():
    wave = bytes(int(128 + 100 * np.sin(2 * np.pi * i / 40 + 0.1)) for i in range(200))

    async def go(scope, port):
        with pytest.raises(UsageError):
            scope.measure()
        traces = await scope.capture()
        del traces['ch1']
        with pytest.raises(UsageError):
            scope.measure('ch1')
        return scope.measure('ch2')
    measurement = run_with_scope(go, wave, wave)
    assert measurement.frequency == pytest.approx(5000, rel=0.01)
    assert measurement.peak_to_peak > 0
