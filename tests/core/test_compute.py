"""
Tests for timing and cross-strategy tolerance tiers.
"""

import time

import numpy as np
import pytest

from pyscicore.core.compute.timing import Timer, timed
from pyscicore.core.compute.tolerances import (
    CPU_FP32,
    CPU_FP64,
    GPU_FP32,
    GPU_FP64,
    MPS_FP32,
    select_tolerance,
)


class TestTimer:

    def test_sections_accumulate(self):
        timer = Timer()
        timer.start()
        for _ in range(3):
            with timer.section('work'):
                time.sleep(0.001)
        timer.stop()
        result = timer.result()
        assert result['work'] >= 0.003
        assert result['total_seconds'] >= result['work']

    def test_section_recorded_on_error(self):
        timer = Timer()
        timer.start()
        with pytest.raises(ZeroDivisionError):
            with timer.section('boom'):
                1 / 0
        timer.stop()
        assert 'boom' in timer.result()

    def test_result_before_stop(self):
        timer = Timer()
        timer.start()
        assert timer.running
        with pytest.raises(RuntimeError, match="before stop"):
            timer.result()

    def test_stop_before_start(self):
        with pytest.raises(RuntimeError, match="before start"):
            Timer().stop()

    def test_cpu_device_never_syncs(self):
        assert Timer(device='cpu')._device is None

    def test_device_index_ignored(self):
        assert Timer(device='cuda:0')._device == 'cuda'

    def test_attach_device(self):
        timer = Timer()
        assert timer._device is None
        timer.attach_device('mps')
        assert timer._device == 'mps'
        timer.attach_device('cpu')
        assert timer._device is None

    def test_timed(self):
        with timed() as timer:
            pass
        assert timer.result()['total_seconds'] >= 0.0


class TestTolerances:

    @pytest.mark.parametrize("strategy, dtype, tier", [
        ('scalar', np.float64, CPU_FP64),
        ('parallel', np.float64, CPU_FP64),
        ('simd', np.float32, CPU_FP32),
        ('gpu', np.float64, GPU_FP64),
        ('gpu', np.float32, GPU_FP32),
        ('gpu', np.complex64, GPU_FP32),
    ])
    def test_select(self, strategy, dtype, tier):
        assert select_tolerance(strategy, dtype) is tier

    def test_mps_is_relaxed_single(self):
        assert MPS_FP32 is GPU_FP32

    def test_tiers_ordered(self):
        assert CPU_FP64.rtol < CPU_FP32.rtol < GPU_FP32.rtol
        assert CPU_FP64.rtol < GPU_FP64.rtol

    def test_allclose(self):
        assert CPU_FP64.allclose(1.0 + 1e-12, 1.0)
        assert not CPU_FP64.allclose(1.0 + 1e-6, 1.0)
        assert GPU_FP32.allclose(np.float32(1.00001), 1.0)
