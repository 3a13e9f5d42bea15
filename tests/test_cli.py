"""
Command line entry point and environment check.
"""

import sys

import numpy as np
import pytest

import evm_gpu
from evm_gpu.utils.gpu_check import check_kernels

from conftest import grey


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, 'argv', ['evm-gpu', *argv])
    with pytest.raises(SystemExit) as excinfo:
        evm_gpu.cli()
    return excinfo.value.code


def test_magnify_round_trip(monkeypatch, tmp_path):
    clip = np.stack([grey(12, 16, 90 + i) for i in range(4)])
    source = tmp_path / 'clip.npy'
    target = tmp_path / 'out.npy'
    np.save(source, clip)

    code = run_cli(monkeypatch, 'magnify', str(source), str(target),
                   '--gain', '0', '--device', 'cpu')

    assert code == 0
    np.testing.assert_array_equal(np.load(target), clip)


def test_magnify_rejects_bad_array(monkeypatch, tmp_path):
    source = tmp_path / 'clip.npy'
    np.save(source, np.zeros((4, 12, 16), dtype=np.uint8))

    code = run_cli(monkeypatch, 'magnify', str(source), str(tmp_path / 'out.npy'),
                   '--device', 'cpu')
    assert code == 2


def test_magnify_reports_failure(monkeypatch, tmp_path, capsys):
    source = tmp_path / 'clip.npy'
    np.save(source, np.stack([grey(4, 4, 10)] * 2))

    code = run_cli(monkeypatch, 'magnify', str(source), str(tmp_path / 'out.npy'),
                   '--levels', '5', '--device', 'cpu')

    assert code == 1
    assert 'Suggestion' in capsys.readouterr().out


def test_version(monkeypatch, capsys):
    assert run_cli(monkeypatch, '--version') == 0
    assert evm_gpu.__version__ in capsys.readouterr().out


def test_lazy_exports():
    assert callable(evm_gpu.magnify)
    assert evm_gpu.BatchFailedError.error_type == 'magnification-failed'
    with pytest.raises(AttributeError):
        evm_gpu.not_a_thing


def test_enable_gpu_logging():
    evm_gpu.enable_gpu_logging('warning')
    assert evm_gpu.logger.level == 30
    evm_gpu.enable_gpu_logging('INFO')
    with pytest.raises(ValueError):
        evm_gpu.enable_gpu_logging('LOUD')


def test_check_kernels_on_host(capsys):
    assert check_kernels('cpu')
    assert 'Compiled 10 kernels' in capsys.readouterr().out
