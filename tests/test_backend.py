"""Tests for the process-wide backend lifecycle."""

import pytest

torch = pytest.importorskip("torch")

from turnkv_engine import turnkv_backend
from turnkv_engine.turnkv_backend import backend_status, initialize_backend, shutdown_backend
from turnkv_engine.turnkv_state import BackendStatus


@pytest.fixture
def fresh_backend(monkeypatch):
    thread_calls = []
    monkeypatch.setattr(turnkv_backend, "_BACKEND_STATUS", BackendStatus.OFFLINE)
    monkeypatch.setattr(torch, "set_num_threads", thread_calls.append)
    return thread_calls


class TestBackendLifecycle:
    def test_initialize_is_idempotent(self, fresh_backend):
        assert initialize_backend(num_threads=2) == BackendStatus.READY
        assert initialize_backend(num_threads=4) == BackendStatus.READY

        assert fresh_backend == [2]
        assert backend_status() == BackendStatus.READY

    def test_shutdown_after_initialize(self, fresh_backend):
        initialize_backend(num_threads=1)

        assert shutdown_backend() == BackendStatus.SHUT_DOWN
        assert shutdown_backend() == BackendStatus.SHUT_DOWN
        assert backend_status() == BackendStatus.SHUT_DOWN

    def test_shutdown_before_initialize_is_a_no_op(self, fresh_backend):
        assert shutdown_backend() == BackendStatus.OFFLINE
        assert backend_status() == BackendStatus.OFFLINE
        assert fresh_backend == []

    def test_default_thread_count_leaves_cores_free(self, fresh_backend, monkeypatch):
        monkeypatch.setattr(turnkv_backend.os, "cpu_count", lambda: 16)

        initialize_backend()

        assert fresh_backend == [8]
