"""
Tests for worker.py - Periodic scan worker

Test coverage for:
- Single passes
- Thread lifecycle (start, stop, is_alive)
- Error handling in the loop
- Status reporting
"""

import pytest
import time

from qbt_automations.worker import ScanWorker


@pytest.fixture
def mock_service(mocker):
    """Create mock AutomationService"""
    service = mocker.MagicMock()
    service.tick.return_value = {1: {'processed': 3}, 2: None}
    return service


@pytest.fixture
def worker(mock_service):
    """Create worker instance (not started)"""
    w = ScanWorker(mock_service, scan_interval=0.01)
    yield w
    w.stop(timeout=5)


class TestRunOnce:
    """Test a single pass"""

    def test_run_once_ticks_service(self, worker, mock_service):
        """run_once delegates to service.tick and counts the pass"""
        results = worker.run_once()

        mock_service.tick.assert_called_once_with(trigger='scheduled')
        assert results == {1: {'processed': 3}, 2: None}
        assert worker.passes == 1
        assert worker.last_pass_completed is not None

    def test_run_once_propagates_errors(self, worker, mock_service):
        """run_once itself does not swallow errors"""
        mock_service.tick.side_effect = RuntimeError('boom')

        with pytest.raises(RuntimeError):
            worker.run_once()
        assert worker.passes == 0


class TestLifecycle:
    """Test thread lifecycle"""

    def test_initial_state(self, worker):
        """A new worker is not running"""
        assert worker.running is False
        assert worker.thread is None
        assert worker.is_alive() is False

    def test_start_runs_passes(self, worker, mock_service):
        """A started worker ticks repeatedly until stopped"""
        worker.start()

        deadline = time.time() + 5
        while worker.passes < 2 and time.time() < deadline:
            time.sleep(0.01)

        assert worker.passes >= 2
        mock_service.start.assert_called_once()

        worker.stop(timeout=5)
        assert worker.is_alive() is False
        assert worker.running is False
        mock_service.stop.assert_called_once_with(timeout=5)

    def test_thread_is_not_daemon(self, worker):
        """The worker thread is joined on shutdown, not killed"""
        worker.start()
        assert worker.thread.daemon is False
        assert worker.thread.name == 'scan-worker'

    def test_start_twice(self, worker, mock_service):
        """Starting a running worker is a no-op"""
        worker.start()
        thread = worker.thread
        worker.start()

        assert worker.thread is thread
        mock_service.start.assert_called_once()

    def test_stop_without_start(self, worker, mock_service):
        """Stopping an idle worker does nothing"""
        worker.stop()
        mock_service.stop.assert_not_called()

    def test_loop_survives_errors(self, worker, mock_service):
        """An exception in a pass does not kill the loop"""
        calls = []

        def tick(trigger):
            calls.append(trigger)
            if len(calls) == 1:
                raise RuntimeError('first pass fails')
            return {}

        mock_service.tick.side_effect = tick
        worker.start()

        deadline = time.time() + 5
        while len(calls) < 3 and time.time() < deadline:
            time.sleep(0.01)

        assert len(calls) >= 3
        assert worker.is_alive() is True


class TestStatus:
    """Test status reporting"""

    def test_status(self, worker):
        """Status reflects interval and completed passes"""
        status = worker.get_status()
        assert status == {
            'running': False,
            'thread_alive': False,
            'scan_interval': 0.01,
            'passes': 0,
            'last_pass_completed': None,
        }

        worker.run_once()
        status = worker.get_status()
        assert status['passes'] == 1
        assert status['last_pass_completed'].endswith('+00:00')

    def test_repr(self, worker):
        """repr shows the running state"""
        assert repr(worker) == '<ScanWorker running=False alive=False>'
