"""
Reannounce scheduler - retries stalled torrents until a tracker answers

Each monitored torrent gets a ReannounceJob with its own cancellation token.
Attempt 0 runs after initialWaitSeconds; every further attempt runs one
retry interval after the previous one, until the torrent is healthy, gone,
cancelled, or maxRetries is reached.

Job states:
    idle -> waiting -> retrying -> succeeded | exhausted | removed
"""

import time
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from qbt_automations.matcher import in_reannounce_scope
from qbt_automations.models import ReannounceActivity, ReannounceOutcome, ReannounceSettings, TorrentSnapshot
from qbt_automations.utils import extract_domain

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_WINDOW = 120


class JobState:
    """Reannounce job state constants"""
    IDLE = "idle"
    WAITING = "waiting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    REMOVED = "removed"

    @classmethod
    def active(cls) -> List[str]:
        return [cls.WAITING, cls.RETRYING]


class ReannounceJob:
    """Monitoring state of one torrent"""

    def __init__(self, torrent_hash: str, name: str = '', trackers: str = '', due_at: float = 0.0):
        self.hash = torrent_hash
        self.name = name
        self.trackers = trackers
        self.state = JobState.WAITING
        self.attempt = 0
        self.due_at = due_at
        self.last_completed: Optional[float] = None
        self.running = False
        self.cancel_token = threading.Event()

    @property
    def is_active(self) -> bool:
        return self.state in JobState.active()

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hash': self.hash,
            'name': self.name,
            'state': self.state,
            'attempt': self.attempt,
            'dueAt': self.due_at,
            'lastCompleted': self.last_completed,
        }

    def __repr__(self) -> str:
        return f"<ReannounceJob {self.hash[:8]} state={self.state} attempt={self.attempt}>"


class ReannounceScheduler:
    """
    Per-instance reannounce retry scheduler

    observe() is fed the instance's torrents on every service tick; the
    scheduler thread calls run_pending() every tick_interval seconds.
    """

    def __init__(self, instance_id: int, api, recorder, settings: Optional[ReannounceSettings] = None,
                 tick_interval: float = 1.0, debounce_window: int = DEFAULT_DEBOUNCE_WINDOW,
                 clock=time.time):
        """
        Initialize scheduler

        Args:
            instance_id: Instance this scheduler works on
            api: QBittorrentAPI (or compatible) client for the instance
            recorder: ActivityRecorder for reannounce records
            settings: Monitoring settings (defaults: disabled)
            tick_interval: Seconds between run_pending() calls of the scheduler thread
            debounce_window: Seconds a finished torrent is ignored before it can be monitored again
            clock: Callable returning the current Unix time
        """
        self.instance_id = instance_id
        self.api = api
        self.recorder = recorder
        self.settings = settings or ReannounceSettings(instance_id=instance_id)
        self.tick_interval = tick_interval
        self.debounce_window = debounce_window
        self.clock = clock

        self.jobs: Dict[str, ReannounceJob] = {}
        self._lock = threading.RLock()

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._wakeup = threading.Event()

    # ========================================================================
    # Settings
    # ========================================================================

    @property
    def retry_interval(self) -> float:
        """Seconds between attempts (halved in aggressive mode, never below 1)"""
        interval = self.settings.reannounce_interval_seconds
        if self.settings.aggressive:
            interval = interval / 2
        return max(1.0, float(interval))

    @property
    def debounce_seconds(self) -> float:
        """Cooldown after a job finishes (the retry interval in aggressive mode)"""
        if self.settings.aggressive:
            return self.retry_interval
        return float(self.debounce_window)

    def _debounce_reason(self) -> str:
        if self.settings.aggressive:
            return "debounced during retry interval window"
        return "debounced during cooldown window"

    def update_settings(self, settings: ReannounceSettings):
        """Apply new settings; disabling cancels every job"""
        with self._lock:
            self.settings = settings
            if not settings.enabled:
                self.disable()
        logger.info(f"Instance {self.instance_id}: reannounce settings updated (enabled={settings.enabled})")

    # ========================================================================
    # Entering jobs
    # ========================================================================

    def observe(self, snapshots: Iterable[TorrentSnapshot]) -> int:
        """
        Reconcile jobs with the current torrent list

        Starts jobs for stalled, in-scope, untracked torrents and cancels jobs
        whose torrent disappeared or left the monitor scope.

        Returns:
            Number of jobs started
        """
        if not self.settings.enabled:
            return 0

        now = self.clock()
        started = 0
        seen = set()

        with self._lock:
            for snapshot in snapshots:
                seen.add(snapshot.hash)
                job = self.jobs.get(snapshot.hash)

                if job is not None and job.is_active:
                    if snapshot.is_stalled and not in_reannounce_scope(self.settings, snapshot):
                        self._cancel_job(job, JobState.IDLE, "excluded by monitor scope")
                    continue

                if not in_reannounce_scope(self.settings, snapshot) or self._too_old(snapshot, now):
                    continue
                if job is not None and self._in_cooldown(job, now):
                    continue

                self._start(snapshot.hash, snapshot.name, snapshot.tracker, now + self.settings.initial_wait_seconds)
                started += 1

            for torrent_hash, job in list(self.jobs.items()):
                if torrent_hash in seen:
                    continue
                if job.is_active:
                    self._cancel_job(job, JobState.REMOVED, "torrent removed")
                elif not self._in_cooldown(job, now):
                    del self.jobs[torrent_hash]

        return started

    def track(self, snapshot: TorrentSnapshot) -> Optional[ReannounceJob]:
        """
        Start monitoring one torrent explicitly (e.g. right after it was added)

        Returns:
            The job, or None if monitoring is disabled or the torrent is out of scope
        """
        if not self.settings.enabled or not in_reannounce_scope(self.settings, snapshot):
            return None

        now = self.clock()
        with self._lock:
            job = self.jobs.get(snapshot.hash)
            if job is not None and (job.is_active or self._in_cooldown(job, now)):
                return job
            return self._start(snapshot.hash, snapshot.name, snapshot.tracker,
                               now + self.settings.initial_wait_seconds)

    def request(self, hashes: Iterable[str]) -> Dict[str, str]:
        """
        Manually request reannounce for torrents

        Returns:
            Map of hash to 'queued', 'skipped' or 'not found'
        """
        now = self.clock()
        results = {}

        for torrent_hash in hashes:
            with self._lock:
                job = self.jobs.get(torrent_hash)
                if job is not None and job.is_active:
                    self._record(job.hash, job.name, job.trackers, ReannounceOutcome.SKIPPED, "already running")
                    results[torrent_hash] = 'skipped'
                    continue
                if job is not None and self._in_cooldown(job, now):
                    self._record(job.hash, job.name, job.trackers, ReannounceOutcome.SKIPPED,
                                 self._debounce_reason())
                    results[torrent_hash] = 'skipped'
                    continue

            try:
                torrent = self.api.get_torrent(torrent_hash)
            except Exception as e:
                logger.warning(f"Cannot read torrent {torrent_hash} for reannounce request: {e}")
                torrent = None

            if not torrent:
                results[torrent_hash] = 'not found'
                continue

            with self._lock:
                self._start(torrent_hash, torrent.get('name', ''), extract_domain(torrent.get('tracker')), now)
            results[torrent_hash] = 'queued'

        return results

    def _start(self, torrent_hash: str, name: str, trackers: str, due_at: float) -> ReannounceJob:
        job = ReannounceJob(torrent_hash, name=name, trackers=trackers, due_at=due_at)
        self.jobs[torrent_hash] = job
        logger.info(f"Instance {self.instance_id}: monitoring stalled torrent {name or torrent_hash}")
        self._wakeup.set()
        return job

    def _too_old(self, snapshot: TorrentSnapshot, now: float) -> bool:
        max_age = self.settings.max_age_seconds
        return max_age > 0 and snapshot.added_on > 0 and now - snapshot.added_on > max_age

    def _in_cooldown(self, job: ReannounceJob, now: float) -> bool:
        return job.last_completed is not None and now - job.last_completed < self.debounce_seconds

    # ========================================================================
    # Cancellation
    # ========================================================================

    def cancel(self, torrent_hash: str, reason: str = "cancelled") -> bool:
        """
        Cancel monitoring of one torrent

        An attempt already in flight completes, but nothing is scheduled after it.

        Returns:
            True if an active job was cancelled
        """
        with self._lock:
            job = self.jobs.get(torrent_hash)
            if job is None or not job.is_active:
                return False
            self._cancel_job(job, JobState.IDLE, reason)
            return True

    def disable(self) -> int:
        """
        Cancel every active job

        Returns:
            Number of jobs cancelled
        """
        cancelled = 0
        with self._lock:
            for job in list(self.jobs.values()):
                if job.is_active:
                    self._cancel_job(job, JobState.IDLE, "monitoring disabled")
                    cancelled += 1
        if cancelled:
            logger.info(f"Instance {self.instance_id}: cancelled {cancelled} reannounce job(s)")
        return cancelled

    def _cancel_job(self, job: ReannounceJob, state: str, reason: str):
        job.cancel_token.set()
        job.state = state
        job.last_completed = self.clock()
        self._record(job.hash, job.name, job.trackers, ReannounceOutcome.SKIPPED, reason)
        logger.info(f"Instance {self.instance_id}: stopped monitoring {job.name or job.hash} ({reason})")

    # ========================================================================
    # Attempts
    # ========================================================================

    def run_pending(self) -> int:
        """
        Execute every due attempt synchronously

        Returns:
            Number of attempts executed
        """
        now = self.clock()
        with self._lock:
            due = [
                job for job in self.jobs.values()
                if job.is_active and not job.running and job.due_at <= now
            ]
            for job in due:
                job.running = True

        for job in sorted(due, key=lambda j: j.due_at):
            try:
                self._attempt(job)
            except Exception as e:
                logger.error(f"Reannounce attempt for {job.name or job.hash} failed unexpectedly: {e}")
                with self._lock:
                    if job.is_active and not job.cancelled:
                        job.due_at = self.clock() + self.retry_interval
            finally:
                job.running = False

        return len(due)

    def _attempt(self, job: ReannounceJob):
        attempt = job.attempt

        try:
            torrent = self.api.get_torrent(job.hash)
            stalled = bool(torrent) and self.api.is_stalled(job.hash, torrent)
        except Exception as e:
            logger.warning(f"Instance {self.instance_id}: client unavailable for {job.name or job.hash}: {e}")
            self._advance(job, attempt, ReannounceOutcome.FAILED, f"client unavailable: {e}")
            return

        if not torrent:
            self._finish(job, JobState.REMOVED, ReannounceOutcome.SKIPPED, "torrent removed")
            return

        job.name = torrent.get('name', job.name)
        job.trackers = extract_domain(torrent.get('tracker')) or job.trackers

        if not stalled:
            reason = "tracker healthy after reannounce" if attempt > 0 else "torrent no longer stalled"
            self._finish(job, JobState.SUCCEEDED, ReannounceOutcome.SUCCEEDED, reason)
            return

        try:
            self.api.reannounce_torrents([job.hash])
        except Exception as e:
            logger.warning(f"Reannounce of {job.name} failed: {e}")
            self._advance(job, attempt, ReannounceOutcome.FAILED, f"reannounce failed: {e}")
            return

        if attempt < self.settings.max_retries:
            logger.info(f"Reannounced {job.name} (attempt {attempt + 1}/{self.settings.max_retries + 1})")
        self._advance(job, attempt, ReannounceOutcome.SUCCEEDED, "reannounce requested")

    def _advance(self, job: ReannounceJob, attempt: int, outcome: str, reason: str):
        """Record a non-terminal attempt and schedule the next one, or exhaust the job on the last"""
        if attempt >= self.settings.max_retries:
            self._finish(job, JobState.EXHAUSTED, ReannounceOutcome.FAILED, "max retries reached")
            return

        self._record(job.hash, job.name, job.trackers, outcome, reason)

        with self._lock:
            if job.cancelled or not job.is_active:
                return
            job.attempt = attempt + 1
            job.state = JobState.RETRYING
            job.due_at = self.clock() + self.retry_interval

    def _finish(self, job: ReannounceJob, state: str, outcome: str, reason: str):
        with self._lock:
            if not job.cancelled:
                job.state = state
                job.last_completed = self.clock()
        self._record(job.hash, job.name, job.trackers, outcome, reason)
        logger.info(f"Instance {self.instance_id}: reannounce of {job.name or job.hash} {state} ({reason})")

    def _record(self, torrent_hash: str, name: str, trackers: str, outcome: str, reason: str):
        if self.recorder is None:
            return
        try:
            self.recorder.record_reannounce(ReannounceActivity(
                instance_id=self.instance_id,
                hash=torrent_hash,
                torrent_name=name,
                trackers=trackers,
                outcome=outcome,
                reason=reason
            ))
        except Exception as e:
            logger.error(f"Failed to record reannounce activity for {name or torrent_hash}: {e}")

    # ========================================================================
    # Thread
    # ========================================================================

    def start(self):
        """Start scheduler thread"""
        if self.running and self.thread and self.thread.is_alive():
            logger.warning("Reannounce scheduler already running")
            return

        self.running = True
        self.thread = threading.Thread(
            target=self._run_loop, daemon=False, name=f"reannounce-{self.instance_id}"
        )
        self.thread.start()
        logger.info(f"Instance {self.instance_id}: reannounce scheduler started")

    def stop(self, timeout: float = 30.0):
        """
        Stop scheduler thread gracefully

        Args:
            timeout: Maximum seconds to wait for the current attempt to complete
        """
        if not self.running:
            return

        self.running = False
        self._wakeup.set()

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f"Reannounce scheduler did not stop within {timeout}s timeout")
            else:
                logger.info(f"Instance {self.instance_id}: reannounce scheduler stopped")

    def is_alive(self) -> bool:
        """Check if scheduler thread is alive"""
        return self.thread is not None and self.thread.is_alive()

    def get_status(self) -> Dict[str, Any]:
        """
        Get scheduler status

        Returns:
            Dictionary with scheduler status information
        """
        with self._lock:
            active = [job for job in self.jobs.values() if job.is_active]
        return {
            'running': self.running,
            'thread_alive': self.is_alive(),
            'enabled': self.settings.enabled,
            'active_jobs': len(active),
            'tracked': len(self.jobs),
        }

    def _run_loop(self):
        """Main scheduler loop - runs in separate thread"""
        while self.running:
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Unexpected error in reannounce loop: {e}", exc_info=True)

            self._wakeup.wait(self.tick_interval)
            self._wakeup.clear()

    def __repr__(self) -> str:
        return f"<ReannounceScheduler instance={self.instance_id} jobs={len(self.jobs)} running={self.running}>"
