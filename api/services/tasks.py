import asyncio
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Set

from lib.error_handler import NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class AnalysisJob:
    reflection_id: str
    user_id: Optional[str] = None
    attempt: int = 1


class AnalysisQueue:
    """Background analysis of newly ingested reflections.

    Jobs are delivered at least once: a failed job is redelivered until
    max_attempts is reached. The consumer relies on the analysis service
    skipping reflections that are already analyzed.
    """

    def __init__(self, analysis_service, max_attempts: int = 3, retry_delay: float = 2.0):
        self.analysis = analysis_service
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._jobs: "queue.Queue[Optional[AnalysisJob]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._timers: Set[threading.Timer] = set()
        self._outstanding = 0
        self._lock = threading.Condition()

    def start(self) -> None:
        with self._lock:
            if self._worker and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="analysis-worker", daemon=True)
            self._worker.start()
        logger.info("Analysis worker started")

    def submit(self, reflection_id: str, user_id: Optional[str] = None) -> None:
        self.start()
        with self._lock:
            self._outstanding += 1
        self._jobs.put(AnalysisJob(reflection_id=reflection_id, user_id=user_id))
        logger.info(f"Queued analysis for reflection {reflection_id}")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job has succeeded or been given up on"""
        with self._lock:
            return self._lock.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            worker = self._worker
        if worker and worker.is_alive():
            self._jobs.put(None)
            worker.join(timeout)
        logger.info("Analysis worker stopped")

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        try:
            while True:
                job = self._jobs.get()
                if job is None:
                    break
                self._process(loop, job)
        finally:
            loop.close()

    def _process(self, loop: asyncio.AbstractEventLoop, job: AnalysisJob) -> None:
        try:
            loop.run_until_complete(self.analysis.analyze(job.reflection_id, job.user_id))
            logger.info(f"Background analysis finished for {job.reflection_id}")
        except NotFoundError as e:
            logger.error(f"Dropping analysis job: {e.message}")
        except Exception as e:
            if job.attempt < self.max_attempts:
                logger.warning(
                    f"Analysis attempt {job.attempt} for {job.reflection_id} failed: {str(e)}; retrying"
                )
                self._retry(job)
                return
            logger.error(f"Analysis for {job.reflection_id} failed after {job.attempt} attempts: {str(e)}")

        self._finish()

    def _retry(self, job: AnalysisJob) -> None:
        retry_job = AnalysisJob(job.reflection_id, job.user_id, job.attempt + 1)

        def redeliver():
            with self._lock:
                self._timers.discard(timer)
            self._jobs.put(retry_job)

        timer = threading.Timer(self.retry_delay * job.attempt, redeliver)
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()

    def _finish(self) -> None:
        with self._lock:
            self._outstanding -= 1
            self._lock.notify_all()
