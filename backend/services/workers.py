"""
Exécution asynchrone : pool de workers partitionné (webhooks) + polling périodique.

- une file par worker ; partition = crc32(clé) % n
  => tous les messages d'une même ressource passent par le même worker, dans l'ordre
- retry borné pour les erreurs transitoires, fait sur place pour garder l'ordre de la partition
- un cycle de polling qui trouve le précédent encore en cours pour le compte est sauté
"""

from __future__ import annotations

import queue
import threading
import time
import zlib
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from backend.app.core.exceptions import RateLimited, ReauthenticationRequired, TransientUpstreamError
from backend.app.core.logging_config import get_logger
from backend.services.marketplace import RetryPolicy

logger = get_logger(__name__)

_STOP = object()


class PartitionedWorkerPool:
    def __init__(
        self,
        handler: Callable[[Any], None],
        workers: int = 4,
        queue_size: int = 1000,
        max_attempts: int = 3,
        backoff: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        name: str = "webhook",
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.handler = handler
        self.max_attempts = max_attempts
        self.backoff = backoff or RetryPolicy()
        self.sleep = sleep
        self.name = name
        self._queues: list[queue.Queue] = [queue.Queue(maxsize=queue_size) for _ in range(workers)]
        self._threads: list[threading.Thread] = []

    @property
    def size(self) -> int:
        return len(self._queues)

    def partition_for(self, key: str) -> int:
        return zlib.crc32(str(key).encode("utf-8")) % len(self._queues)

    def start(self) -> None:
        if self._threads:
            return
        for idx, q in enumerate(self._queues):
            t = threading.Thread(target=self._run, args=(q,), name=f"{self.name}-worker-{idx}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("%s pool started with %d workers", self.name, len(self._threads))

    def submit(self, key: str, message: Any) -> bool:
        try:
            self._queues[self.partition_for(key)].put_nowait(message)
        except queue.Full:
            logger.error("%s queue %d full, message %s dropped", self.name, self.partition_for(key), key)
            return False
        return True

    def wait_idle(self) -> None:
        for q in self._queues:
            q.join()

    def stop(self, timeout: float | None = 10.0) -> None:
        for q in self._queues:
            q.put(_STOP)
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("%s pool stopped", self.name)

    def _run(self, q: queue.Queue) -> None:
        while True:
            message = q.get()
            try:
                if message is _STOP:
                    return
                self._handle(message)
            finally:
                q.task_done()

    def _handle(self, message: Any) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                self.handler(message)
                return
            except ReauthenticationRequired as exc:
                logger.warning("%s message dropped, account needs reconnection: %s", self.name, exc)
                return
            except (TransientUpstreamError, RateLimited) as exc:
                if attempt >= self.max_attempts:
                    logger.error("%s message gave up after %d attempts: %s", self.name, attempt, exc)
                    return
                delay = self.backoff.delay_for(attempt)
                logger.warning("%s message attempt %d failed (%s), retry in %.1fs", self.name, attempt, exc, delay)
                self.sleep(delay)
            except Exception:
                logger.exception("%s message failed", self.name)
                return


class PollingScheduler:
    """Lance `job(account_id, stop_event)` pour chaque compte actif, toutes les `interval` secondes."""

    def __init__(
        self,
        job: Callable[[int, threading.Event], Any],
        accounts_provider: Callable[[], list[int]],
        interval_seconds: float = 300,
        max_workers: int = 4,
    ):
        self.job = job
        self.accounts_provider = accounts_provider
        self.interval = interval_seconds
        self._stop = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="polling")
        self._guard = threading.Lock()
        self._running: dict[int, threading.Lock] = {}
        self._thread: threading.Thread | None = None

    def _lock_for(self, account_id: int) -> threading.Lock:
        with self._guard:
            return self._running.setdefault(account_id, threading.Lock())

    def run_cycle(self, account_id: int, job: Callable[[int, threading.Event], Any] | None = None) -> bool:
        """
        False si un cycle est déjà en cours pour ce compte (pas de file d'attente).
        `job` remplace le job périodique pour ce cycle (ex: resynchro complète).
        """
        lock = self._lock_for(account_id)
        if not lock.acquire(blocking=False):
            logger.warning("polling account %s skipped, previous cycle still running", account_id)
            return False
        try:
            (job or self.job)(account_id, self._stop)
        except ReauthenticationRequired as exc:
            logger.warning("polling account %s halted: %s", account_id, exc)
        except Exception:
            logger.exception("polling account %s failed", account_id)
        finally:
            lock.release()
        return True

    def tick(self) -> list[Future]:
        return [self._executor.submit(self.run_cycle, account_id) for account_id in self.accounts_provider()]

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("polling tick failed")
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="polling-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._executor.shutdown(wait=True)
