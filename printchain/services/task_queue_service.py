from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from printchain.config import settings
from printchain.errors import IdempotencySignal, RetryableError
from printchain.models import TaskKind, TaskStatus, WorkTask

logger = logging.getLogger(__name__)

OPEN_STATUSES = (TaskStatus.QUEUED, TaskStatus.RUNNING)


@dataclass(frozen=True)
class TaskHandler:
    run: Callable[[Session, dict], None]
    on_failed: Callable[[Session, dict, str], None] | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def backoff_seconds(attempt: int) -> float:
    return settings.task_backoff_base_seconds * (2 ** max(attempt - 1, 0))


def enqueue(
    db: Session,
    *,
    kind: TaskKind,
    subject_key: str,
    payload: dict | None = None,
    delay_seconds: float = 0,
) -> WorkTask:
    existing = db.execute(
        select(WorkTask).where(
            WorkTask.kind == kind,
            WorkTask.subject_key == subject_key,
            WorkTask.status.in_(OPEN_STATUSES),
        )
    ).scalars().first()
    if existing is not None:
        return existing

    task = WorkTask(
        kind=kind,
        subject_key=subject_key,
        payload=payload or {},
        status=TaskStatus.QUEUED,
        attempt_count=0,
        max_attempts=settings.task_max_attempts,
        next_attempt_at=_now() + timedelta(seconds=delay_seconds),
    )
    db.add(task)
    db.flush()
    logger.info('task.enqueued kind=%s subject=%s id=%s', kind.value, subject_key, task.id)
    return task


def claim_due_tasks(db: Session, *, kind: TaskKind, limit: int) -> list[int]:
    rows = db.execute(
        select(WorkTask)
        .where(
            WorkTask.kind == kind,
            WorkTask.status == TaskStatus.QUEUED,
            WorkTask.next_attempt_at <= _now(),
        )
        .order_by(WorkTask.next_attempt_at.asc(), WorkTask.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).scalars().all()
    for task in rows:
        task.status = TaskStatus.RUNNING
        task.attempt_count += 1
    db.commit()
    return [task.id for task in rows]


def _record_failure(
    session_factory: Callable[[], Session],
    task_id: int,
    error: Exception,
    *,
    retryable: bool,
    handler: TaskHandler | None,
) -> TaskStatus:
    message = f'{type(error).__name__}: {error}'
    with session_factory() as db:
        task = db.get(WorkTask, task_id)
        task.last_error = message
        if retryable and task.attempt_count < task.max_attempts:
            delay = backoff_seconds(task.attempt_count)
            task.status = TaskStatus.QUEUED
            task.next_attempt_at = _now() + timedelta(seconds=delay)
            logger.warning(
                'task.retry kind=%s id=%s attempt=%d/%d delay=%.1fs error=%s',
                task.kind.value,
                task.id,
                task.attempt_count,
                task.max_attempts,
                delay,
                message,
            )
        else:
            task.status = TaskStatus.FAILED
            logger.error(
                'task.failed kind=%s id=%s attempts=%d error=%s',
                task.kind.value,
                task.id,
                task.attempt_count,
                message,
            )
            if handler is not None and handler.on_failed is not None:
                handler.on_failed(db, dict(task.payload or {}), message)
        db.commit()
        return task.status


def run_task(
    task_id: int,
    *,
    session_factory: Callable[[], Session],
    handlers: dict[TaskKind, TaskHandler],
) -> TaskStatus | None:
    with session_factory() as db:
        task = db.get(WorkTask, task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return None
        kind = task.kind
        payload = dict(task.payload or {})
        handler = handlers.get(kind)
        try:
            if handler is None:
                raise LookupError(f'No handler registered for {kind.value}')
            handler.run(db, payload)
            task.status = TaskStatus.DONE
            task.last_error = None
            db.commit()
            return TaskStatus.DONE
        except IdempotencySignal as exc:
            db.rollback()
            logger.info('task.already_done kind=%s id=%s detail=%s', kind.value, task_id, exc)
            db.get(WorkTask, task_id).status = TaskStatus.DONE
            db.commit()
            return TaskStatus.DONE
        except (RetryableError, OperationalError) as exc:
            db.rollback()
            error, retryable = exc, True
        except Exception as exc:
            db.rollback()
            logger.exception('task.error kind=%s id=%s', kind.value, task_id)
            error, retryable = exc, False

    return _record_failure(session_factory, task_id, error, retryable=retryable, handler=handler)


class WorkerPool:
    """Drains queued tasks with one bounded thread pool per task kind."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        handlers: dict[TaskKind, TaskHandler],
        concurrency: dict[str, int] | None = None,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.concurrency = concurrency if concurrency is not None else settings.worker_concurrency
        self._executors = {
            kind: ThreadPoolExecutor(max_workers=self._limit(kind), thread_name_prefix=f'worker-{kind.value.lower()}')
            for kind in handlers
        }
        self._stop = threading.Event()

    def _limit(self, kind: TaskKind) -> int:
        return max(int(self.concurrency.get(kind.value, 1)), 1)

    def run_once(self) -> int:
        processed = 0
        for kind in self.handlers:
            with self.session_factory() as db:
                task_ids = claim_due_tasks(db, kind=kind, limit=self._limit(kind))
            if not task_ids:
                continue
            futures = [
                self._executors[kind].submit(
                    run_task,
                    task_id,
                    session_factory=self.session_factory,
                    handlers=self.handlers,
                )
                for task_id in task_ids
            ]
            for future in futures:
                future.result()
            processed += len(task_ids)
        return processed

    def run_forever(self) -> None:
        logger.info('worker.started kinds=%s', ','.join(kind.value for kind in self.handlers))
        while not self._stop.is_set():
            if self.run_once() == 0:
                self._stop.wait(settings.worker_poll_seconds)
        logger.info('worker.stopped')

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self) -> None:
        self.stop()
        for executor in self._executors.values():
            executor.shutdown(wait=True)
