"""Shared handles for in-flight model downloads."""

import threading
from typing import Optional

from silo.models.schema import BackendType, OperationResult, PullPhase, PullTask


class PullHandle:
    """
    One download of one model. Every caller that pulls the same model while
    it is in flight receives the same handle.
    """

    def __init__(self, model_id: str, backend: BackendType):
        self.model_id = model_id
        self.backend = backend
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._task = PullTask(model_id=model_id, backend=backend)

    @property
    def task(self) -> PullTask:
        with self._lock:
            return self._task

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def update(self, task: PullTask) -> None:
        with self._lock:
            if self._task.finished:
                return
            self._task = task

    def fail(self, error: str) -> None:
        with self._lock:
            self._task = self._task.model_copy(update={"phase": PullPhase.ERROR, "error": error})

    def finish(self) -> None:
        with self._lock:
            if not self._task.finished:
                self._task = self._task.model_copy(update={"phase": PullPhase.COMPLETE, "progress": 1.0})
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> PullTask:
        self._done.wait(timeout)
        return self.task

    def result(self, timeout: Optional[float] = None) -> OperationResult:
        task = self.wait(timeout)
        if not self.done:
            return OperationResult(success=False, error=f"Pull of {self.model_id} still in progress")
        if task.phase == PullPhase.ERROR:
            return OperationResult(success=False, error=task.error)
        return OperationResult(success=True)
