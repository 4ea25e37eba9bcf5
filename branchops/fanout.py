from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from branchops.errors import DataUnavailable, QueryTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[DataUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: DataUnavailable) -> "Result[T]":
        return cls(error=error)


def _apply_statement_timeout(session: Session, timeout: float) -> None:
    if session.get_bind().dialect.name == "postgresql":
        session.execute(text(f"SET LOCAL statement_timeout = {int(timeout * 1000)}"))


def _run_task(
    name: str,
    task: Callable[[Session], T],
    session_factory: Callable[[], Session],
    timeout: float,
) -> Result[T]:
    with session_factory() as session:
        try:
            _apply_statement_timeout(session, timeout)
            return Result.success(task(session))
        except DataUnavailable as exc:
            return Result.failure(exc)
        except SQLAlchemyError:
            logger.exception("query %s failed", name)
            return Result.failure(DataUnavailable(f"{name} data is unavailable"))


def run_parallel(
    tasks: dict[str, Callable[[Session], Any]],
    session_factory: Callable[[], Session],
    timeout: float,
    workers: int = 4,
) -> dict[str, Result]:
    """Run each task with its own session and wait at most ``timeout`` seconds.

    Tasks still running at the deadline are reported as ``QueryTimeout`` and
    abandoned; queued ones are cancelled.
    """
    if not tasks:
        return {}
    executor = ThreadPoolExecutor(max_workers=max(1, min(workers, len(tasks))))
    try:
        futures = {
            name: executor.submit(_run_task, name, task, session_factory, timeout)
            for name, task in tasks.items()
        }
        wait(futures.values(), timeout=timeout)
        results: dict[str, Result] = {}
        for name, future in futures.items():
            if future.done():
                results[name] = future.result()
            else:
                future.cancel()
                logger.warning("query %s exceeded %.1fs", name, timeout)
                results[name] = Result.failure(
                    QueryTimeout(f"{name} query timed out after {timeout:g}s")
                )
        return results
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def unwrap_all(results: dict[str, Result]) -> dict[str, Any]:
    return {name: result.unwrap() for name, result in results.items()}
