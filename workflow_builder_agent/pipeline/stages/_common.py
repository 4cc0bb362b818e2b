"""Stage boundary shared by every stage function.

stage_boundary(name) turns exceptions escaping a stage into a failed
StepResult so the coordinator sees one uniform outcome type:

  PipelineError          → StepResult.fail(err.kind, err.message)
  any other Exception    → logged with traceback, StepResult.fail(INTERNAL, ...)
  asyncio.CancelledError → re-raised untouched (BaseException, never caught)
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from workflow_builder_agent.errors import ErrorKind, PipelineError
from workflow_builder_agent.pipeline.results import StepResult

logger = logging.getLogger("workflow_builder_agent.pipeline")

F = TypeVar("F", bound=Callable[..., Awaitable[StepResult[Any]]])


def stage_boundary(stage: str) -> Callable[[F], F]:
    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> StepResult[Any]:
            try:
                return await fn(*args, **kwargs)
            except PipelineError as exc:
                logger.error("[%s] %s: %s", stage, exc.kind.value, exc.message)
                return StepResult.fail(exc.kind, exc.message)
            except Exception as exc:
                logger.exception("[%s] Unexpected error", stage)
                return StepResult.fail(ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}")

        return wrapper  # type: ignore[return-value]

    return decorator
