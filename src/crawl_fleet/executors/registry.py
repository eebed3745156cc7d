"""Resolve executor import specs into executor instances."""

from __future__ import annotations

import importlib
from collections.abc import Sequence

from crawl_fleet.executors.base import ExecutorContext, TaskExecutor

BUILTIN_EXECUTORS = {
    "echo": "crawl_fleet.executors.echo:EchoExecutor",
    "page": "crawl_fleet.executors.page:PageTextExecutor",
}


class ExecutorLoadError(RuntimeError):
    """Raised when an executor spec cannot be imported or built."""


def resolve_spec(spec: str) -> str:
    spec = spec.strip()
    return BUILTIN_EXECUTORS.get(spec, spec)


def load_executor(spec: str, context: ExecutorContext) -> TaskExecutor:
    """Import ``module:attribute`` (or a builtin alias) and call it with ``context``."""

    resolved = resolve_spec(spec)
    module_name, sep, attribute = resolved.partition(":")
    if not sep or not module_name or not attribute:
        raise ExecutorLoadError(
            f"Executor spec must look like 'package.module:Factory', got {spec!r}.",
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise ExecutorLoadError(
            f"Cannot import executor module {module_name!r}: {error}",
        ) from error
    factory = getattr(module, attribute, None)
    if factory is None or not callable(factory):
        raise ExecutorLoadError(f"{module_name!r} has no callable {attribute!r}.")
    try:
        executor = factory(context)
    except (TypeError, ValueError) as error:
        raise ExecutorLoadError(f"Cannot build executor {spec!r}: {error}") from error
    if not isinstance(executor, TaskExecutor):
        raise ExecutorLoadError(
            f"{spec!r} produced {type(executor).__name__}, which lacks source/execute.",
        )
    return executor


def load_executors(specs: Sequence[str], context: ExecutorContext) -> list[TaskExecutor]:
    executors = [load_executor(spec, context) for spec in specs]
    sources = [executor.source for executor in executors]
    duplicates = sorted({source for source in sources if sources.count(source) > 1})
    if duplicates:
        raise ExecutorLoadError(f"Duplicate executor sources: {', '.join(duplicates)}")
    return executors
