"""Registro supervisionado de tarefas em segundo plano.

O webhook responde antes do processamento do batch; o trabalho restante roda
como tarefa asyncio registrada aqui. O registro mantém referências fortes às
tarefas, registra qualquer exceção que escape da corrotina e permite aguardar
as pendentes no shutdown da aplicação.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from app.core.logging import get_logger

logger = get_logger("app.tasks")


class BackgroundTaskRegistry:
    """Conjunto de tarefas vivas com supervisão de falhas."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(self._supervise(name, coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _supervise(self, name: str, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            logger.warning("tasks.cancelled", extra={"task": name})
            raise
        except Exception as exc:
            logger.exception("tasks.failed", extra={"task": name, "error": str(exc)})
            return None

    async def drain(self, timeout: float | None = None) -> None:
        """Aguarda as tarefas pendentes; as que excederem o timeout são canceladas."""
        while self._tasks:
            pending = list(self._tasks)
            done, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                logger.warning("tasks.drain_timeout", extra={"pending": len(still_running)})
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
                return
            if not done:
                return


background_tasks = BackgroundTaskRegistry()
