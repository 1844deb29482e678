"""
Conjunto de tareas en segundo plano propiedad de un servicio.

Todo lo que corre "en background" (drenado de la cola de subidas,
limpiezas diferidas, barridos periodicos de caches) se lanza a traves de
un BackgroundTaskSet en vez de con asyncio.create_task suelto:

- El set guarda una referencia fuerte a cada tarea (asyncio solo guarda
  referencias debiles; una tarea sin referencia puede ser recolectada
  por el garbage collector a mitad de camino).
- Los errores de una tarea se LOGUEAN, nunca se propagan al request que
  la lanzo.
- En el shutdown de la app se cancelan las tareas periodicas y se
  esperan las pendientes, asi no quedan coroutines huerfanas.

No hay hilos dedicados: todo corre en el mismo event loop.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)


class BackgroundTaskSet:
    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self._periodic: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """Lanza `coro` en el loop actual y la registra hasta que termine."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def every(
        self,
        interval: float,
        func: Callable[[], Any | Awaitable[Any]],
        name: str,
    ) -> asyncio.Task:
        """Ejecuta `func` cada `interval` segundos hasta el shutdown."""
        task = asyncio.create_task(self._repeat(interval, func, name), name=name)
        self._periodic.add(task)
        task.add_done_callback(self._periodic.discard)
        return task

    async def join(self) -> None:
        """Espera a que terminen todas las tareas no periodicas (incluidas las que se lancen mientras tanto)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        pending = list(self._periodic) + list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # Limpiezas que lanzaron las tareas canceladas al salir (ej: borrar
        # el resultado de un job abortado): esas se esperan, no se cancelan.
        await self.join()
        logger.info("Background tasks stopped (%d cancelled)", len(pending))

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    @staticmethod
    async def _repeat(interval: float, func: Callable, name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = func()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Periodic task %s failed", name)
