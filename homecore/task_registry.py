"""
Task Registry - Zentrales Tracking aller asyncio Background-Tasks.

Neben einmaligen Tasks verwaltet die Registry periodische Jobs
(Snapshot-Erfassung, Analyse, Preis-Aktualisierung). Jeder Job hat
einen In-Flight-Guard: laeuft ein Durchlauf noch, wird der naechste
Tick uebersprungen statt parallel gestartet.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[object]]


class TaskRegistry:
    """Verwaltet alle Background-Tasks von homecore."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}
        self._in_flight: set[str] = set()
        self._skipped: dict[str, int] = {}
        self._runs: dict[str, int] = {}
        self._shutting_down = False

    def create_task(
        self,
        coro: Coroutine,
        *,
        name: str,
        replace: bool = False,
    ) -> asyncio.Task:
        """Erstellt und registriert einen neuen Task mit Error-Logging.

        Args:
            coro: Die auszufuehrende Coroutine
            name: Eindeutiger Name fuer den Task
            replace: Wenn True, wird ein bestehender Task mit gleichem Namen gecancelt
        """
        if self._shutting_down:
            logger.warning("Task '%s' abgelehnt, Shutdown laeuft", name)
            coro.close()
            raise RuntimeError("TaskRegistry is shutting down")

        existing = self._tasks.get(name)
        if existing and not existing.done():
            if not replace:
                logger.debug("Task '%s' laeuft bereits, uebersprungen", name)
                coro.close()
                return existing
            existing.cancel()
            logger.debug("Task '%s' ersetzt", name)

        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._on_task_done(t, name))
        return task

    def _on_task_done(self, task: asyncio.Task, name: str) -> None:
        """Callback wenn ein Task endet, loggt Fehler."""
        # Tick-Tasks periodischer Jobs nicht dauerhaft vorhalten
        if ":tick:" in name and self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            logger.debug("Task '%s' wurde abgebrochen", name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "Background-Task '%s' fehlgeschlagen: %s",
                name, exc, exc_info=exc,
            )

    # ----- Periodische Jobs -----

    async def run_guarded(self, name: str, job: JobFactory) -> bool:
        """Fuehrt einen Job-Durchlauf aus, sofern keiner mit gleichem Namen laeuft.

        Returns:
            True wenn der Durchlauf gestartet wurde, False wenn uebersprungen
        """
        if name in self._in_flight:
            self._skipped[name] = self._skipped.get(name, 0) + 1
            logger.info("Job '%s' laeuft noch, Durchlauf uebersprungen", name)
            return False
        self._in_flight.add(name)
        try:
            await job()
            self._runs[name] = self._runs.get(name, 0) + 1
        finally:
            self._in_flight.discard(name)
        return True

    def schedule_periodic(
        self,
        name: str,
        job: JobFactory,
        interval: float,
        *,
        run_immediately: bool = False,
    ) -> asyncio.Task:
        """Startet einen periodischen Job im festen Intervall (Sekunden).

        Jeder Tick wird als eigener Task gestartet, damit ein langsamer
        Durchlauf den Takt nicht verschiebt; der In-Flight-Guard verhindert
        ueberlappende Laeufe. Fehler eines Durchlaufs beenden den Job nicht.
        """

        async def _tick():
            try:
                await self.run_guarded(name, job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Job '%s' fehlgeschlagen: %s", name, e, exc_info=True)

        async def _loop():
            if run_immediately:
                await _tick()
            tick = 0
            while True:
                await asyncio.sleep(interval)
                tick += 1
                self.create_task(_tick(), name=f"{name}:tick:{tick}")

        return self.create_task(_loop(), name=name, replace=True)

    def is_in_flight(self, name: str) -> bool:
        """Prueft ob gerade ein Durchlauf des Jobs laeuft."""
        return name in self._in_flight

    def skipped_runs(self, name: str) -> int:
        """Anzahl uebersprungener Ticks (Overlap)."""
        return self._skipped.get(name, 0)

    # ----- Verwaltung -----

    def cancel(self, name: str) -> bool:
        """Bricht einen einzelnen Task ab."""
        task = self._tasks.get(name)
        if task and not task.done():
            task.cancel()
            return True
        return False

    def is_running(self, name: str) -> bool:
        """Prueft ob ein Task laeuft."""
        task = self._tasks.get(name)
        return task is not None and not task.done()

    @property
    def active_tasks(self) -> list[str]:
        """Liste aller aktiven Task-Namen."""
        return [name for name, task in self._tasks.items() if not task.done()]

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Beendet alle Tasks graceful.

        Args:
            timeout: Maximale Wartezeit in Sekunden
        """
        self._shutting_down = True
        active = [task for task in self._tasks.values() if not task.done()]

        if not active:
            logger.info("TaskRegistry: Keine aktiven Tasks zum Beenden")
            return

        logger.info("TaskRegistry: Beende %d aktive Tasks...", len(active))
        for task in active:
            task.cancel()

        done, pending = await asyncio.wait(active, timeout=timeout)
        if pending:
            logger.warning("TaskRegistry: %d Tasks reagieren nicht auf Cancel", len(pending))
        logger.info("TaskRegistry: %d Tasks beendet", len(done))
        self._tasks.clear()

    def status(self) -> dict:
        """Status fuer Diagnostik."""
        return {
            "total_registered": len(self._tasks),
            "active": self.active_tasks,
            "in_flight": sorted(self._in_flight),
            "runs": dict(self._runs),
            "skipped": dict(self._skipped),
        }
