"""Long-running engine process.

Wires the store, registry, invoker and controller together, re-enters
interrupted sessions at startup and every ``recovery_interval`` seconds, and
shuts down cleanly on SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sqlite3

from featurectl.assessors import Assessor
from featurectl.controller import StageController
from featurectl.delivery import DeliverableVerifier, GitHubVerifier
from featurectl.events import EventSink, RedisEventSink
from featurectl.invoker import AgentInvoker
from featurectl.recovery import RecoveryScanner
from featurectl.registry import SessionRegistry
from featurectl.settings import Settings, load_settings
from featurectl.store import SqliteDocumentStore, connect

log = logging.getLogger(__name__)


class Engine:
    """One process's set of collaborators around a shared database connection."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        settings: Settings | None = None,
        invoker: AgentInvoker | None = None,
        events_sink: EventSink | None = None,
        verifier: DeliverableVerifier | None = None,
    ) -> None:
        self.settings = settings or load_settings(os.getcwd())
        self.registry = SessionRegistry(SqliteDocumentStore(conn))
        self.invoker = invoker or AgentInvoker(
            command=self.settings.agent_command,
            classifier_model=self.settings.classifier_model,
        )
        self._own_sink = RedisEventSink() if events_sink is None else None
        self.assessor = Assessor(
            self.invoker,
            timeout=self.settings.classifier_timeout,
            decision_timeout=self.settings.decision_validation_timeout,
        )
        self.controller = StageController(
            self.registry,
            self.invoker,
            self.assessor,
            events_sink or self._own_sink,
            verifier or GitHubVerifier(),
            settings=self.settings,
            log_conn=conn,
        )
        self.scanner = RecoveryScanner(
            self.registry, self.controller, stale_threshold=self.settings.stale_threshold
        )

    async def _recovery_loop(self) -> None:
        while True:
            try:
                self.scanner.scan()
            except Exception:
                log.exception("Recovery scan failed")
            await asyncio.sleep(self.settings.recovery_interval)

    async def serve_forever(self) -> None:
        """Run recovery scans until a shutdown signal arrives."""
        stop_event = asyncio.Event()

        def on_signal() -> None:
            log.info("Signal received, shutting down")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)

        scanner = asyncio.create_task(self._recovery_loop(), name="recovery")
        log.info(
            "Engine started (stale threshold %.0fs, scan every %.0fs)",
            self.settings.stale_threshold,
            self.settings.recovery_interval,
        )
        await stop_event.wait()
        scanner.cancel()
        await asyncio.gather(scanner, return_exceptions=True)
        await self.stop()

    async def close(self) -> None:
        """Flush buffered events once no more runs will publish."""
        if self._own_sink is not None:
            await self._own_sink.aclose()

    async def stop(self) -> None:
        pending = len(self.controller.supervisor)
        await self.controller.supervisor.shutdown()
        await self.close()
        log.info("Engine stopped (%d task(s) cancelled)", pending)


# -- Entry point ----------------------------------------------------------


async def _main() -> None:
    with connect() as conn:
        engine = Engine(conn)
        await engine.serve_forever()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(_main())


if __name__ == "__main__":
    main()
