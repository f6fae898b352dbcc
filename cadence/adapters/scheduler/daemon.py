"""Daemon scheduler adapter.

Implements a long-running asyncio loop that triggers a billing run
at a configurable interval.
"""

import asyncio
import logging
import signal
from typing import cast

from cadence.core.models import RunResult
from cadence.core.ports import BillingRunPort

logger = logging.getLogger(__name__)

# Consecutive failed runs before the scheduler escalates to a critical log
FAILURE_ALERT_THRESHOLD = 5


class DaemonScheduler:
    """Asyncio-based daemon scheduler for periodic billing runs."""

    def __init__(
        self,
        run_port: BillingRunPort | None = None,
        run_interval_seconds: int = 3600,
    ):
        """Initialize daemon scheduler.

        Args:
            run_port: BillingRunPort implementation to call (can be set later).
            run_interval_seconds: Interval between billing runs in seconds.
        """
        self.run_port = run_port
        self.run_interval_seconds = run_interval_seconds
        self.running = False
        self._stop_event = asyncio.Event()
        self._failure_count = 0

    @property
    def failure_count(self) -> int:
        """Number of consecutive failed runs."""
        return self._failure_count

    async def start(self) -> None:
        """Start the daemon scheduler loop.

        Raises:
            ValueError: If run_port is not set.
        """
        if self.run_port is None:
            raise ValueError("run_port must be set before starting the scheduler")

        if self.running:
            logger.warning("Daemon scheduler already running")
            return

        self.running = True
        self._stop_event.clear()
        logger.info(
            f"Starting daemon scheduler with {self.run_interval_seconds}s interval"
        )

        self._setup_signal_handlers()

        try:
            await self._run_loop()
        except asyncio.CancelledError:
            logger.info("Daemon scheduler cancelled")
        except Exception as e:
            logger.error(f"Daemon scheduler error: {e}", exc_info=True)
        finally:
            self.running = False
            logger.info("Daemon scheduler stopped")

    async def stop(self) -> None:
        """Stop the loop; a run in progress finishes first."""
        if not self.running:
            return

        logger.info("Stopping daemon scheduler...")
        self.running = False
        self._stop_event.set()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        try:
            loop = asyncio.get_running_loop()

            def _handle_signal(sig: int) -> None:
                logger.info(f"Received signal {sig}, initiating graceful shutdown...")
                asyncio.create_task(self.stop())

            loop.add_signal_handler(signal.SIGTERM, _handle_signal, signal.SIGTERM)
            loop.add_signal_handler(signal.SIGINT, _handle_signal, signal.SIGINT)
        except NotImplementedError:
            # Signal handlers not available on Windows
            logger.debug("Signal handlers not available on this platform")
        except RuntimeError as e:
            # Not on the main thread
            logger.warning(f"Failed to set up signal handlers: {e}")

    async def _run_loop(self) -> None:
        """Main daemon loop."""
        run_port = cast(BillingRunPort, self.run_port)

        run_number = 0
        loop = asyncio.get_running_loop()

        while self.running:
            run_number += 1

            try:
                logger.debug(f"Starting billing run #{run_number}")
                start_time = loop.time()

                result = await run_port.run()

                elapsed = loop.time() - start_time
                self._failure_count = 0
                logger.info(
                    f"Billing run #{run_number} completed in {elapsed:.2f}s: "
                    f"{result.owners_processed} owners, "
                    f"{result.orders_created} orders, "
                    f"{result.items_processed} items processed, "
                    f"{result.items_scheduled} items scheduled, "
                    f"{result.owners_failed} owners failed"
                )

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failure_count += 1
                logger.error(
                    f"Error in billing run #{run_number}: {e} "
                    f"(consecutive failures: {self._failure_count})",
                    exc_info=True,
                )
                if self._failure_count >= FAILURE_ALERT_THRESHOLD:
                    logger.critical(
                        f"Billing run has failed {self._failure_count} consecutive "
                        f"times. Manual intervention may be required."
                    )

            if self.running:
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.run_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass


class DaemonFactory:
    """Factory for creating and running daemon instances."""

    @staticmethod
    def create(
        run_port: BillingRunPort,
        run_interval_seconds: int = 3600,
    ) -> DaemonScheduler:
        """Create a new daemon scheduler instance."""
        return DaemonScheduler(
            run_port=run_port,
            run_interval_seconds=run_interval_seconds,
        )

    @staticmethod
    async def run_daemon(
        run_port: BillingRunPort,
        run_interval_seconds: int = 3600,
    ) -> None:
        """Create and run a daemon scheduler (blocking until stopped)."""
        daemon = DaemonFactory.create(
            run_port=run_port,
            run_interval_seconds=run_interval_seconds,
        )
        await daemon.start()

    @staticmethod
    async def run_single_cycle(run_port: BillingRunPort) -> RunResult:
        """Run one billing run (non-daemon mode).

        Args:
            run_port: BillingRunPort implementation to call.

        Returns:
            The RunResult of the run.
        """
        try:
            logger.info("Running single billing run")
            result = await run_port.run()
            logger.info(
                f"Billing run completed: {result.orders_created} orders, "
                f"{result.items_processed} items processed"
            )
            return result
        except Exception as e:
            logger.error(f"Error in billing run: {e}", exc_info=True)
            raise
