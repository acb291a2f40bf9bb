import argparse
import asyncio
import contextlib
import logging
import signal

from .config import load_config
from .engine import ContractMonitor


async def main_async(config_path: str, once: bool, reset: bool) -> None:
    cfg = load_config(config_path)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    async with ContractMonitor(cfg) as monitor:
        if reset:
            monitor.reset()
        if once:
            await monitor.refresh_once()
            if monitor.last_error:
                raise SystemExit(f"refresh failed: {monitor.last_error}")
            return

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(monitor.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        await monitor.shutdown()
        for p in pending:
            p.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await p
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="per-sender transaction counter for one contract"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single refresh cycle and exit",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="clear the aggregate and backfill from the contract creation block",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config, args.once, args.reset))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
