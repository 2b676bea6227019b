import asyncio
import signal
import sys

from core.initialization import build_config, initialize_components
from utils.logger import setup_logger


async def run_bot() -> None:
    """
    Entrypoint coroutine for the paper engine.

    Loads and validates the configuration, wires the components, seeds the
    continuity markers, reloads the symbol universe and runs one immediate
    scan before handing over to the interval scheduler and the Telegram
    command poller.  SIGINT / SIGTERM stop both loops; a cycle already in
    flight is allowed to finish.
    """
    config = build_config()
    logger = setup_logger("PaperEngine", to_console=True)
    components = initialize_components(config, logger=logger)

    client = components["client"]
    store = components["store"]
    notifier = components["notifier"]
    engine = components["engine"]
    scheduler = components["scheduler"]
    commands = components["commands"]

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # Windows
            pass

    try:
        await notifier.start()
        await engine.startup()
        result = await engine.run_cycle("manual")
        logger.info("initial cycle: executed=%s reason=%s", result.executed, result.reason)

        scheduler.start()
        commands.start()
        logger.info("✅ Paper engine running – Ctrl+C to stop")
        await stop_event.wait()
    finally:
        logger.info("shutting down …")
        await scheduler.stop()
        await commands.stop()
        await client.close()
        await notifier.close()
        store.close()


def main():
    try:
        asyncio.run(run_bot())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"❌ Paper engine terminated due to error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
