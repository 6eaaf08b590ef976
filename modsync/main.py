#!/usr/bin/env python3
"""
modsync - mod-set synchronization and update service.

Usage:
    python -m modsync.main

Or via the console script:
    modsync run
"""

import asyncio
import logging
import sys

from modsync.app import AppContext, create_app
from modsync.utils.config import Config, load_config


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from libraries
    logging.getLogger("aiogram").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


async def prepare(ctx: AppContext) -> None:
    """Calibrate the disk on first run and finish any interrupted profile switch."""
    logger = logging.getLogger(__name__)

    if await ctx.calibrator.is_first_run():
        logger.info("No disk calibration found, running benchmark...")
        try:
            config = await ctx.calibrator.run_benchmark()
            logger.info(f"Pool size calibrated to {config.pool_size}")
        except OSError as e:
            pool_size = await ctx.calibrator.get_pool_size()
            logger.error(f"Disk benchmark failed: {e}. Using pool size {pool_size}")

    if ctx.config.paths.mods_dir is None:
        logger.warning(
            "paths.mods_dir is not set and no mods folder was detected; "
            "profile switching and updates are disabled"
        )
        return

    result = await ctx.activator.resume_pending_activation()
    if result is not None and not result.success:
        logger.error(f"Resumed activation finished with {result.failed} failures")


async def serve(config: Config) -> None:
    """Run background update checks until interrupted."""
    logger = logging.getLogger(__name__)

    ctx = await create_app(config)
    try:
        await prepare(ctx)

        logger.info("Starting modsync...")
        logger.info(f"Mods directory: {config.paths.mods_dir}")
        logger.info(f"Cache directory: {config.paths.cache_dir}")
        logger.info(f"Pool size: {await ctx.calibrator.get_pool_size()}")

        # Auto-update runs inside the scheduler cycle, ahead of its check
        await ctx.scheduler.start()
    finally:
        logger.info("Shutting down...")
        await ctx.close()


async def async_main() -> None:
    """Async entry point."""
    logger = logging.getLogger(__name__)

    # Load configuration
    logger.info("Loading configuration...")
    try:
        config = load_config()
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        logger.info("Make sure config.yaml exists. You can copy config.example.yaml")
        sys.exit(1)

    logging.getLogger().setLevel(config.log_level.upper())

    try:
        await serve(config)
    except Exception as e:
        logger.exception(f"modsync crashed: {e}")
        sys.exit(1)


def main() -> None:
    """Main entry point."""
    setup_logging()

    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
