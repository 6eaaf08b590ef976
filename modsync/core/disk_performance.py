"""One-time disk benchmark that calibrates the concurrency pool size."""

import asyncio
import json
import logging
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from modsync.storage.models import DiskPerformanceConfig

logger = logging.getLogger(__name__)

# Bump to force every installation to recalibrate
BENCHMARK_VERSION = 2

# Pool size used until a benchmark has run
DEFAULT_POOL_SIZE = 5

MIB = 1024 * 1024


class DiskType(str, Enum):
    """Disk classification, for display only."""

    HDD = "hdd"
    SSD = "ssd"
    NVME = "nvme"


@dataclass
class BenchmarkResult:
    """Raw output of the write benchmark."""

    speed_mbps: float
    bytes_written: int
    elapsed_ms: int


def calculate_pool_size(speed_mbps: float) -> int:
    """
    Map measured write speed to a safe number of concurrent disk operations.

    - < 50 MB/s -> 3
    - 50-100 MB/s -> 5
    - 100-200 MB/s -> 8
    - >= 200 MB/s -> 12
    """
    if speed_mbps < 50:
        return 3
    if speed_mbps < 100:
        return 5
    if speed_mbps < 200:
        return 8
    return 12


def classify_disk_type(speed_mbps: float) -> DiskType:
    """Classify a disk by write speed."""
    if speed_mbps < 100:
        return DiskType.HDD
    if speed_mbps < 300:
        return DiskType.SSD
    return DiskType.NVME


def run_write_benchmark(
    directory: Path,
    file_count: int = 5,
    file_size: int = 50 * MIB,
) -> BenchmarkResult:
    """
    Write ``file_count`` files of ``file_size`` bytes with fsync and time it.

    Blocking. The scratch directory is removed afterwards.
    """
    directory.mkdir(parents=True, exist_ok=True)

    pattern = bytes((i * 17 + 31) % 256 for i in range(256))
    data = pattern * (file_size // len(pattern)) + pattern[: file_size % len(pattern)]
    total_bytes = file_count * file_size

    try:
        start = time.perf_counter()
        for i in range(file_count):
            with open(directory / f"bench_{i}.bin", "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        elapsed_ms = int((time.perf_counter() - start) * 1000)
    finally:
        try:
            shutil.rmtree(directory)
        except OSError as e:
            logger.warning(f"Failed to clean up benchmark directory {directory}: {e}")

    if elapsed_ms > 0:
        speed_mbps = (total_bytes / MIB) * 1000 / elapsed_ms
    else:
        speed_mbps = 1000.0  # Too fast to measure

    return BenchmarkResult(
        speed_mbps=speed_mbps,
        bytes_written=total_bytes,
        elapsed_ms=elapsed_ms,
    )


class DiskThroughputCalibrator:
    """
    Benchmarks the disk once and persists the derived pool size.

    Nothing here benchmarks implicitly: callers decide when to run
    ``run_benchmark()`` (typically when ``is_first_run()`` is true).
    """

    def __init__(
        self,
        config_path: Path,
        benchmark_dir: Path,
        file_count: int = 5,
        file_size: int = 50 * MIB,
        benchmark: Callable[[], BenchmarkResult] | None = None,
    ):
        """
        Initialize the calibrator.

        Args:
            config_path: JSON file holding the DiskPerformanceConfig
            benchmark_dir: Scratch directory for the write benchmark
            file_count: Number of benchmark files
            file_size: Size of each benchmark file in bytes
            benchmark: Replacement benchmark callable (blocking)
        """
        self.config_path = config_path
        self.benchmark_dir = benchmark_dir
        self.file_count = file_count
        self.file_size = file_size
        self._benchmark = benchmark
        self._config: DiskPerformanceConfig | None = None
        self._loaded = False

    async def load(self) -> DiskPerformanceConfig | None:
        """Load the persisted config, discarding it if stale or unreadable."""
        self._loaded = True
        self._config = None

        if not self.config_path.exists():
            return None

        try:
            with open(self.config_path, encoding="utf-8") as f:
                config = DiskPerformanceConfig.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load disk performance config: {e}")
            return None

        if config.benchmark_version != BENCHMARK_VERSION:
            logger.info(
                f"Disk performance config version {config.benchmark_version} "
                f"!= {BENCHMARK_VERSION}, will re-benchmark"
            )
            return None

        self._config = config
        return config

    async def is_first_run(self) -> bool:
        """Check if no valid calibration exists."""
        await self._ensure_loaded()
        return self._config is None

    async def get_pool_size(self) -> int:
        """Get the calibrated pool size, or DEFAULT_POOL_SIZE if never calibrated."""
        await self._ensure_loaded()
        return self._config.pool_size if self._config else DEFAULT_POOL_SIZE

    async def get_disk_speed(self) -> float | None:
        """Get the measured speed in MB/s."""
        await self._ensure_loaded()
        return self._config.disk_speed_mbps if self._config else None

    async def get_disk_type(self) -> DiskType | None:
        """Get the disk classification."""
        await self._ensure_loaded()
        return classify_disk_type(self._config.disk_speed_mbps) if self._config else None

    async def get_config(self) -> DiskPerformanceConfig | None:
        """Get the full calibration, if any."""
        await self._ensure_loaded()
        return self._config

    async def run_benchmark(
        self,
        on_progress: Callable[[int], Any] | None = None,
    ) -> DiskPerformanceConfig:
        """
        Run the write benchmark and persist the new calibration.

        Args:
            on_progress: Optional callback receiving a percentage

        Returns:
            The new DiskPerformanceConfig

        Raises:
            OSError: If the benchmark or saving the config fails
        """
        await self._ensure_loaded()
        logger.info("Starting disk benchmark...")

        if on_progress:
            on_progress(0)

        loop = asyncio.get_event_loop()
        if self._benchmark is not None:
            result = await loop.run_in_executor(None, self._benchmark)
        else:
            result = await loop.run_in_executor(
                None,
                run_write_benchmark,
                self.benchmark_dir,
                self.file_count,
                self.file_size,
            )

        if on_progress:
            on_progress(90)

        logger.info(
            f"Benchmark complete: {result.speed_mbps:.1f} MB/s "
            f"({result.bytes_written / MIB:.0f} MB in {result.elapsed_ms} ms, "
            f"{classify_disk_type(result.speed_mbps).value})"
        )

        config = DiskPerformanceConfig(
            pool_size=calculate_pool_size(result.speed_mbps),
            disk_speed_mbps=result.speed_mbps,
            last_benchmark=datetime.now(),
            benchmark_version=BENCHMARK_VERSION,
        )
        self._save_config(config)
        self._config = config

        if on_progress:
            on_progress(100)

        return config

    async def rebenchmark(
        self,
        on_progress: Callable[[int], Any] | None = None,
    ) -> DiskPerformanceConfig:
        """Force a new benchmark."""
        return await self.run_benchmark(on_progress)

    def _save_config(self, config: DiskPerformanceConfig) -> None:
        """Write config to disk."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write(config.model_dump_json(indent=2))

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()
