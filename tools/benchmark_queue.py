#!/usr/bin/env -S uv run
"""
Queue Benchmark Tool for gpuqueue

Benchmarks InMemoryJobStore and SQLiteJobStore through the QueueManager
using realistic operations (submit, deduplicated submit, dispatch + poll
against a simulated backend).

Usage:
    uv run tools/benchmark_queue.py
    uv run tools/benchmark_queue.py --operations 5000 --stores sqlite
    uv run tools/benchmark_queue.py --backend-latency 0.02
    uv run tools/benchmark_queue.py --help
"""
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "pydantic>=2.0",
#     "httpx>=0.27",
#     "python-dotenv>=1.0",
#     "typer>=0.9.0",
#     "rich>=13.0",
# ]
# ///

from __future__ import annotations

import asyncio
import itertools
import statistics
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from time import perf_counter
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Import gpuqueue from the local checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from gpuqueue import (
    InMemoryJobStore,
    JobStatus,
    JobStorePort,
    QueueManager,
    RemoteJobState,
    RemoteStatus,
    Settings,
    SQLiteJobStore,
)

app = typer.Typer(
    help="Benchmark gpuqueue job stores",
    add_completion=False,
)
console = Console()


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkConfig:
    """Configuration for benchmark runs."""

    operations: int = 1000
    concurrency_levels: list[int] = field(default_factory=lambda: [10, 50])
    payload_size: int = 1000
    backend_latency: float = 0.0
    stores: list[str] = field(default_factory=lambda: ["memory", "sqlite"])


@dataclass
class BenchmarkResult:
    """Results from a single benchmark run."""

    store_name: str
    operation: str
    total_ops: int
    total_time: float
    latencies: list[float]  # seconds

    @property
    def ops_per_sec(self) -> float:
        return self.total_ops / self.total_time if self.total_time > 0 else 0.0

    def percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]

    @property
    def p50(self) -> float:
        return statistics.median(self.latencies) if self.latencies else 0.0

    @property
    def max_latency(self) -> float:
        return max(self.latencies) if self.latencies else 0.0


def format_latency_ms(seconds: float) -> str:
    ms = seconds * 1000
    if ms < 1:
        return f"{ms:.3f}ms"
    if ms < 10:
        return f"{ms:.2f}ms"
    return f"{ms:.1f}ms"


# ---------------------------------------------------------------------------
# Simulated backend
# ---------------------------------------------------------------------------


class SimulatedBackend:
    """
    Accepts every submission and reports it COMPLETED on the first poll.

    `latency` seconds are slept on every call to stand in for network time.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._ids = itertools.count(1)

    async def submit(self, endpoint_id: str, input: Any) -> str:
        await asyncio.sleep(self.latency)
        return f"sim-{next(self._ids)}"

    async def get_status(self, endpoint_id: str, remote_job_id: str) -> RemoteStatus:
        await asyncio.sleep(self.latency)
        return RemoteStatus(status=RemoteJobState.COMPLETED, output={"id": remote_job_id})

    async def cancel(self, endpoint_id: str, remote_job_id: str) -> None:
        await asyncio.sleep(self.latency)


# ---------------------------------------------------------------------------
# Core Benchmark Functions
# ---------------------------------------------------------------------------


def _payload(n: int, size: int) -> dict[str, Any]:
    return {"prompt": f"benchmark-{n}", "pad": "x" * size}


async def benchmark_sequential_submit(
    manager: QueueManager, n: int, size: int
) -> list[float]:
    """N submissions of distinct inputs, one after another."""
    latencies = []
    for i in range(n):
        start = perf_counter()
        await manager.submit_job("benchmark", _payload(i, size))
        latencies.append(perf_counter() - start)
    return latencies


async def benchmark_concurrent_submit(
    manager: QueueManager, n: int, concurrency: int, size: int
) -> list[float]:
    """N submissions of distinct inputs, `concurrency` at a time."""
    latencies: list[float] = []

    async def submit_one(i: int) -> float:
        start = perf_counter()
        await manager.submit_job("benchmark", _payload(i, size))
        return perf_counter() - start

    for offset in range(0, n, concurrency):
        batch = range(offset, min(offset + concurrency, n))
        latencies.extend(await asyncio.gather(*(submit_one(i) for i in batch)))
    return latencies


async def benchmark_dedup_hits(manager: QueueManager, n: int, size: int) -> list[float]:
    """N submissions of one already-queued input."""
    payload = _payload(-1, size)
    await manager.submit_job("benchmark", payload)
    latencies = []
    for _ in range(n):
        start = perf_counter()
        result = await manager.submit_job("benchmark", payload)
        latencies.append(perf_counter() - start)
        assert result.deduplicated
    return latencies


async def benchmark_drain(manager: QueueManager, n: int, size: int) -> list[float]:
    """
    Queue N jobs, then tick until every one is COMPLETED.

    Latencies are per tick, not per job.
    """
    for i in range(n):
        await manager.submit_job("benchmark", _payload(i, size))
    await manager.rate_limiter.start()
    latencies = []
    try:
        while True:
            stats = await manager.store.get_job_stats()
            if stats.completed >= n:
                break
            start = perf_counter()
            await manager.tick()
            latencies.append(perf_counter() - start)
    finally:
        await manager.rate_limiter.stop()
    return latencies


# ---------------------------------------------------------------------------
# Store Setup
# ---------------------------------------------------------------------------


def create_store(store_name: str, temp_dir: Path, run: str) -> JobStorePort:
    """Fresh store per scenario so results do not leak between runs."""
    if store_name == "memory":
        return InMemoryJobStore()
    if store_name == "sqlite":
        return SQLiteJobStore(temp_dir / f"{run}.db")
    raise ValueError(f"Unknown store: {store_name}")


def create_manager(store: JobStorePort, config: BenchmarkConfig) -> QueueManager:
    settings = Settings(
        max_concurrent_jobs=50,
        rate_limit_per_second=1000,
        budget_limit_daily=1e9,
        budget_limit_monthly=1e9,
    )
    return QueueManager(store, SimulatedBackend(config.backend_latency), settings=settings)


# ---------------------------------------------------------------------------
# Benchmark Runner
# ---------------------------------------------------------------------------


async def run_store_benchmark(
    store_name: str, config: BenchmarkConfig, temp_dir: Path
) -> list[BenchmarkResult]:
    results = []
    n = config.operations
    size = config.payload_size

    async def timed(operation: str, coro) -> None:
        start = perf_counter()
        latencies = await coro
        total_time = perf_counter() - start
        results.append(
            BenchmarkResult(
                store_name=store_name,
                operation=operation,
                total_ops=len(latencies),
                total_time=total_time,
                latencies=latencies,
            )
        )

    manager = create_manager(create_store(store_name, temp_dir, "seq"), config)
    await timed("submit-seq", benchmark_sequential_submit(manager, n, size))

    for concurrency in config.concurrency_levels:
        run = f"c{concurrency}"
        manager = create_manager(create_store(store_name, temp_dir, run), config)
        await timed(
            f"submit-{run}", benchmark_concurrent_submit(manager, n, concurrency, size)
        )

    manager = create_manager(create_store(store_name, temp_dir, "dedup"), config)
    await timed("dedup-hit", benchmark_dedup_hits(manager, n, size))

    manager = create_manager(create_store(store_name, temp_dir, "drain"), config)
    await timed("drain-tick", benchmark_drain(manager, n, size))
    failed = await manager.list_jobs(limit=1, status=JobStatus.FAILED)
    if failed:
        raise RuntimeError(f"Drain left failed jobs, e.g. {failed[0].id}: {failed[0].error}")

    return results


# ---------------------------------------------------------------------------
# Result Formatting
# ---------------------------------------------------------------------------


def format_results(results: list[BenchmarkResult]) -> None:
    by_store: dict[str, list[BenchmarkResult]] = {}
    for result in results:
        by_store.setdefault(result.store_name, []).append(result)

    console.print()
    console.print(
        Panel("[bold cyan]Job Store Benchmark Results[/bold cyan]", expand=False)
    )

    for store_name, store_results in by_store.items():
        console.print()
        console.print(f"[bold yellow]Store: {store_name}[/bold yellow]")
        console.print()

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Operation", style="cyan", width=15)
        table.add_column("Ops/sec", justify="right", style="green")
        table.add_column("P50", justify="right")
        table.add_column("P95", justify="right")
        table.add_column("P99", justify="right")
        table.add_column("Max", justify="right")

        for result in store_results:
            table.add_row(
                result.operation,
                f"{result.ops_per_sec:.1f}",
                format_latency_ms(result.p50),
                format_latency_ms(result.percentile(0.95)),
                format_latency_ms(result.percentile(0.99)),
                format_latency_ms(result.max_latency),
            )

        console.print(table)

    console.print()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@app.command()
def main(
    operations: int = typer.Option(
        1000,
        "--operations",
        "-n",
        help="Number of operations per benchmark",
    ),
    stores: str = typer.Option(
        "memory,sqlite",
        "--stores",
        "-s",
        help="Comma-separated stores to test",
    ),
    backend_latency: float = typer.Option(
        0.0,
        "--backend-latency",
        help="Simulated seconds per backend call",
    ),
) -> None:
    """
    Benchmark gpuqueue job stores.

    Measures throughput (ops/sec) and latency percentiles (p50/p95/p99/max)
    for submission, deduplication and a full dispatch/poll drain.
    """
    config = BenchmarkConfig(
        operations=operations,
        backend_latency=backend_latency,
        stores=[s.strip() for s in stores.split(",")],
    )

    all_results = []
    with tempfile.TemporaryDirectory() as temp_dir_str:
        temp_dir = Path(temp_dir_str)
        for store_name in config.stores:
            try:
                all_results.extend(
                    asyncio.run(run_store_benchmark(store_name, config, temp_dir))
                )
            except Exception as e:
                console.print(f"[red]Error benchmarking {store_name}: {e}[/red]")

    if all_results:
        format_results(all_results)
    else:
        console.print("[red]No benchmark results to display.[/red]")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
