#!/usr/bin/env -S uv run
"""
Queue Benchmark Tool for spoolq

Benchmarks FileBlockingQueue under each fsync policy using realistic spool
operations (offer / poll / drain).

Usage:
    uv run tools/benchmark_queue.py
    uv run tools/benchmark_queue.py --operations 5000 --producers 8
    uv run tools/benchmark_queue.py --policies every_record,interval_ms=100
    uv run tools/benchmark_queue.py --help
"""
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "pydantic>=2.0",
#     "typer>=0.9.0",
#     "rich>=13.0",
# ]
# ///

from __future__ import annotations

import statistics
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from time import perf_counter

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Import spoolq from the local checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from spoolq import BytesCodec, FileBlockingQueue, QueueConfig

app = typer.Typer(
    help="Benchmark spoolq FileBlockingQueue",
    add_completion=False,
)


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkConfig:
    """Configuration for benchmark runs."""

    operations: int = 1000
    producers: int = 4
    payload_size: int = 1000
    segment_max_bytes: int = 4 * 1024 * 1024
    policies: list[str] = field(default_factory=lambda: ["every_record", "interval_ms=50"])


@dataclass
class BenchmarkResult:
    """Results from a single benchmark run."""

    policy: str
    operation: str
    total_ops: int
    total_time: float
    latencies: list[float]  # seconds

    @property
    def ops_per_sec(self) -> float:
        return self.total_ops / self.total_time if self.total_time > 0 else 0.0

    def percentile(self, pct: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        return ordered[min(int(len(ordered) * pct), len(ordered) - 1)]

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
# Core Benchmark Functions
# ---------------------------------------------------------------------------


def benchmark_sequential_offer(
    queue: FileBlockingQueue[bytes], n: int, payload: bytes
) -> list[float]:
    """Latency of N offers from a single thread."""
    latencies = []
    for _ in range(n):
        start = perf_counter()
        queue.offer(payload)
        latencies.append(perf_counter() - start)
    return latencies


def benchmark_concurrent_offer(
    queue: FileBlockingQueue[bytes], n: int, producers: int, payload: bytes
) -> list[float]:
    """Latency of N offers spread across `producers` threads."""
    latencies: list[float] = []
    lock = threading.Lock()

    def produce(count: int) -> None:
        local = []
        for _ in range(count):
            start = perf_counter()
            queue.offer(payload)
            local.append(perf_counter() - start)
        with lock:
            latencies.extend(local)

    per_thread, extra = divmod(n, producers)
    threads = [
        threading.Thread(target=produce, args=(per_thread + (1 if i < extra else 0),))
        for i in range(producers)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return latencies


def benchmark_sequential_poll(queue: FileBlockingQueue[bytes], n: int) -> list[float]:
    """Latency of N polls against a pre-filled queue."""
    latencies = []
    for _ in range(n):
        start = perf_counter()
        if queue.poll(timedelta(0)) is None:
            break
        latencies.append(perf_counter() - start)
    return latencies


def benchmark_drain(queue: FileBlockingQueue[bytes], batch: int) -> list[float]:
    """Per-item latency when draining in batches of `batch`."""
    latencies = []
    while True:
        start = perf_counter()
        items = queue.drain(batch)
        if not items:
            return latencies
        elapsed = perf_counter() - start
        latencies.extend([elapsed / len(items)] * len(items))


def benchmark_producer_consumer(
    queue: FileBlockingQueue[bytes], n: int, producers: int, payload: bytes
) -> list[float]:
    """End-to-end offer→poll latency with concurrent producers and one consumer."""
    sent_at: dict[int, float] = {}
    latencies: list[float] = []
    lock = threading.Lock()
    counter = iter(range(n))

    def produce() -> None:
        while True:
            with lock:
                seq = next(counter, None)
                if seq is None:
                    return
                sent_at[seq] = perf_counter()
            queue.offer(seq.to_bytes(8, "little") + payload)

    def consume() -> None:
        for _ in range(n):
            item = queue.poll(timedelta(seconds=10))
            if item is None:
                return
            seq = int.from_bytes(item[:8], "little")
            with lock:
                latencies.append(perf_counter() - sent_at[seq])

    consumer = threading.Thread(target=consume)
    consumer.start()
    threads = [threading.Thread(target=produce) for _ in range(producers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    consumer.join()
    return latencies


# ---------------------------------------------------------------------------
# Benchmark Runner
# ---------------------------------------------------------------------------


def _open(spool: Path, policy: str, config: BenchmarkConfig) -> FileBlockingQueue[bytes]:
    return FileBlockingQueue(
        QueueConfig(
            spool_path=spool,
            segment_max_bytes=config.segment_max_bytes,
            fsync_policy=policy,
        ),
        BytesCodec(),
    )


def run_policy_benchmark(
    policy: str, config: BenchmarkConfig, temp_dir: Path
) -> list[BenchmarkResult]:
    """Run every scenario for one fsync policy, each in a fresh spool."""
    results = []
    payload = b"x" * config.payload_size
    slug = policy.replace("=", "-")

    def record(operation: str, total_time: float, latencies: list[float]) -> None:
        results.append(
            BenchmarkResult(
                policy=policy,
                operation=operation,
                total_ops=len(latencies),
                total_time=total_time,
                latencies=latencies,
            )
        )

    with _open(temp_dir / f"{slug}-offer", policy, config) as queue:
        start = perf_counter()
        latencies = benchmark_sequential_offer(queue, config.operations, payload)
        record("offer-seq", perf_counter() - start, latencies)

        start = perf_counter()
        latencies = benchmark_sequential_poll(queue, config.operations)
        record("poll-seq", perf_counter() - start, latencies)

    with _open(temp_dir / f"{slug}-concurrent", policy, config) as queue:
        start = perf_counter()
        latencies = benchmark_concurrent_offer(
            queue, config.operations, config.producers, payload
        )
        record(f"offer-p{config.producers}", perf_counter() - start, latencies)

        start = perf_counter()
        latencies = benchmark_drain(queue, batch=100)
        record("drain-100", perf_counter() - start, latencies)

    with _open(temp_dir / f"{slug}-mixed", policy, config) as queue:
        start = perf_counter()
        latencies = benchmark_producer_consumer(
            queue, config.operations, config.producers, payload
        )
        record(f"e2e-p{config.producers}", perf_counter() - start, latencies)

    return results


# ---------------------------------------------------------------------------
# Result Formatting
# ---------------------------------------------------------------------------


def format_results(results: list[BenchmarkResult]) -> None:
    console = Console()

    by_policy: dict[str, list[BenchmarkResult]] = {}
    for result in results:
        by_policy.setdefault(result.policy, []).append(result)

    console.print()
    console.print(Panel("[bold cyan]spoolq Benchmark Results[/bold cyan]", expand=False))

    for policy, policy_results in by_policy.items():
        console.print()
        console.print(f"[bold yellow]fsync_policy: {policy}[/bold yellow]")
        console.print()

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Operation", style="cyan", width=15)
        table.add_column("Ops/sec", justify="right", style="green")
        table.add_column("P50", justify="right")
        table.add_column("P95", justify="right")
        table.add_column("P99", justify="right")
        table.add_column("Max", justify="right")

        for result in policy_results:
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
    producers: int = typer.Option(
        4,
        "--producers",
        "-p",
        help="Producer threads for the concurrent scenarios",
    ),
    policies: str = typer.Option(
        "every_record,interval_ms=50",
        "--policies",
        help="Comma-separated fsync policies to test",
    ),
) -> None:
    """
    Benchmark spoolq FileBlockingQueue.

    Measures throughput (ops/sec) and latency percentiles (p50/p95/p99/max)
    for offer, poll, drain and an end-to-end producer/consumer run.
    """
    config = BenchmarkConfig(
        operations=operations,
        producers=producers,
        policies=[p.strip() for p in policies.split(",")],
    )

    all_results = []
    with tempfile.TemporaryDirectory() as temp_dir_str:
        temp_dir = Path(temp_dir_str)
        for policy in config.policies:
            try:
                all_results.extend(run_policy_benchmark(policy, config, temp_dir))
            except Exception as e:
                print(f"\nError benchmarking {policy}: {e}", file=sys.stderr)

    if all_results:
        format_results(all_results)
    else:
        print("\nNo benchmark results to display.", file=sys.stderr)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
