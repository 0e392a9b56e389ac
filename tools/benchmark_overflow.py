#!/usr/bin/env -S uv run
"""
Overflow benchmark for overflowq.

Measures send / receive / delete latency through QueueManager on the
in-memory account, once for payloads that fit in a queue message and once
for payloads that are offloaded to the blob container.

Usage:
    uv run tools/benchmark_overflow.py
    uv run tools/benchmark_overflow.py --messages 2000 --concurrency 20
    uv run tools/benchmark_overflow.py --sizes 1000,60000,500000
    uv run tools/benchmark_overflow.py --help
"""
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pydantic>=2.0",
#     "typer>=0.9.0",
#     "rich>=13.0",
# ]
# ///

from __future__ import annotations

import asyncio
import statistics
import sys
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

sys.path.insert(0, str(Path(__file__).parent.parent))

from overflowq import InMemoryStorageAccount, QueueManager, QueueMessage

app = typer.Typer(
    help="Benchmark overflowq send/receive/delete with and without blob offload",
    add_completion=False,
)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkResult:
    """Latencies of one operation at one payload size."""

    payload_size: int
    offloaded: bool
    operation: str
    total_time: float
    latencies: list[float]  # seconds

    @property
    def ops_per_sec(self) -> float:
        return len(self.latencies) / self.total_time if self.total_time > 0 else 0.0

    def percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]

    @property
    def p50(self) -> float:
        return statistics.median(self.latencies) if self.latencies else 0.0


def format_latency_ms(seconds: float) -> str:
    ms = seconds * 1000
    if ms < 1:
        return f"{ms:.3f}ms"
    if ms < 10:
        return f"{ms:.2f}ms"
    return f"{ms:.1f}ms"


# ---------------------------------------------------------------------------
# Benchmarks
# ---------------------------------------------------------------------------


async def _timed(coros: list) -> tuple[float, list[float], list]:
    """Run coroutines returning (latency, value) pairs; collect both."""
    start = perf_counter()
    outcomes = await asyncio.gather(*coros)
    total = perf_counter() - start
    return total, [latency for latency, _ in outcomes], [value for _, value in outcomes]


async def run_size(size: int, messages: int, concurrency: int) -> list[BenchmarkResult]:
    """Send, receive and delete `messages` payloads of `size` characters."""
    account = InMemoryStorageAccount()
    semaphore = asyncio.Semaphore(concurrency)
    payload = "x" * size

    async with QueueManager("benchmark", account) as qm:
        offloaded = len(qm.serializer.dumps(payload)) > qm.max_payload_size

        async def send_one() -> tuple[float, None]:
            async with semaphore:
                start = perf_counter()
                await qm.send(payload)
                return perf_counter() - start, None

        async def receive_one() -> tuple[float, QueueMessage | None]:
            async with semaphore:
                start = perf_counter()
                message = await qm.receive()
                return perf_counter() - start, message

        async def delete_one(message: QueueMessage) -> tuple[float, None]:
            async with semaphore:
                start = perf_counter()
                await qm.delete(message)
                return perf_counter() - start, None

        send_total, send_latencies, _ = await _timed([send_one() for _ in range(messages)])
        receive_total, receive_latencies, received = await _timed(
            [receive_one() for _ in range(messages)]
        )
        delivered = [message for message in received if message is not None]
        delete_total, delete_latencies, _ = await _timed(
            [delete_one(message) for message in delivered]
        )

    return [
        BenchmarkResult(size, offloaded, "send", send_total, send_latencies),
        BenchmarkResult(size, offloaded, "receive", receive_total, receive_latencies),
        BenchmarkResult(size, offloaded, "delete", delete_total, delete_latencies),
    ]


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def print_results(results: list[BenchmarkResult]) -> None:
    console = Console()
    console.print()
    console.print(Panel("[bold cyan]overflowq Benchmark Results[/bold cyan]", expand=False))

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Payload", justify="right", style="cyan")
    table.add_column("Path")
    table.add_column("Operation")
    table.add_column("Ops/sec", justify="right", style="green")
    table.add_column("P50", justify="right")
    table.add_column("P95", justify="right")
    table.add_column("P99", justify="right")

    for result in results:
        table.add_row(
            f"{result.payload_size:,}",
            "[yellow]blob[/yellow]" if result.offloaded else "direct",
            result.operation,
            f"{result.ops_per_sec:.1f}",
            format_latency_ms(result.p50),
            format_latency_ms(result.percentile(0.95)),
            format_latency_ms(result.percentile(0.99)),
        )

    console.print(table)
    console.print()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@app.command()
def main(
    messages: int = typer.Option(
        1000,
        "--messages",
        "-n",
        help="Messages per payload size",
    ),
    concurrency: int = typer.Option(
        10,
        "--concurrency",
        "-c",
        help="Maximum in-flight operations",
    ),
    sizes: str = typer.Option(
        "1000,49147,100000",
        "--sizes",
        "-s",
        help="Comma-separated payload sizes in characters",
    ),
) -> None:
    """
    Benchmark QueueManager on the in-memory account.

    The default sizes cover a small payload, the largest payload that still
    goes straight to the queue, and one that is offloaded to a blob.
    """
    size_list = [int(s.strip()) for s in sizes.split(",") if s.strip()]
    if not size_list or any(size < 0 for size in size_list):
        typer.echo("--sizes must list non-negative integers", err=True)
        raise typer.Exit(code=1)

    results: list[BenchmarkResult] = []
    for size in size_list:
        results.extend(asyncio.run(run_size(size, messages, concurrency)))

    print_results(results)


if __name__ == "__main__":
    app()
