"""Liveness demo: a heartbeat keeps ticking while CPU-bound work is offloaded."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ..config.constants import (
    DEMO_DEFAULT_ITEMS,
    DEMO_DEFAULT_WORK,
    DEMO_HEARTBEAT_INTERVAL_SECONDS,
    WORKER_KINDS,
)
from ..models.work_item import WorkItem, WorkResult, WorkTag
from ..services.offload_gate import OffloadGate

app = typer.Typer()
console = Console()


def fib(n: int) -> int:
    """Deliberately slow recursive Fibonacci: pure CPU, holds the GIL."""
    if n < 2:
        return n
    return fib(n - 1) + fib(n - 2)


@dataclass
class DemoReport:
    """What the heartbeat saw while the work ran."""

    mode: str
    elapsed: float
    heartbeats: int
    max_gap: float
    interval: float
    results: List[WorkResult] = field(default_factory=list)

    @property
    def starved(self) -> bool:
        # A gap of several intervals means the loop was blocked
        return self.max_gap > self.interval * 4


async def _heartbeat(interval: float, beats: List[float], stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    while not stop.is_set():
        beats.append(loop.time())
        await asyncio.sleep(interval)


async def run_demo(
    gate: OffloadGate,
    items: int = DEMO_DEFAULT_ITEMS,
    work: int = DEMO_DEFAULT_WORK,
    inline: bool = False,
    interval: float = DEMO_HEARTBEAT_INTERVAL_SECONDS,
) -> DemoReport:
    """Run ``items`` fib(work) computations next to a heartbeat task.

    With ``inline`` the computations are tagged inline-safe and run on the
    loop thread, which is exactly what starves the heartbeat.
    """
    beats: List[float] = []
    stop = asyncio.Event()
    ticker = asyncio.create_task(_heartbeat(interval, beats, stop))
    # Let the heartbeat take its first beat before work starts
    await asyncio.sleep(interval)

    tag = WorkTag.INLINE_SAFE if inline else WorkTag.CPU_BOUND
    batch = [WorkItem(fn=fib, args=(work,), tag=tag, name=f"fib({work})#{i}") for i in range(items)]
    started = time.perf_counter()
    results = await gate.gather(batch)
    elapsed = time.perf_counter() - started

    stop.set()
    await ticker

    gaps = [b - a for a, b in zip(beats, beats[1:])]
    return DemoReport(
        mode=gate.route(batch[0]).value if batch else tag.value,
        elapsed=elapsed,
        heartbeats=len(beats),
        max_gap=max(gaps) if gaps else 0.0,
        interval=interval,
        results=results,
    )


def render_report(report: DemoReport) -> None:
    table = Table(title=f"Work items ({report.mode})")
    table.add_column("Item", style="cyan")
    table.add_column("State")
    table.add_column("Result", justify="right")
    for result in report.results:
        value = str(result.value) if result.ok else str(result.error)
        state_style = "green" if result.ok else "red"
        table.add_row(result.name or str(result.item_id), f"[{state_style}]{result.state.value}[/{state_style}]", value)
    console.print(table)

    console.print(f"Elapsed: {report.elapsed:.2f}s")
    console.print(f"Heartbeats: {report.heartbeats} (interval {report.interval * 1000:.0f}ms)")
    if report.starved:
        console.print(f"[red]Event loop starved: longest gap {report.max_gap * 1000:.0f}ms[/red]")
    else:
        console.print(f"[green]Event loop stayed live: longest gap {report.max_gap * 1000:.0f}ms[/green]")


@app.command()
def demo(
    items: int = typer.Option(DEMO_DEFAULT_ITEMS, "--items", "-n", help="Number of CPU-bound items"),
    work: int = typer.Option(DEMO_DEFAULT_WORK, "--work", "-w", help="fib(N) computed per item"),
    workers: Optional[int] = typer.Option(None, "--workers", help="Maximum concurrent workers"),
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="Worker kind: process or thread"),
    inline: bool = typer.Option(False, "--inline", help="Run the work on the loop thread instead"),
):
    """Show the event loop staying responsive while CPU-bound work is offloaded."""
    if kind is not None and kind not in WORKER_KINDS:
        console.print(f"[red]Invalid worker kind: {kind}. Use one of {', '.join(WORKER_KINDS)}[/red]")
        raise typer.Exit(1)

    async def _main() -> DemoReport:
        async with OffloadGate(max_workers=workers, worker_kind=kind) as gate:
            return await run_demo(gate, items=items, work=work, inline=inline)

    report = asyncio.run(_main())
    render_report(report)
    if any(not r.ok for r in report.results):
        raise typer.Exit(1)
