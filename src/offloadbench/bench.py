"""Benchmark runners.

Each runner issues the same workload through a different path (direct engine
call, HTTP front end, worker socket) and collects two latencies per request:
the engine's own compute time and the round trip seen by the caller.
"""
from __future__ import annotations

import statistics
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from Crypto.Random import get_random_bytes

from offloadbench.client import WorkerClient, WorkerEndpoint, http_compute
from offloadbench.engine import CipherEngine, ComputeEngine
from offloadbench.errors import ComputeError
from offloadbench.log import get_logger
from offloadbench.protocol import ComputeResponse
from offloadbench.server import HttpListener
from offloadbench.worker import WorkerListener

logger = get_logger("offloadbench.bench")


@dataclass
class Workload:
    queries: List[bytes]
    key: bytes

    @property
    def request_size(self) -> int:
        return 4 + sum(4 + len(q) for q in self.queries) + len(self.key)


def build_workload(query_count: int = 2, query_size: int = 4096, key_size: int = 32) -> Workload:
    if query_count < 0 or query_size < 0:
        raise ValueError("query_count and query_size must be >= 0")
    queries = [get_random_bytes(query_size) for _ in range(query_count)]
    return Workload(queries=queries, key=get_random_bytes(key_size))


@dataclass
class BenchmarkResult:
    label: str
    compute_ms: List[float] = field(default_factory=list)
    total_ms: List[float] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0

    def add(self, compute_ms: float, total_ms: float) -> None:
        self.compute_ms.append(compute_ms)
        self.total_ms.append(total_ms)

    @property
    def count(self) -> int:
        return len(self.total_ms)

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def throughput_per_second(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.count / self.duration_s

    def summary(self) -> str:
        lines = [f"=== {self.label} ({self.count} requests) ==="]
        for name, samples in (("compute", self.compute_ms), ("round trip", self.total_ms)):
            s = describe(samples)
            lines.append(
                f"  {name:<10} avg {s['mean']:8.2f}ms  min {s['min']:8.2f}ms  "
                f"max {s['max']:8.2f}ms  stdev {s['stdev']:7.2f}ms"
            )
        lines.append(f"  throughput {self.throughput_per_second:.1f} req/s")
        return "\n".join(lines)


def describe(samples: Sequence[float]) -> dict:
    if not samples:
        return {"mean": 0.0, "min": 0.0, "max": 0.0, "stdev": 0.0}
    return {
        "mean": statistics.fmean(samples),
        "min": min(samples),
        "max": max(samples),
        "stdev": statistics.pstdev(samples),
    }


def _verify(response: ComputeResponse, workload: Workload) -> None:
    if CipherEngine.open_result(response.result, workload.key) != workload.queries:
        raise ComputeError("result does not decrypt to the submitted queries")


def _run(
    label: str,
    call: Callable[[], ComputeResponse],
    workload: Workload,
    requests: int,
    concurrency: int,
    verify: bool,
    verbose: bool,
) -> BenchmarkResult:
    if requests < 1 or concurrency < 1:
        raise ValueError("requests and concurrency must be >= 1")
    result = BenchmarkResult(label)

    def one(i: int) -> Tuple[int, float, float]:
        start = time.perf_counter()
        response = call()
        total_ms = (time.perf_counter() - start) * 1000
        if verify:
            _verify(response, workload)
        return i, response.duration_ms, total_ms

    result.started_at = time.perf_counter()
    if concurrency == 1:
        for i, compute_ms, total_ms in map(one, range(1, requests + 1)):
            _record(result, i, compute_ms, total_ms, verbose)
    else:
        with ThreadPoolExecutor(max_workers=concurrency) as pool:
            for i, compute_ms, total_ms in pool.map(one, range(1, requests + 1)):
                _record(result, i, compute_ms, total_ms, verbose)
    result.finished_at = time.perf_counter()
    return result


def _record(result: BenchmarkResult, i: int, compute_ms: float, total_ms: float, verbose: bool) -> None:
    result.add(compute_ms, total_ms)
    if verbose:
        logger.info(f"{result.label} request {i}: compute={compute_ms:.2f}ms total={total_ms:.2f}ms")


def run_native(
    engine: ComputeEngine,
    workload: Workload,
    requests: int = 10,
    concurrency: int = 1,
    verify: bool = True,
    verbose: bool = False,
) -> BenchmarkResult:
    """Call the engine directly; the baseline every other path is compared to."""
    logger.debug("warm-up run")
    engine.compute(workload.queries, workload.key)
    return _run(
        "native",
        lambda: engine.compute(workload.queries, workload.key),
        workload,
        requests,
        concurrency,
        verify,
        verbose,
    )


def run_http(
    host: str,
    port: int,
    workload: Workload,
    requests: int = 10,
    concurrency: int = 1,
    verify: bool = True,
    verbose: bool = False,
    timeout: Optional[float] = None,
    label: str = "http",
) -> BenchmarkResult:
    return _run(
        label,
        lambda: http_compute(host, port, workload.queries, workload.key, timeout),
        workload,
        requests,
        concurrency,
        verify,
        verbose,
    )


def run_worker(
    endpoint: WorkerEndpoint,
    workload: Workload,
    requests: int = 10,
    concurrency: int = 1,
    verify: bool = True,
    verbose: bool = False,
    timeout: Optional[float] = None,
) -> BenchmarkResult:
    client = WorkerClient(endpoint, timeout=timeout, observer=None)
    return _run(
        "worker",
        lambda: client.compute(workload.queries, workload.key),
        workload,
        requests,
        concurrency,
        verify,
        verbose,
    )


def run_compare(
    workload: Workload,
    rounds: int = 1,
    requests: int = 10,
    concurrency: int = 1,
    verify: bool = True,
    verbose: bool = False,
) -> List[BenchmarkResult]:
    """Run every path against in-process listeners on throwaway addresses."""
    engine = CipherEngine(rounds=rounds)
    results = [run_native(engine, workload, requests, concurrency, verify=verify, verbose=verbose)]

    with tempfile.TemporaryDirectory(prefix="offloadbench-") as tmp:
        endpoint = WorkerEndpoint.unix(str(Path(tmp) / "worker.sock"))
        with WorkerListener(engine, endpoint, observer=None), HttpListener(
            engine, port=0, observer=None
        ) as direct, HttpListener(WorkerClient(endpoint, observer=None), port=0, observer=None) as relayed:
            results.append(run_worker(endpoint, workload, requests, concurrency, verify=verify, verbose=verbose))
            host, port = direct.server_address
            results.append(run_http(host, port, workload, requests, concurrency, verify=verify, verbose=verbose))
            host, port = relayed.server_address
            results.append(
                run_http(
                    host, port, workload, requests, concurrency, verify=verify, verbose=verbose, label="http via worker"
                )
            )
    return results
