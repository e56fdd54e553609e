#cli.py
import argparse
import sys

from offloadbench.bench import build_workload, run_compare, run_http, run_native, run_worker
from offloadbench.client import WorkerClient, WorkerEndpoint
from offloadbench.engine import CipherEngine
from offloadbench.errors import BenchError
from offloadbench.log import get_logger, set_level
from offloadbench.server import HttpListener
from offloadbench.worker import WorkerListener, default_socket_path

logger = get_logger("offloadbench.cli")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _add_common(parser):
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=LOG_LEVELS,
        help="Log level (default: $OFFLOADBENCH_LOG_LEVEL or INFO)",
    )


def _add_workload(parser):
    parser.add_argument("--requests", "-r", type=int, default=10, help="Number of requests (default: 10)")
    parser.add_argument("--concurrency", "-c", type=int, default=1, help="Parallel callers (default: 1)")
    parser.add_argument("--queries", type=int, default=2, help="Query blobs per request (default: 2)")
    parser.add_argument("--query-size", type=int, default=4096, help="Bytes per query blob (default: 4096)")
    parser.add_argument("--no-verify", action="store_true", help="Skip decrypting and checking each answer")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log every request")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="offloadbench",
        description="Measure how the serving path affects the latency of a CPU-bound computation.",
    )
    sub = parser.add_subparsers(dest="command")

    worker = sub.add_parser("worker", help="Run a worker process serving the framed protocol")
    worker.add_argument(
        "--socket-path",
        default=None,
        help="Unix socket to listen on (default: $OFFLOADBENCH_SOCKET or /tmp/offloadbench-worker.sock)",
    )
    worker.add_argument("--endpoint", default=None, help="Listen on host:port instead of a unix socket")
    worker.add_argument("--rounds", type=int, default=1, help="Cipher rounds per query (default: 1)")
    _add_common(worker)

    serve = sub.add_parser("serve", help="Run the HTTP front end")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", "-p", type=int, default=8090, help="Port (default: 8090)")
    serve.add_argument("--worker", default=None, help="Relay to the worker at this endpoint instead of computing in-process")
    serve.add_argument("--rounds", type=int, default=1, help="Cipher rounds per query (default: 1)")
    _add_common(serve)

    bench = sub.add_parser("bench", help="Run a benchmark")
    modes = bench.add_subparsers(dest="mode")

    native = modes.add_parser("native", help="Call the engine directly (baseline)")
    native.add_argument("--rounds", type=int, default=1)
    _add_workload(native)
    _add_common(native)

    http = modes.add_parser("http", help="POST requests to a running HTTP front end")
    http.add_argument("--host", default="127.0.0.1")
    http.add_argument("--port", "-p", type=int, default=8090)
    http.add_argument("--timeout", type=float, default=None)
    _add_workload(http)
    _add_common(http)

    direct = modes.add_parser("worker", help="Send framed requests straight to a running worker")
    direct.add_argument("--endpoint", default=None, help="Worker endpoint (default: the worker socket path)")
    direct.add_argument("--timeout", type=float, default=None)
    _add_workload(direct)
    _add_common(direct)

    compare = modes.add_parser("compare", help="Run every path against in-process listeners")
    compare.add_argument("--rounds", type=int, default=1)
    _add_workload(compare)
    _add_common(compare)

    return parser


def _worker_endpoint(args) -> WorkerEndpoint:
    if getattr(args, "endpoint", None):
        return WorkerEndpoint.parse(args.endpoint)
    return WorkerEndpoint.unix(getattr(args, "socket_path", None) or default_socket_path())


def _serve(listener) -> int:
    try:
        listener.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
    return 0


def _bench(args) -> int:
    workload = build_workload(args.queries, args.query_size)
    print(f"Request size: {workload.request_size} bytes")
    verify = not args.no_verify
    if args.mode == "native":
        results = [
            run_native(CipherEngine(args.rounds), workload, args.requests, args.concurrency, verify, args.verbose)
        ]
    elif args.mode == "http":
        results = [
            run_http(
                args.host, args.port, workload, args.requests, args.concurrency, verify, args.verbose, args.timeout
            )
        ]
    elif args.mode == "worker":
        results = [
            run_worker(
                _worker_endpoint(args), workload, args.requests, args.concurrency, verify, args.verbose, args.timeout
            )
        ]
    else:
        results = run_compare(workload, args.rounds, args.requests, args.concurrency, verify, args.verbose)
    for result in results:
        print(result.summary())
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None or (args.command == "bench" and args.mode is None):
        parser.print_help()
        return 1
    if args.log_level:
        set_level(args.log_level)

    try:
        if args.command == "worker":
            return _serve(WorkerListener(CipherEngine(args.rounds), _worker_endpoint(args)))
        if args.command == "serve":
            engine = WorkerClient(WorkerEndpoint.parse(args.worker)) if args.worker else CipherEngine(args.rounds)
            return _serve(HttpListener(engine, args.host, args.port))
        return _bench(args)
    except (BenchError, OSError, ValueError) as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
