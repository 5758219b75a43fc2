"""Command-line demo: run a small in-process Raft cluster and exercise it."""

from __future__ import annotations

import argparse
import logging
import shutil
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator, MutableSet, Sequence
from contextlib import contextmanager
from pathlib import Path

from raftkv.node import RaftNode
from raftkv.types import State

POLL_INTERVAL = 0.25
REELECTION_POLL_INTERVAL = 0.5
RETRY_DELAY = 0.5
MAX_RETRIES = 5


def status_emoji(success: bool) -> str:
    """Return a tick for success and a cross otherwise."""
    return "✅" if success else "❌"


def shutdown_cluster(
    nodes: Sequence[RaftNode | None],
    logger: logging.Logger,
    base_dir: str | Path,
    stopped_nodes: MutableSet[int],
) -> None:
    """Stop every node not yet stopped and list where the logs were written.

    Nodes are numbered from 1; numbers in stopped_nodes are skipped and every
    node stopped here is added to it.
    """
    print("\n🔄 Stopping all nodes...")
    logger.info("Stopping all nodes...")

    for number, node in enumerate(nodes, start=1):
        if node is not None and number not in stopped_nodes:
            node.stop()
            stopped_nodes.add(number)

    print("✅ Cluster shutdown complete.")
    logger.info("Cluster shutdown complete.")

    print(f"\n📁 Log files are available in the {base_dir} directory:")
    print(f"  • {base_dir}/cluster.log")
    for number in range(1, len(nodes) + 1):
        print(f"  • {base_dir}/node{number}/node{number}.log")


def _positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return value


def _non_negative_float(text: str) -> float:
    value = float(text)
    if value < 0:
        raise argparse.ArgumentTypeError("must not be negative")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="raftkv", description="Run a demonstration Raft key-value cluster."
    )
    parser.add_argument("--base-dir", default="raft-data", help="directory for node data")
    parser.add_argument("--nodes", type=_positive_int, default=5, help="number of nodes")
    parser.add_argument(
        "--election-timeout", type=_non_negative_float, default=10.0,
        help="seconds to wait for the first leader",
    )
    parser.add_argument(
        "--replication-wait", type=_non_negative_float, default=1.0,
        help="seconds to wait for replication before checking followers",
    )
    parser.add_argument(
        "--failure-delay", type=_non_negative_float, default=7.0,
        help="seconds before the leader is stopped",
    )
    parser.add_argument(
        "--reelection-timeout", type=_non_negative_float, default=10.0,
        help="seconds to wait for a new leader after the failure",
    )
    parser.add_argument(
        "--run-duration", type=_non_negative_float, default=60.0,
        help="seconds to keep the cluster running",
    )
    return parser


@contextmanager
def _interrupt_sets(event: threading.Event) -> Iterator[None]:
    """Set event on SIGINT or SIGTERM while the block runs (main thread only)."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, frame: object) -> None:
        if not event.is_set():
            print("\n\n🛑 Received shutdown signal, stopping cluster...")
        event.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _cluster_logger(log_path: Path) -> logging.Logger:
    logger = logging.Logger("raftkv.cluster", level=logging.INFO)
    formatter = logging.Formatter(
        "[Cluster] %(asctime)s %(message)s", datefmt="%Y/%m/%d %H:%M:%S"
    )
    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    stream_handler = logging.StreamHandler(sys.stdout)
    for handler in (file_handler, stream_handler):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def _close_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _print_dots(stop: threading.Event, deadline: float) -> None:
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0 or stop.wait(min(1.0, remaining)):
            return
        if time.monotonic() < deadline:
            print(".", end="", flush=True)


def _find_leader(nodes: Sequence[RaftNode], skip: int | None = None) -> tuple[int, RaftNode] | None:
    return next(
        (
            (number, node)
            for number, node in enumerate(nodes, start=1)
            if number != skip and node.get_state() == State.LEADER
        ),
        None,
    )


def _try_operation(operation: Callable[[], bool], description: str) -> bool:
    for attempt in range(1, MAX_RETRIES + 1):
        if attempt > 1:
            print(f"  • Retrying {description} (attempt {attempt})...")
            time.sleep(RETRY_DELAY)
        if operation():
            return True
    print(f"  • Failed to {description} after {MAX_RETRIES} attempts")
    return False


def _simulate_leader_failure(
    nodes: Sequence[RaftNode],
    leader: RaftNode,
    leader_number: int,
    logger: logging.Logger,
    stopped_nodes: MutableSet[int],
    reelection_timeout: float,
) -> None:
    print(f"\n💥 Simulating failure of leader (Node {leader_number})...")
    logger.info("Simulating failure of Node %d (leader)", leader_number)
    leader.stop()
    stopped_nodes.add(leader_number)

    print("🔄 Leader node stopped. Waiting for re-election...")
    logger.info("Leader node stopped. Waiting for re-election...")

    deadline = time.monotonic() + reelection_timeout
    while time.monotonic() < deadline:
        found = _find_leader(nodes, skip=leader_number)
        if found is not None:
            number, new_leader = found
            print(f"\n👑 Node {number} is the new leader")
            logger.info("Node %d is the new leader", number)
            time.sleep(1.0)

            print("\n📝 Writing more data with new leader:")
            _try_operation(lambda: new_leader.put("location", "Office"), "set location")
            _try_operation(lambda: new_leader.append("name", " Smith"), "append to name")

            print("\n📖 Reading values from new leader:")
            print(f"  • name: {new_leader.get('name')}")
            print(f"  • location: {new_leader.get('location')}")
            return
        time.sleep(REELECTION_POLL_INTERVAL)
        print(".", end="", flush=True)

    print("\n⚠️ No new leader elected after timeout!")
    logger.info("No new leader elected after timeout")


def _failure_watch(
    shutdown: threading.Event,
    delay: float,
    **kwargs: object,
) -> None:
    if shutdown.wait(delay):
        return
    _simulate_leader_failure(**kwargs)  # type: ignore[arg-type]


def main(argv: Sequence[str] | None = None) -> int:
    """Run the cluster demonstration; returns the process exit status."""
    args = _build_parser().parse_args(argv)

    print("╔══════════════════════════════════════════════╗")
    print("║       RAFT CONSENSUS ALGORITHM DEMO          ║")
    print("╚══════════════════════════════════════════════╝")

    shutdown = threading.Event()
    with _interrupt_sets(shutdown):
        try:
            return _run(args, shutdown)
        finally:
            shutdown.set()


def _run(args: argparse.Namespace, shutdown: threading.Event) -> int:
    base_dir = Path(args.base_dir)
    num_nodes: int = args.nodes

    print("🧹 Cleaning up existing data...")
    shutil.rmtree(base_dir, ignore_errors=True)

    print("📁 Creating directory structure...")
    base_dir.mkdir(parents=True, exist_ok=True)

    print("📝 Setting up logging...")
    try:
        logger = _cluster_logger(base_dir / "cluster.log")
    except OSError as exc:
        print(f"❌ Error opening cluster log file: {exc}")
        return 1

    try:
        return _run_cluster(args, shutdown, base_dir, num_nodes, logger)
    finally:
        _close_logger(logger)


def _run_cluster(
    args: argparse.Namespace,
    shutdown: threading.Event,
    base_dir: Path,
    num_nodes: int,
    logger: logging.Logger,
) -> int:
    stopped_nodes: set[int] = set()

    for number in range(1, num_nodes + 1):
        node_dir = base_dir / f"node{number}"
        node_dir.mkdir(parents=True, exist_ok=True)
        try:
            (node_dir / f"node{number}.log").write_text("", encoding="utf-8")
        except OSError:
            pass

    print("\n🚀 Creating Raft nodes...")
    logger.info("Creating Raft nodes...")

    nodes: list[RaftNode] = []
    for number in range(1, num_nodes + 1):
        try:
            nodes.append(RaftNode(number, None, base_dir / f"node{number}"))
        except OSError:
            print(f"❌ Failed to create node {number}")
            for node in nodes:
                node.stop()
            return 1

    print("✅ All nodes created successfully")

    print("\n🔄 Setting up peer relationships...")
    logger.info("Setting up peer relationships...")
    for node in nodes:
        node.set_peers(peer for peer in nodes if peer is not node)
    print("✅ Peer relationships established")

    print(f"\n🛫 Starting Raft cluster with {num_nodes} nodes...")
    logger.info("Starting Raft cluster with %d nodes...", num_nodes)

    print(f"\n⏳ Waiting for leader election (max {args.election_timeout:g} seconds)...")
    deadline = time.monotonic() + args.election_timeout
    threading.Thread(target=_print_dots, args=(shutdown, deadline), daemon=True).start()

    found: tuple[int, RaftNode] | None = None
    while time.monotonic() < deadline:
        if shutdown.is_set():
            shutdown_cluster(nodes, logger, base_dir, stopped_nodes)
            return 0
        found = _find_leader(nodes)
        if found is not None:
            break
        time.sleep(POLL_INTERVAL)

    print("\n✅ Leader election period complete")

    print("\n🔍 Checking node states...")
    print("┌─────────┬────────────┐")
    print("│  Node   │    State   │")
    print("├─────────┼────────────┤")
    for number, node in enumerate(nodes, start=1):
        state = node.get_state()
        print(f"│  Node {number}  │  {state:<9} │")
        logger.info("Node %d state: %s", number, state)
    print("└─────────┴────────────┘")

    if found is not None:
        leader_number, leader = found
        print(f"\n👑 Node {leader_number} is the leader")
        logger.info("Node %d is the leader", leader_number)
    else:
        print("\n⚠️ No leader detected after timeout!")
        logger.info("No leader detected after timeout")
        print("🛠️ Forcing node 1 to become leader for demonstration...")
        nodes[0].force_leader()
        leader_number, leader = 1, nodes[0]

    print(f"\n🔄 Performing operations on leader (Node {leader_number})...")
    logger.info("Leader found, performing operations...")

    print("\n📝 Writing key-value pairs:")
    print("  • Setting name = Alice")
    leader.put("name", "Alice")
    print("  • Setting age = 30")
    leader.put("age", "30")
    print("  • Setting city = New York")
    leader.put("city", "New York")

    print("\n📝 Testing APPEND operation:")
    print("  • Creating greeting = Hello")
    leader.put("greeting", "Hello")
    print(f"  • Current greeting: {leader.get('greeting')}")
    print("  • Appending to greeting: , World!")
    leader.append("greeting", ", World!")
    print(f"  • Updated greeting: {leader.get('greeting')}")

    keys = ("name", "age", "city", "greeting")
    print("\n📖 Reading values from leader:")
    for key in keys:
        print(f"  • {key}: {leader.get(key)}")

    logger.info("Key-value pairs stored:")
    for key in keys:
        logger.info("  %s: %s", key, leader.get(key))

    print(f"\n⏳ Waiting for replication ({args.replication_wait:g} second)...")
    if shutdown.wait(args.replication_wait):
        shutdown_cluster(nodes, logger, base_dir, stopped_nodes)
        return 0
    print("✅ Replication period complete")

    expected = {"name": "Alice", "age": "30", "city": "New York", "greeting": "Hello, World!"}
    print("\n🔍 Verifying data on follower nodes:")
    for number, node in enumerate(nodes, start=1):
        if node is leader:
            continue
        print(f"\n📖 Node {number} (follower) data:")
        for key, want in expected.items():
            value = node.get(key)
            print(f"  • {key}: {value} {status_emoji(value == want)}")

    print(
        f"\n⏳ Running for {args.failure_delay:g} seconds before simulating leader failure..."
    )
    threading.Thread(
        target=_failure_watch,
        args=(shutdown, args.failure_delay),
        kwargs={
            "nodes": nodes,
            "leader": leader,
            "leader_number": leader_number,
            "logger": logger,
            "stopped_nodes": stopped_nodes,
            "reelection_timeout": args.reelection_timeout,
        },
        daemon=True,
    ).start()

    print(f"\n🕒 System will run for {args.run_duration:g} seconds to observe behavior...")
    print("   (Press Ctrl+C to terminate earlier)")

    if not shutdown.wait(args.run_duration):
        print(f"\n⏰ Automatic shutdown after {args.run_duration:g} seconds...")

    shutdown.set()
    shutdown_cluster(nodes, logger, base_dir, stopped_nodes)
    return 0


if __name__ == "__main__":
    sys.exit(main())