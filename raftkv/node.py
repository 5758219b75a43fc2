"""A Raft cluster member holding a replicated key-value store."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timezone
from os import PathLike
from pathlib import Path
from typing import Any

from raftkv.persistence import PersistedState, load_state, save_state
from raftkv.statemachine import KVStore
from raftkv.types import (
    AppendEntriesArgs,
    AppendEntriesReply,
    LogEntry,
    RequestVoteArgs,
    RequestVoteReply,
    State,
    is_important_event,
)

ELECTION_TIMEOUT_MIN_MS = 150
ELECTION_TIMEOUT_SPREAD_MS = 150
HEARTBEAT_INTERVAL = 0.1
APPLY_INTERVAL = 0.05
PERSIST_INTERVAL = 1.0
FAILURE_CHECK_INTERVAL = 0.1
FAILURE_THRESHOLD = 0.3


class RaftNode:
    """One member of an in-process Raft cluster.

    Peers are other RaftNode objects; RPCs are plain method calls. Each node
    runs background threads for elections, heartbeats, applying committed
    entries, periodic persistence and failure detection until stopped.
    """

    def __init__(
        self,
        node_id: int,
        peers: Iterable[RaftNode] | None,
        persistent_dir: str | PathLike[str],
    ) -> None:
        self.node_id = node_id
        self._dir = Path(persistent_dir)
        self._dir.mkdir(parents=True, exist_ok=True)

        self._handler = logging.FileHandler(
            self._dir / f"node{node_id}.log", mode="a", encoding="utf-8"
        )
        self._handler.setFormatter(
            logging.Formatter(
                f"[Node {node_id}] %(asctime)s %(message)s", datefmt="%Y/%m/%d %H:%M:%S"
            )
        )
        self._logger = logging.Logger(f"raftkv.node{node_id}", level=logging.INFO)
        self._logger.propagate = False
        self._logger.addHandler(self._handler)

        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._rng = random.Random()

        self._state = State.FOLLOWER
        self._current_term = 0
        self._voted_for = -1
        self._log: list[LogEntry] = [
            LogEntry(index=0, term=0, command="", status="committed",
                     timestamp=datetime.now(timezone.utc))
        ]
        self._commit_index = 0
        self._last_applied = 0
        self._next_index: dict[int, int] = {}
        self._match_index: dict[int, int] = {}
        self._kv = KVStore()
        self._peers: list[RaftNode] = list(peers or [])
        self._election_timer: threading.Timer | None = None
        self._last_heartbeat = time.monotonic()

        self._recover_state()
        self._start()

    # ----------------------------------------------------------------- helpers

    def _log_info(self, msg: str) -> None:
        self._logger.info(msg)
        if is_important_event(msg):
            print(f"[Node {self.node_id}] {msg}")

    @staticmethod
    def _spawn(target: Callable[..., Any], *args: Any) -> None:
        threading.Thread(target=target, args=args, daemon=True).start()

    def _snapshot_state(self) -> PersistedState:
        return PersistedState(
            current_term=self._current_term,
            voted_for=self._voted_for,
            log=list(self._log),
            kv_store=self._kv.snapshot(),
        )

    def _save(self, state: PersistedState, context: str = "") -> None:
        try:
            with self._save_lock:
                save_state(self._dir, self.node_id, state)
        except OSError as exc:
            self._log_info(f"Error persisting state{context}: {exc}")

    def _persist(self, context: str = "") -> None:
        self._save(self._snapshot_state(), context)

    def _recover_state(self) -> None:
        try:
            saved = load_state(self._dir, self.node_id)
        except (OSError, ValueError):
            return
        if saved is None:
            self._log_info("No previous state found, starting fresh")
            return
        with self._lock:
            self._current_term = saved.current_term
            self._voted_for = saved.voted_for
            self._log = list(saved.log)
            for key, value in saved.kv_store.items():
                self._kv.put(key, value)
            self._log_info(
                f"Recovered state: term={self._current_term}, "
                f"votedFor={self._voted_for}, logLength={len(self._log)}"
            )

    def _start(self) -> None:
        self._log_info("Node started")
        self._last_heartbeat = time.monotonic()
        self._spawn(self._apply_loop)
        self._spawn(self._persist_loop)
        with self._lock:
            self._reset_election_timer()
        self._spawn(self._failure_detector_loop)
        self._log_info("Node initialized successfully, waiting as follower for leader election")

    # ---------------------------------------------------------------- elections

    def _reset_election_timer(self) -> None:
        if self._election_timer is not None:
            self._election_timer.cancel()
            self._election_timer = None
        if self._stop_event.is_set():
            return
        timeout_ms = ELECTION_TIMEOUT_MIN_MS + self._rng.randrange(ELECTION_TIMEOUT_SPREAD_MS)
        self._log_info(f"Resetting election timer to {timeout_ms}ms")
        timer = threading.Timer(timeout_ms / 1000, self._on_election_timeout)
        timer.daemon = True
        self._election_timer = timer
        timer.start()

    def _on_election_timeout(self) -> None:
        with self._lock:
            if self._state == State.LEADER or self._stop_event.is_set():
                return
        self._log_info("Election timeout triggered, starting election")
        self._start_election()

    def _start_election(self) -> None:
        with self._lock:
            self._state = State.CANDIDATE
            self._current_term += 1
            self._voted_for = self.node_id
            term = self._current_term
            self._log_info(f"Starting election for term {term} (voted for self)")
            last_log_index = len(self._log) - 1
            last_log_term = self._log[last_log_index].term if last_log_index >= 0 else 0
            args = RequestVoteArgs(
                term=term,
                candidate_id=self.node_id,
                last_log_index=last_log_index,
                last_log_term=last_log_term,
            )
            peers = list(self._peers)

        votes = 1

        def solicit(peer: RaftNode) -> None:
            nonlocal votes
            self._log_info(f"Requesting vote from peer {peer.node_id} for term {term}")
            reply = peer.request_vote(args)
            with self._lock:
                if term != self._current_term:
                    self._log_info(
                        f"Ignoring vote from peer {peer.node_id} - terms don't match "
                        f"(current: {self._current_term}, vote: {term})"
                    )
                    return
                if self._state != State.CANDIDATE:
                    self._log_info(
                        f"Ignoring vote from peer {peer.node_id} - no longer a candidate "
                        f"(state: {self._state})"
                    )
                    return
                majority = len(self._peers) // 2
                if reply.vote_granted:
                    votes += 1
                    self._log_info(
                        f"Received vote from peer {peer.node_id} for term {term}, "
                        f"total votes: {votes}/{majority + 1} needed"
                    )
                    if votes > majority:
                        self._log_info(
                            f"Won election with {votes} votes (threshold: {majority + 1})"
                        )
                        self._become_leader()
                else:
                    self._log_info(
                        f"Vote denied by peer {peer.node_id} for term {term} "
                        f"(peer term: {reply.term})"
                    )
                    if reply.term > self._current_term:
                        self._log_info(
                            f"Peer {peer.node_id} has higher term "
                            f"({reply.term} > {self._current_term}), becoming follower"
                        )
                        self._become_follower(reply.term)

        for peer in peers:
            self._spawn(solicit, peer)

    def _become_leader(self) -> None:
        self._state = State.LEADER
        self._log_info(f"Becoming leader for term {self._current_term}")
        self._next_index = {peer.node_id: len(self._log) for peer in self._peers}
        self._match_index = {peer.node_id: -1 for peer in self._peers}
        self._persist(" after becoming leader")
        if self._election_timer is not None:
            self._election_timer.cancel()
        self._spawn(self._heartbeat_loop)

    def _heartbeat_loop(self) -> None:
        self._send_heartbeat()
        while not self._stop_event.wait(HEARTBEAT_INTERVAL):
            with self._lock:
                is_leader = self._state == State.LEADER
            if not is_leader:
                self._log_info("No longer leader, stopping heartbeat ticker")
                return
            self._send_heartbeat()
        self._log_info("Node stopping, ending heartbeat loop")

    def _become_follower(self, term: int) -> None:
        self._state = State.FOLLOWER
        self._current_term = term
        self._voted_for = -1
        self._reset_election_timer()
        self._log_info(f"Becoming follower for term {term}")
        self._persist(" after becoming follower")

    # ------------------------------------------------------------ background

    def _apply_loop(self) -> None:
        while not self._stop_event.wait(APPLY_INTERVAL):
            with self._lock:
                if self._last_applied >= self._commit_index:
                    continue
                self._last_applied += 1
                if self._last_applied < len(self._log):
                    entry = self._log[self._last_applied]
                    self._apply_command(entry.command)
                    self._log_info(f"Applied log entry {entry.index}: {entry.command}")

    def _persist_loop(self) -> None:
        while not self._stop_event.wait(PERSIST_INTERVAL):
            with self._lock:
                state = self._snapshot_state()
            self._save(state)

    def _failure_detector_loop(self) -> None:
        while not self._stop_event.wait(FAILURE_CHECK_INTERVAL):
            with self._lock:
                elapsed = time.monotonic() - self._last_heartbeat
                state = self._state
            if elapsed > FAILURE_THRESHOLD and state != State.LEADER:
                self._log_info(
                    f"No heartbeat received for {elapsed * 1000:.0f}ms, starting election"
                )
                self._start_election()

    # ------------------------------------------------------------ public API

    def get_state(self) -> State:
        """Return the node's current role."""
        with self._lock:
            return self._state

    def set_peers(self, peers: Iterable[RaftNode]) -> None:
        """Replace the set of peers this node talks to."""
        with self._lock:
            self._peers = list(peers)
            self._log_info(f"Set peers: {[peer.node_id for peer in self._peers]}")

    def stop(self) -> None:
        """Stop all background activity and close the node's log file."""
        with self._lock:
            self._log_info("Stopping node")
            self._stop_event.set()
            if self._election_timer is not None:
                self._election_timer.cancel()
                self._election_timer = None
            self._log_info("Node stopped")
            self._logger.removeHandler(self._handler)
            self._handler.close()

    def _append_client_entry(self, command: str) -> None:
        self._log.append(
            LogEntry(
                index=len(self._log),
                term=self._current_term,
                command=command,
                status="uncommitted",
                timestamp=datetime.now(timezone.utc),
            )
        )

    def put(self, key: str, value: str) -> bool:
        """Set key to value; only a leader accepts this. Returns whether it did."""
        with self._lock:
            if self._state != State.LEADER:
                self._log_info("Put operation failed - not leader")
                return False
            command = f"PUT {key} {value}"
            self._append_client_entry(command)
            self._kv.put(key, value)
            self._log_info(f"Added log entry and applied locally: {command}")
        self._spawn(self._send_heartbeat)
        return True

    def append(self, key: str, value: str) -> bool:
        """Append value to the key's value; only a leader accepts this."""
        with self._lock:
            if self._state != State.LEADER:
                self._log_info("Append operation failed - not leader")
                return False
            command = f"APPEND {key} {value}"
            self._append_client_entry(command)
            new_value = self._kv.append(key, value)
            self._log_info(
                f"Added log entry and applied locally: {command}, new value: {new_value}"
            )
        self._spawn(self._send_heartbeat)
        return True

    def get(self, key: str) -> str:
        """Return the locally stored value for key, or an empty string."""
        with self._lock:
            return self._kv.get(key)

    def force_leader(self) -> None:
        """Make this node leader in a new term without an election."""
        with self._lock:
            self._current_term += 1
            self._state = State.LEADER
            self._voted_for = self.node_id
            for peer in self._peers:
                self._next_index[peer.node_id] = len(self._log)
                self._match_index[peer.node_id] = 0
            self._log_info(
                f"FORCED to become leader for term {self._current_term} (demonstration mode)"
            )
        self._spawn(self._send_heartbeat)

    # ------------------------------------------------------------ replication

    def _apply_command(self, command: str) -> None:
        try:
            new_value = self._kv.apply_command(command)
        except ValueError:
            self._log_info(f"Invalid command format: {command}")
            return
        if new_value is None:
            return
        kind, key, _ = command.split(" ", 2)
        if kind == "PUT":
            self._log_info(f"Applied PUT command: {key} = {new_value}")
        else:
            self._log_info(f"Applied APPEND command: {key}, new value: {new_value}")

    def _apply_committed_entries(self) -> None:
        if self._commit_index <= self._last_applied:
            return
        self._log_info(
            f"Applying committed entries from index {self._last_applied + 1} "
            f"to {self._commit_index}"
        )
        for i in range(self._last_applied + 1, self._commit_index + 1):
            if i >= len(self._log):
                self._log_info(
                    f"Error: Trying to apply entry at index {i} but log length is {len(self._log)}"
                )
                break
            entry = self._log[i]
            self._log_info(f"Applying log entry {i}: {entry.command}")
            self._apply_command(entry.command)
            entry.status = "committed"
            self._last_applied = i
        self._persist(" after applying entries")

    def _send_heartbeat(self) -> None:
        with self._lock:
            if self._state != State.LEADER:
                self._log_info("Not sending heartbeats - no longer leader")
                return
            term = self._current_term
            commit_index = self._commit_index
            requests = []
            for peer in self._peers:
                next_idx = self._next_index.get(peer.node_id, 0)
                prev_index = next_idx - 1
                prev_term = (
                    self._log[prev_index].term if 0 <= prev_index < len(self._log) else 0
                )
                if 0 <= next_idx < len(self._log):
                    entries = [replace(entry) for entry in self._log[next_idx:]]
                else:
                    entries = []
                args = AppendEntriesArgs(
                    term=term,
                    leader_id=self.node_id,
                    prev_log_index=prev_index,
                    prev_log_term=prev_term,
                    entries=entries,
                    leader_commit=commit_index,
                )
                requests.append((peer, args, next_idx))
        for peer, args, next_idx in requests:
            self._spawn(self._replicate_to, peer, args, next_idx)

    def _replicate_to(self, peer: RaftNode, args: AppendEntriesArgs, next_idx: int) -> None:
        pid = peer.node_id
        if args.entries:
            self._log_info(
                f"Sending {len(args.entries)} log entries to node {pid} (nextIndex={next_idx})"
            )
        else:
            self._log_info(f"Sending heartbeat to node {pid}")

        reply = peer.append_entries(args)

        with self._lock:
            if self._state != State.LEADER or self._current_term != args.term:
                self._log_info(
                    f"Ignoring AppendEntries response from {pid} - "
                    "no longer leader or term changed"
                )
                return
            if reply.term > self._current_term:
                self._log_info(
                    f"Node {pid} has higher term ({reply.term} > {self._current_term}), "
                    "becoming follower"
                )
                self._become_follower(reply.term)
                return
            if reply.success:
                new_next = args.prev_log_index + 1 + len(args.entries)
                new_match = new_next - 1
                if new_next > self._next_index.get(pid, 0):
                    self._next_index[pid] = new_next
                old_match = self._match_index.get(pid, 0)
                if new_match > old_match:
                    self._match_index[pid] = new_match
                    if args.entries:
                        self._log_info(
                            f"Updated matchIndex for node {pid}: {old_match} -> {new_match}"
                        )
                self._update_commit_index()
                return

            old_next = self._next_index.get(pid, 0)
            if reply.conflict_term == -1:
                self._next_index[pid] = reply.conflict_index
            else:
                last_with_term = next(
                    (
                        i
                        for i in range(len(self._log) - 1, -1, -1)
                        if self._log[i].term == reply.conflict_term
                    ),
                    None,
                )
                self._next_index[pid] = (
                    reply.conflict_index if last_with_term is None else last_with_term + 1
                )
            self._log_info(
                f"AppendEntries failed for node {pid}, adjusting nextIndex "
                f"{old_next} -> {self._next_index[pid]}"
            )

    def _update_commit_index(self) -> None:
        if self._state != State.LEADER:
            return
        matches = sorted(self._match_index.get(peer.node_id, 0) for peer in self._peers)
        if not matches:
            return
        candidate = matches[len(matches) // 2]
        if candidate <= self._commit_index:
            return
        if candidate < len(self._log) and self._log[candidate].term == self._current_term:
            old = self._commit_index
            self._commit_index = candidate
            self._log_info(f"Updated commitIndex: {old} -> {candidate}")
            self._apply_committed_entries()

    # ------------------------------------------------------------------- RPCs

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        """Handle a candidate's request for this node's vote."""
        with self._lock:
            reply = RequestVoteReply(term=self._current_term, vote_granted=False)
            self._log_info(
                f"Received vote request from node {args.candidate_id} for term {args.term} "
                f"(my term: {self._current_term}, votedFor: {self._voted_for})"
            )
            if args.term < self._current_term:
                self._log_info(
                    f"Rejecting vote request from node {args.candidate_id} - lower term "
                    f"({args.term} < {self._current_term})"
                )
                return reply
            if args.term > self._current_term:
                self._log_info(
                    f"Node {args.candidate_id} has higher term "
                    f"({args.term} > {self._current_term}), becoming follower"
                )
                self._become_follower(args.term)

            if self._voted_for not in (-1, args.candidate_id):
                self._log_info(
                    f"Rejecting vote request from node {args.candidate_id} - already voted "
                    f"for node {self._voted_for} in term {self._current_term}"
                )
                return reply

            last_index = len(self._log) - 1
            last_term = self._log[last_index].term if last_index >= 0 else 0
            log_ok = args.last_log_term > last_term or (
                args.last_log_term == last_term and args.last_log_index >= last_index
            )
            if not log_ok:
                self._log_info(
                    f"Rejecting vote request from node {args.candidate_id} - log not "
                    f"up-to-date (their term: {args.last_log_term}, index: "
                    f"{args.last_log_index} | my term: {last_term}, index: {last_index})"
                )
                return reply

            reply.vote_granted = True
            self._voted_for = args.candidate_id
            self._reset_election_timer()
            self._log_info(f"Granted vote to node {args.candidate_id} for term {args.term}")
            self._persist(" after vote")
            return reply

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        """Handle a leader's heartbeat or log replication request."""
        with self._lock:
            reply = AppendEntriesReply(term=self._current_term, success=False)
            if args.entries:
                self._log_info(
                    f"Received {len(args.entries)} log entries from leader {args.leader_id} "
                    f"(term {args.term})"
                )
            else:
                self._log_info(
                    f"Received heartbeat from leader {args.leader_id} (term {args.term})"
                )

            if args.term < self._current_term:
                self._log_info(
                    f"Rejecting AppendEntries from {args.leader_id} - lower term "
                    f"({args.term} < {self._current_term})"
                )
                return reply

            was_leader = self._state == State.LEADER
            self._reset_election_timer()
            self._last_heartbeat = time.monotonic()

            if args.term > self._current_term:
                self._log_info(
                    f"Node {args.leader_id} has higher term "
                    f"({args.term} > {self._current_term}), becoming follower"
                )
                self._become_follower(args.term)
            elif self._state == State.CANDIDATE and args.term == self._current_term:
                self._log_info(
                    f"Received AppendEntries from elected leader {args.leader_id} "
                    "with same term, becoming follower"
                )
                self._become_follower(args.term)
            elif was_leader and args.term == self._current_term:
                self._log_info("CRITICAL: Two leaders with same term detected! Becoming follower")
                self._become_follower(args.term)

            if args.prev_log_index >= len(self._log):
                self._log_info(
                    f"Rejecting AppendEntries: PrevLogIndex {args.prev_log_index} "
                    f">= log length {len(self._log)}"
                )
                reply.conflict_index = len(self._log)
                reply.conflict_term = -1
                return reply

            if args.prev_log_index >= 0:
                conflict_term = self._log[args.prev_log_index].term
                if conflict_term != args.prev_log_term:
                    conflict_index = args.prev_log_index
                    for i in range(args.prev_log_index - 1, -1, -1):
                        if self._log[i].term != conflict_term:
                            conflict_index = i + 1
                            break
                    reply.conflict_term = conflict_term
                    reply.conflict_index = conflict_index
                    self._log_info(
                        f"Rejecting AppendEntries: Term mismatch at PrevLogIndex "
                        f"{args.prev_log_index} (expected {args.prev_log_term}, got "
                        f"{conflict_term}, conflictIndex: {conflict_index})"
                    )
                    return reply

            if args.entries:
                self._log_info(f"Processing {len(args.entries)} new log entries")
                new_entries: list[LogEntry] = []
                for offset, entry in enumerate(args.entries):
                    log_index = args.prev_log_index + 1 + offset
                    if log_index >= len(self._log):
                        new_entries = args.entries[offset:]
                        break
                    if self._log[log_index].term != entry.term:
                        self._log_info(
                            f"Conflict at index {log_index} (my term: "
                            f"{self._log[log_index].term}, leader term: {entry.term}), "
                            "truncating log"
                        )
                        del self._log[log_index:]
                        new_entries = args.entries[offset:]
                        break
                if new_entries:
                    self._log_info(f"Appending {len(new_entries)} new entries to log")
                    self._log.extend(replace(entry) for entry in new_entries)

            if args.leader_commit > self._commit_index:
                old = self._commit_index
                self._commit_index = min(args.leader_commit, len(self._log) - 1)
                if self._commit_index > old:
                    self._log_info(f"Updated commit index: {old} -> {self._commit_index}")
                    self._apply_committed_entries()

            reply.success = True
            return reply