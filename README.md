# raftkv

raftkv is a small Raft consensus cluster that runs inside one Python process.
The cluster replicates a string key-value store across its nodes.

Each node is a `raftkv.node.RaftNode`. Nodes talk to each other through direct
method calls, `request_vote` and `append_entries`. Each node runs the following
on background threads:

- an election timer, randomised between 150 and 300 ms;
- a failure detector, which starts an election after 300 ms without a heartbeat;
- heartbeats every 100 ms while the node is leader;
- an apply loop;
- a save of its state once a second.

## Install

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## The demo

```
raftkv-demo
```

The demo runs these steps in order:

1. It removes the base directory (default `./raft-data`) and creates it again.
2. It starts the nodes (default five). Each node gets its own directory, `nodeN`, under the base directory.
3. It waits for a leader to be elected. If no leader appears before the timeout, node 1 is forced to lead.
4. It writes `name`, `age`, `city` and `greeting` on the leader. Then it appends `, World!` to `greeting`.
5. After a short wait it prints each follower's values, with a tick or a cross against the expected value.
6. After a delay it stops the leader and polls for a new one.
   - If a new leader is elected, the demo sets `location` on it and appends ` Smith` to `name`. It tries each write up to five times.
7. It keeps running for the run duration, then stops every node. Finally it lists the log files.

Press Ctrl+C (or send SIGTERM) to stop early. The nodes are still shut down cleanly.

Options:

| Option | Default | Meaning |
|---|---|---|
| `--base-dir` | `raft-data` | directory for node data and logs |
| `--nodes` | `5` | number of nodes |
| `--election-timeout` | `10` | seconds to wait for the first leader |
| `--replication-wait` | `1` | seconds to wait before checking followers |
| `--failure-delay` | `7` | seconds before the leader is stopped |
| `--reelection-timeout` | `10` | seconds to wait for a new leader after the failure |
| `--run-duration` | `60` | seconds to keep the cluster running |

The demo writes these files:

- The cluster log goes to `<base-dir>/cluster.log`, and is also printed to the terminal.
- Each node logs to `<base-dir>/nodeN/nodeN.log`. Important events, such as elections, votes, applied entries and errors, are also printed.
- Each node saves its state as JSON to `<base-dir>/nodeN/nodeN.state`.

## Using the library

```python
import time
from raftkv.node import RaftNode
from raftkv.types import State

nodes = [RaftNode(i, None, f"data/node{i}") for i in range(1, 4)]
for node in nodes:
    node.set_peers([p for p in nodes if p is not node])

time.sleep(2)
leader = next(n for n in nodes if n.get_state() is State.LEADER)
leader.put("name", "Alice")
leader.append("name", " Smith")
print(leader.get("name"))  # Alice Smith

for node in nodes:
    node.stop()
```

### Writes and reads

- Only the leader accepts writes. On any other node, `put` and `append` return `False`.
- The leader applies a write to its own store at once. It then replicates the entry with a heartbeat.
- Followers apply an entry once the leader's commit index covers it.
- `get` reads the node's local store. For a missing key it returns an empty string.

### Other node methods

- `force_leader()` makes a node leader in a new term without holding an election.
- `stop()` ends the node's background work and closes its log file.

### Saved state

When a `RaftNode` starts, it reloads its term, vote, log and store from `nodeN.state` in its directory, if that file exists.

## Modules

| Module | Contents |
|---|---|
| `raftkv.types` | `State`; `LogEntry`, with `to_dict` and `from_dict`; `RequestVoteArgs`, `RequestVoteReply`, `AppendEntriesArgs` and `AppendEntriesReply`; `is_important_event` |
| `raftkv.statemachine` | `KVStore`: `put`, `append`, `get`, `apply_command` for `PUT key value` and `APPEND key value` commands, and `snapshot` |
| `raftkv.persistence` | `PersistedState`; `state_file_path`; `save_state`; `load_state` |
| `raftkv.node` | `RaftNode` |
| `raftkv.cli` | `main`, the `raftkv-demo` entry point; `shutdown_cluster`; `status_emoji` |

How the persistence functions behave:

- `save_state` first writes to `nodeN.tmp`, then renames that file over `nodeN.state`.
- `load_state` returns `None` when no state has been saved. It raises `ValueError` when the file does not hold a JSON object.

`KVStore.apply_command` raises `ValueError` for a command with fewer than three space-separated parts.

## What it does not do

- Nodes live in one process and talk through method calls. There is no network transport, so a cluster cannot span several processes or machines.
- There are no log snapshots or log compaction, so the log grows without limit.
- Cluster membership is whatever `set_peers` is given. There is no protocol for membership changes.
- Reads are served from any node's local store. They are not routed through the leader.