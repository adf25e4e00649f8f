# clusterq

clusterq is a small task cluster. Its parts talk to each other in plain text over TCP. It has three parts:

- **manager**: accepts tasks from clients and holds them in a queue. It gives each task to the available node with the lowest combined load, which is the mean of that node's CPU and memory usage. Every two seconds it pings each node. A node that has been silent for ten seconds is marked unavailable, and so is a node whose ping fails. When a node becomes unavailable or disconnects, the manager puts that node's assigned tasks back in the queue.
- **node agent**: registers with the manager and listens on its own port for tasks. Once a second it reports CPU and memory usage, which it reads from `/proc/stat` and `/proc/meminfo`.
- **client**: sends a numbered series of tasks to the manager.

## Installation

```
pip install .
```

The package needs Python 3.10 or later. It has no runtime dependencies outside the standard library. The node agent reads its load figures from the Linux proc filesystem. If those files cannot be read, it reports 0 for CPU and memory.

## Running a cluster

Start the manager. It listens on port 5000 by default. To use a different port, pass it as the only argument:

```
clusterq-manager
clusterq-manager 5001
```

The manager writes its log to standard output. It also appends the same log to `manager.log` in the working directory. If the port argument is not a number, the manager logs an error and uses port 5000.

Start one or more node agents. Give each one a node id, the manager's address and port, and the port the node listens on for tasks:

```
clusterq-node node1 127.0.0.1 5000 6000
clusterq-node node2 127.0.0.1 5000 6001
clusterq-node node3 127.0.0.1 5000 6002
```

Submit tasks with the client. Give it the manager's address and port, and the number of tasks to send:

```
clusterq-client 127.0.0.1 5000 10
```

The client sends `Task_1:Workload_1`, `Task_2:Workload_2`, and so on. It opens one connection per task and waits 0.1 s between tasks.

## Protocol

| From → To | Message | Meaning |
|---|---|---|
| node → manager | `REGISTER <node_id> <port>` | register a node and the port it takes tasks on |
| node → manager | `CPU_USAGE <percent>` | CPU load report |
| node → manager | `MEM_USAGE <percent>` | memory load report |
| node → manager | `TASK_DONE <task>` | a task has finished |
| client → manager | `<task>` (one per line) | submit tasks |
| manager → node | `<task>` | run a task |
| manager → node | `PING` | heartbeat; the node answers `PONG` |
| manager → node | `SHUTDOWN` | stop the node |

The manager follows these rules for tasks:

- If a task that has already completed is submitted again, it is ignored.
- A task that is already queued or assigned is not queued a second time.
- If a task's node becomes unavailable, disconnects, or cannot be reached, the task goes back in the queue.
- When a re-queued task is handed out again, the log records it as "Reassigned".

When the manager receives SIGINT or SIGTERM, it sends `SHUTDOWN` to every registered node and stops serving. A node agent stops on SIGINT or when it receives `SHUTDOWN`.

## Using it from Python

`clusterq.state.ClusterState` holds the manager's bookkeeping of nodes, tasks and the queue. It does no networking:

```python
from clusterq.state import ClusterState

state = ClusterState()
state.register_node("node1", "127.0.0.1", 6000)
state.handle_node_line("node1", "CPU_USAGE 20")
state.handle_node_line("node1", "MEM_USAGE 40")
state.submit("Task_1:Workload_1\n")
task = state.next_task()          # "Task_1:Workload_1"
node = state.best_node()          # copy of node1, combined load 30.0
state.mark_assigned(task, node.id)
```

Other modules:

- `clusterq.manager`: `Manager` and `ManagerConfig`.
- `clusterq.node`: `NodeAgent`. Its `handle_request` method answers a single task-port message.
- `clusterq.client`: `task_messages` and `send_tasks`.
- `clusterq.metrics`: `CpuSampler`, `memory_usage`, `read_memory_usage`, `read_cpu_line` and `format_usage_report`.
- `clusterq.logger`: timestamped log helpers.

## What it does not do

- A node agent does not execute the work a task describes. It logs the task, waits one second, and reports `TASK_DONE`.
- All task and node state lives in the manager's memory. If the manager restarts, the queue is lost.
- There is no authentication or encryption on any connection.