"""Thread-safe bookkeeping of registered nodes and submitted tasks."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum

from clusterq.logger import log_event

_TRAILING_WHITESPACE = " \t\n\r\f\v"
_NO_LOAD = 201.0


class TaskStatus(Enum):
    """Lifecycle of a task held by the manager."""

    QUEUED = "QUEUED"
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"


@dataclass
class NodeInfo:
    """A registered worker node and its last reported load."""

    id: str
    ip: str
    port: int
    available: bool = True
    cpu_usage: float = 100.0
    mem_usage: float = 100.0
    last_cpu_update: float = field(default_factory=time.monotonic)
    last_mem_update: float = field(default_factory=time.monotonic)
    last_heartbeat_pong: float = field(default_factory=time.monotonic)

    @property
    def combined_load(self) -> float:
        """Mean of CPU and memory usage, in percent."""
        return (self.cpu_usage + self.mem_usage) / 2.0


@dataclass
class TaskEntry:
    """A task and where it currently stands."""

    task: str
    status: TaskStatus
    assigned_node: str = ""
    requeued_count: int = 0


def parse_registration(data: bytes | str) -> tuple[str, int]:
    """Parse ``REGISTER <node_id> <port>`` into ``(node_id, port)``.

    Raises ValueError for any other command or a malformed message.
    """
    text = data.decode(errors="replace") if isinstance(data, bytes) else data
    words = text.split()
    command = words[0] if words else ""
    if command != "REGISTER":
        raise ValueError(f"Unknown command from node: {command}")
    if len(words) < 3:
        raise ValueError(f"Malformed registration: {text.strip()!r}")
    try:
        port = int(words[2])
    except ValueError:
        raise ValueError(f"Invalid port in registration: {words[2]!r}") from None
    return words[1], port


class ClusterState:
    """Nodes, tasks and the pending-task queue, guarded by one lock."""

    def __init__(
        self,
        unresponsive_timeout_ms: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.unresponsive_timeout_ms = unresponsive_timeout_ms
        self.clock = clock
        self.nodes: dict[str, NodeInfo] = {}
        self.tasks: dict[str, TaskEntry] = {}
        self.queue: deque[str] = deque()
        self._lock = threading.RLock()

    def _requeue(self, entry: TaskEntry) -> None:
        entry.status = TaskStatus.QUEUED
        entry.assigned_node = ""
        entry.requeued_count += 1
        self.queue.append(entry.task)

    def register_node(self, node_id: str, ip: str, port: int) -> NodeInfo:
        """Add or replace a node, fully loaded and available."""
        now = self.clock()
        node = NodeInfo(node_id, ip, port, True, 100.0, 100.0, now, now, now)
        with self._lock:
            self.nodes[node_id] = node
        log_event("INFO", f"Node {node_id} connected from {ip}:{port}")
        return replace(node)

    def remove_node(self, node_id: str) -> list[str]:
        """Forget a node and requeue the tasks assigned to it."""
        requeued = []
        with self._lock:
            self.nodes.pop(node_id, None)
            for task_id, entry in self.tasks.items():
                if entry.assigned_node == node_id and entry.status is TaskStatus.ASSIGNED:
                    log_event("INFO", f"Re-queuing task {task_id} from disconnected node {node_id}")
                    self._requeue(entry)
                    requeued.append(task_id)
        return requeued

    def submit(self, text: bytes | str) -> list[str]:
        """Queue each non-blank line of ``text`` as a task; return the new ones."""
        if isinstance(text, bytes):
            text = text.decode(errors="replace")
        added = []
        with self._lock:
            for raw in text.split("\n"):
                line = raw.rstrip(_TRAILING_WHITESPACE)
                if not line:
                    continue
                entry = self.tasks.get(line)
                if entry is not None and entry.status is TaskStatus.COMPLETED:
                    log_event("INFO", f"Ignoring already completed task: {line}")
                    continue
                if entry is None:
                    self.tasks[line] = TaskEntry(line, TaskStatus.QUEUED)
                    self.queue.append(line)
                    added.append(line)
                    log_event("INFO", f"Received task: {line}")
                else:
                    log_event("INFO", f"Task {line} is already in queue or assigned.")
        return added

    def handle_node_line(self, node_id: str, line: str) -> None:
        """Apply one line reported by a node.

        Raises ValueError when a usage report does not hold a number.
        """
        if line.startswith("TASK_DONE "):
            task = line[10:]
            with self._lock:
                entry = self.tasks.get(task)
                if entry is not None:
                    entry.status = TaskStatus.COMPLETED
            if entry is not None:
                log_event("INFO", f"Manager: Task {task} marked as completed by {node_id}")
            else:
                log_event(
                    "WARN",
                    f"Manager: Received completion for unknown or already completed task: {task}",
                )
        elif line.startswith("CPU_USAGE ") or line.startswith("MEM_USAGE "):
            usage = float(line[10:])
            is_cpu = line.startswith("CPU_USAGE ")
            now = self.clock()
            with self._lock:
                node = self.nodes.get(node_id)
                if node is not None:
                    if is_cpu:
                        node.cpu_usage = usage
                        node.last_cpu_update = now
                    else:
                        node.mem_usage = usage
                        node.last_mem_update = now
                    node.available = True
                    node.last_heartbeat_pong = now
            kind = "CPU" if is_cpu else "Memory"
            log_event("INFO", f"Manager: Updated {kind} usage for {node_id}: {usage:.6f}%")
        else:
            log_event("WARN", f"Manager: Unrecognized message from {node_id}: '{line}'")

    def requeue_unavailable(self) -> list[str]:
        """Requeue assigned tasks whose node is gone or unavailable."""
        requeued = []
        with self._lock:
            for task_id, entry in self.tasks.items():
                if entry.status is not TaskStatus.ASSIGNED:
                    continue
                node = self.nodes.get(entry.assigned_node)
                if node is None or not node.available:
                    log_event(
                        "INFO",
                        f"Re-queuing task {task_id} from unavailable node {entry.assigned_node}",
                    )
                    self._requeue(entry)
                    requeued.append(task_id)
        return requeued

    def next_task(self) -> str | None:
        """Return the task at the head of the queue, if it still needs a node.

        A completed task at the head is dropped and None is returned.
        """
        with self._lock:
            if not self.queue:
                return None
            head = self.queue[0]
            entry = self.tasks.get(head)
            if entry is not None and entry.status is TaskStatus.COMPLETED:
                self.queue.popleft()
                return None
            return head

    def best_node(self, now: float | None = None) -> NodeInfo | None:
        """Return a copy of the responsive available node with the lowest load."""
        if now is None:
            now = self.clock()
        best = None
        best_load = _NO_LOAD
        with self._lock:
            for node_id in sorted(self.nodes):
                node = self.nodes[node_id]
                elapsed_ms = int((now - node.last_heartbeat_pong) * 1000)
                if node.available and elapsed_ms < self.unresponsive_timeout_ms:
                    load = node.combined_load
                    if load < best_load:
                        best, best_load = node, load
            return replace(best) if best is not None else None

    def mark_assigned(self, task_id: str, node_id: str) -> TaskEntry:
        """Record that ``task_id`` goes to ``node_id`` and take it off the queue."""
        with self._lock:
            entry = self.tasks.get(task_id)
            if entry is None:
                entry = self.tasks[task_id] = TaskEntry(task_id, TaskStatus.QUEUED)
            verb = "Reassigned" if entry.requeued_count > 0 else "Assigned"
            node = self.nodes.get(node_id)
            load = f" (Combined Load: {node.combined_load:.6f}%)" if node is not None else ""
            log_event("INFO", f"{verb} {task_id} to {node_id}{load}.")
            entry.assigned_node = node_id
            entry.status = TaskStatus.ASSIGNED
            try:
                self.queue.remove(task_id)
            except ValueError:
                pass
            return replace(entry)

    def requeue_after_failure(self, task_id: str, node_id: str) -> bool:
        """Requeue a task held by ``node_id`` after a failed delivery."""
        with self._lock:
            entry = self.tasks.get(task_id)
            if (
                entry is not None
                and entry.status is TaskStatus.ASSIGNED
                and entry.assigned_node == node_id
            ):
                log_event(
                    "INFO",
                    f"Re-queuing task {task_id} due to connection failure to {node_id}",
                )
                self._requeue(entry)
                return True
        return False

    def mark_unavailable(self, node_id: str) -> bool:
        """Flag a node as unavailable; False if it is not registered."""
        with self._lock:
            node = self.nodes.get(node_id)
            if node is None:
                return False
            node.available = False
            return True

    def mark_alive(self, node_id: str) -> bool:
        """Record a heartbeat answer from a node; False if it is not registered."""
        now = self.clock()
        with self._lock:
            node = self.nodes.get(node_id)
            if node is None:
                return False
            node.available = True
            node.last_cpu_update = now
            node.last_mem_update = now
            node.last_heartbeat_pong = now
            return True

    def snapshot_nodes(self) -> dict[str, NodeInfo]:
        """Return independent copies of all registered nodes."""
        with self._lock:
            return {node_id: replace(node) for node_id, node in self.nodes.items()}