"""Manager service: accepts tasks from clients and spreads them over worker nodes."""

from __future__ import annotations

import signal
import socket
import sys
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum, auto
from typing import TextIO

from clusterq.constants import MANAGER_PORT
from clusterq.logger import log_event
from clusterq.state import ClusterState, NodeInfo, parse_registration

_BUFFER_SIZE = 1024


@dataclass
class ManagerConfig:
    """Tunable settings of the manager."""

    listen_port: int = MANAGER_PORT
    host: str = "0.0.0.0"
    heartbeat_ping_interval_sec: float = 2
    node_unresponsive_timeout_ms: int = 10000
    log_file_name: str = "manager.log"
    assign_interval: float = 0.2
    retry_delay: float = 0.5
    assign_pause: float = 0.5
    connect_timeout: float = 1.0
    poll_interval: float = 0.1
    accept_timeout: float = 0.5

    @property
    def unresponsive_timeout(self) -> float:
        """The unresponsive-node timeout in seconds."""
        return self.node_unresponsive_timeout_ms / 1000


class _Outcome(Enum):
    IDLE = auto()
    NO_NODE = auto()
    FAILED = auto()
    ASSIGNED = auto()


def parse_port(text: str, default: int = MANAGER_PORT) -> int:
    """Return ``text`` as a port number, or ``default`` if it is not a number."""
    try:
        return int(text)
    except ValueError:
        log_event(
            "ERROR",
            f"Invalid port number provided: {text}. Using default {default}",
        )
        return default


def _split_lines(text: str) -> list[str]:
    parts = text.split("\n")
    if parts and parts[-1] == "":
        parts.pop()
    return parts


class Manager:
    """Listens for nodes and clients, assigns tasks and watches node health."""

    def __init__(
        self,
        config: ManagerConfig | None = None,
        state: ClusterState | None = None,
    ) -> None:
        self.config = config or ManagerConfig()
        self.state = state or ClusterState(
            unresponsive_timeout_ms=self.config.node_unresponsive_timeout_ms
        )
        self.ready = threading.Event()
        self.address: tuple[str, int] | None = None
        self._stop = threading.Event()
        self._server: socket.socket | None = None

    @property
    def running(self) -> bool:
        """Whether the manager has not been told to stop."""
        return not self._stop.is_set()

    def serve(self) -> None:
        """Bind the listening socket and serve until :meth:`shutdown` is called.

        Raises OSError when the socket cannot be bound or put in listening mode.
        """
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            reuse_port = getattr(socket, "SO_REUSEPORT", None)
            if reuse_port is not None:
                server.setsockopt(socket.SOL_SOCKET, reuse_port, 1)
            server.bind((self.config.host, self.config.listen_port))
            server.listen(10)
        except OSError:
            server.close()
            raise
        server.settimeout(self.config.accept_timeout)
        self._server = server
        self.address = server.getsockname()[:2]
        log_event("INFO", f"Manager listening on {self.config.host}:{self.address[1]}")
        self.ready.set()

        workers = [
            threading.Thread(target=self._assign_loop, daemon=True),
            threading.Thread(target=self._heartbeat_loop, daemon=True),
        ]
        for worker in workers:
            worker.start()
        try:
            while not self._stop.is_set():
                try:
                    conn, addr = server.accept()
                except TimeoutError:
                    continue
                except OSError as exc:
                    if self._stop.is_set():
                        break
                    log_event("ERROR", f"Accept failed: {exc.strerror or exc}")
                    continue
                self._dispatch(conn, addr)
        finally:
            self._stop.set()
            for worker in workers:
                worker.join()
            server.close()
        log_event("INFO", "Manager gracefully shut down.")

    def _dispatch(self, conn: socket.socket, addr: tuple[str, int]) -> None:
        conn.settimeout(self.config.unresponsive_timeout)
        try:
            peek = conn.recv(_BUFFER_SIZE, socket.MSG_PEEK)
        except OSError:
            peek = b""
        if not peek:
            conn.close()
            return
        conn.settimeout(None)
        if peek.startswith(b"REGISTER"):
            target, args = self.handle_node, (conn, addr)
        else:
            target, args = self.handle_client, (conn,)
        threading.Thread(target=target, args=args, daemon=True).start()

    def send_heartbeat_ping(self, node: NodeInfo) -> bool:
        """Ping ``node`` and record whether it answered with PONG."""
        try:
            sock = socket.create_connection(
                (node.ip, node.port), timeout=self.config.unresponsive_timeout
            )
        except OSError:
            log_event(
                "WARN",
                f"Heartbeat: Node {node.id} at {node.ip}:{node.port} "
                "unresponsive or disconnected (connect failed).",
            )
            self.state.mark_unavailable(node.id)
            return False
        with sock:
            try:
                sock.sendall(b"PING\n")
                reply = sock.recv(15)
            except OSError:
                reply = b""
        if not reply:
            log_event(
                "WARN",
                f"Heartbeat: Node {node.id} failed to respond to ping (recv timeout/error).",
            )
            self.state.mark_unavailable(node.id)
            return False
        response = reply.decode(errors="replace")
        if response.startswith("PONG"):
            self.state.mark_alive(node.id)
            return True
        log_event("WARN", f"Heartbeat: Node {node.id} sent unexpected response: '{response}'")
        self.state.mark_unavailable(node.id)
        return False

    def check_heartbeats(self) -> list[threading.Thread]:
        """Flag silent nodes and start a ping for each responsive one.

        Returns the ping threads that were started.
        """
        now = self.state.clock()
        pings = []
        for node_id, node in self.state.snapshot_nodes().items():
            elapsed_ms = int((now - node.last_heartbeat_pong) * 1000)
            if elapsed_ms > self.config.node_unresponsive_timeout_ms:
                if node.available and self.state.mark_unavailable(node_id):
                    log_event(
                        "WARN",
                        f"Heartbeat: Node {node_id} unresponsive for {elapsed_ms}ms. "
                        "Marking as unavailable.",
                    )
            elif node.available:
                ping = threading.Thread(
                    target=self.send_heartbeat_ping, args=(node,), daemon=True
                )
                ping.start()
                pings.append(ping)
        return pings

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.config.heartbeat_ping_interval_sec):
            self.check_heartbeats()

    def _assign(self) -> tuple[_Outcome, str | None]:
        self.state.requeue_unavailable()
        task = self.state.next_task()
        if task is None:
            return _Outcome.IDLE, None
        node = self.state.best_node()
        if node is None:
            log_event("INFO", f"No available node found to assign task {task}. Will retry.")
            return _Outcome.NO_NODE, task
        try:
            sock = socket.create_connection(
                (node.ip, node.port), timeout=self.config.connect_timeout
            )
        except OSError:
            log_event(
                "ERROR",
                f"Manager: Failed to connect to node {node.id} for task assignment. "
                "Marking unavailable.",
            )
            self.state.mark_unavailable(node.id)
            self.state.requeue_after_failure(task, node.id)
            return _Outcome.FAILED, task
        with sock:
            self.state.mark_assigned(task, node.id)
            try:
                sock.sendall(task.encode())
            except OSError:
                pass
        return _Outcome.ASSIGNED, task

    def assign_once(self) -> str | None:
        """Try to hand the task at the head of the queue to the least loaded node.

        Returns the task that was sent, or None if nothing was assigned.
        """
        outcome, task = self._assign()
        return task if outcome is _Outcome.ASSIGNED else None

    def _assign_loop(self) -> None:
        while not self._stop.wait(self.config.assign_interval):
            outcome, _ = self._assign()
            if outcome is _Outcome.NO_NODE:
                self._stop.wait(self.config.retry_delay)
            elif outcome is _Outcome.ASSIGNED:
                self._stop.wait(self.config.assign_pause)

    def handle_node(self, conn: socket.socket, addr: tuple[str, int]) -> None:
        """Register a node on ``conn`` and process its reports until it leaves."""
        with conn:
            try:
                data = conn.recv(_BUFFER_SIZE - 1)
                node_id, port = parse_registration(data)
            except (OSError, ValueError) as exc:
                log_event("ERROR", str(exc))
                return
            self.state.register_node(node_id, addr[0], port)
            conn.settimeout(self.config.unresponsive_timeout)

            while not self._stop.is_set():
                try:
                    chunk = conn.recv(_BUFFER_SIZE - 1)
                except TimeoutError:
                    chunk = None
                except OSError as exc:
                    log_event("ERROR", f"Node {node_id} socket error: {exc.strerror or exc}")
                    break
                if chunk == b"":
                    log_event(
                        "WARN", f"Node {node_id} disconnected unexpectedly (recv returned 0)."
                    )
                    break
                if chunk:
                    for line in _split_lines(chunk.decode(errors="replace")):
                        try:
                            self.state.handle_node_line(node_id, line)
                        except ValueError:
                            log_event(
                                "ERROR", f"Manager: Invalid usage report from {node_id}: '{line}'"
                            )
                self._stop.wait(self.config.poll_interval)

            self.state.remove_node(node_id)
        log_event("INFO", f"Cleaned up resources for disconnected node {node_id}")

    def handle_client(self, conn: socket.socket) -> list[str]:
        """Read one batch of task lines from a client; return the newly queued tasks."""
        with conn:
            try:
                data = conn.recv(_BUFFER_SIZE)
            except OSError:
                data = b""
            return self.state.submit(data)

    def broadcast_shutdown(self) -> list[str]:
        """Send SHUTDOWN to every registered node; return those that were reached."""
        reached = []
        for node_id, node in self.state.snapshot_nodes().items():
            try:
                with socket.create_connection(
                    (node.ip, node.port), timeout=self.config.connect_timeout
                ) as sock:
                    sock.sendall(b"SHUTDOWN")
            except OSError:
                continue
            reached.append(node_id)
        return reached

    def shutdown(self) -> None:
        """Stop serving and tell every node to shut down."""
        self._stop.set()
        self.broadcast_shutdown()
        if self._server is not None:
            self._server.close()
        log_event("INFO", "Manager: Shutdown complete.")


class _Tee:
    """A text stream that writes to two streams at once."""

    def __init__(self, first: TextIO, second: TextIO) -> None:
        self._streams = (first, second)

    def write(self, text: str) -> int:
        for stream in self._streams:
            stream.write(text)
        return len(text)

    def flush(self) -> None:
        for stream in self._streams:
            stream.flush()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point: ``[listen_port]``."""
    args = sys.argv[1:] if argv is None else list(argv)
    config = ManagerConfig()
    original = sys.stdout
    with open(config.log_file_name, "a", encoding="utf-8") as log_file:
        sys.stdout = _Tee(original, log_file)
        try:
            if len(args) == 1:
                config.listen_port = parse_port(args[0], config.listen_port)
            manager = Manager(config)

            def _on_signal(signum: int, _frame: object) -> None:
                log_event("INFO", f"Caught signal {signum}. Shutting down manager...")
                manager.shutdown()

            signal.signal(signal.SIGINT, _on_signal)
            signal.signal(signal.SIGTERM, _on_signal)

            log_event("INFO", "Manager starting...")
            log_event(
                "INFO",
                f"Heartbeat Ping Interval: {config.heartbeat_ping_interval_sec:g} seconds",
            )
            log_event(
                "INFO", f"Node Unresponsive Timeout: {config.node_unresponsive_timeout_ms} ms"
            )
            try:
                manager.serve()
            except OSError as exc:
                print(f"bind failed: {exc}", file=sys.stderr)
                return 1
            return 0
        finally:
            sys.stdout = original


if __name__ == "__main__":
    sys.exit(main())