"""Worker node agent: registers with the manager, runs tasks and reports load."""

from __future__ import annotations

import os
import signal
import socket
import sys
import threading
from collections.abc import Sequence

from clusterq.logger import log_event
from clusterq.metrics import (
    DEFAULT_MEMINFO_PATH,
    DEFAULT_STAT_PATH,
    CpuSampler,
    format_usage_report,
    read_cpu_line,
    read_memory_usage,
)

_BUFFER_SIZE = 1024
_TASK_WHITESPACE = " \t\n\r"


class NodeAgent:
    """A worker that takes tasks on its own port and reports to the manager."""

    def __init__(
        self,
        node_id: str,
        manager_ip: str,
        manager_port: int,
        listen_port: int,
        task_duration: float = 1.0,
    ) -> None:
        self.node_id = node_id
        self.manager_ip = manager_ip
        self.manager_port = manager_port
        self.listen_port = listen_port
        self.task_duration = task_duration
        self.listen_host = "0.0.0.0"
        self.monitor_interval = 1.0
        self.accept_timeout = 0.5
        self.stat_path = DEFAULT_STAT_PATH
        self.meminfo_path = DEFAULT_MEMINFO_PATH
        self.address: tuple[str, int] | None = None
        self.ready = threading.Event()
        self._stop = threading.Event()
        self._send_lock = threading.Lock()
        self._manager: socket.socket | None = None
        self._sampler = CpuSampler()

    @property
    def running(self) -> bool:
        """Whether the agent has not been told to stop."""
        return not self._stop.is_set()

    def connect(self) -> None:
        """Connect to the manager and register this node.

        Raises OSError when the manager cannot be reached.
        """
        sock = socket.create_connection((self.manager_ip, self.manager_port))
        with self._send_lock:
            self._manager = sock
        log_event(
            "INFO",
            f"Node {self.node_id}: Connected to manager at "
            f"{self.manager_ip}:{self.manager_port}",
        )
        self.send_to_manager(f"REGISTER {self.node_id} {self.listen_port}\n")
        log_event("INFO", f"Node {self.node_id}: Sent registration message to manager.")

    def send_to_manager(self, msg: str | bytes) -> bool:
        """Send ``msg`` on the manager connection; False if it could not be sent."""
        data = msg.encode() if isinstance(msg, str) else msg
        with self._send_lock:
            if self._manager is None:
                return False
            try:
                self._manager.sendall(data)
            except OSError:
                log_event("ERROR", f"Failed to send message to manager: {data.decode(errors='replace')}")
                return False
        return True

    def execute_task(self, task: str) -> bool:
        """Run ``task`` and report its completion; True if the report was sent."""
        log_event("INFO", f"Node {self.node_id}: Received task: {task}")
        self._stop.wait(self.task_duration) if self.task_duration > 0 else None
        log_event("INFO", f"Node {self.node_id}: Completed task: {task}")
        clean = task.strip(_TASK_WHITESPACE)
        if not clean:
            return False
        return self.send_to_manager(f"TASK_DONE {clean}\n")

    def handle_request(self, raw: bytes | str) -> bytes | None:
        """Act on one message received on the task port; return the reply, if any."""
        text = raw.decode(errors="replace") if isinstance(raw, bytes) else raw
        request = text.strip(_TASK_WHITESPACE)
        if request == "PING":
            log_event("INFO", f"Node {self.node_id}: Received PING from manager.")
            return b"PONG\n"
        if request == "SHUTDOWN":
            log_event("INFO", f"Node {self.node_id}: Received shutdown signal from manager.")
            self.stop()
            return None
        if request:
            self.execute_task(request)
        return None

    def listen(self) -> None:
        """Serve the task port until the agent is stopped."""
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            reuse_port = getattr(socket, "SO_REUSEPORT", None)
            if reuse_port is not None:
                server.setsockopt(socket.SOL_SOCKET, reuse_port, 1)
            server.bind((self.listen_host, self.listen_port))
            server.listen(5)
        except OSError:
            log_event("ERROR", f"Node {self.node_id}: Bind failed on task port.")
            server.close()
            return
        server.settimeout(self.accept_timeout)
        self.address = server.getsockname()[:2]
        log_event(
            "INFO",
            f"Node {self.node_id}: Listening for tasks on port {self.address[1]}...",
        )
        self.ready.set()
        with server:
            while not self._stop.is_set():
                try:
                    conn, _ = server.accept()
                except TimeoutError:
                    continue
                except OSError:
                    if self._stop.wait(0.1):
                        break
                    continue
                with conn:
                    conn.settimeout(None)
                    try:
                        data = conn.recv(_BUFFER_SIZE - 1)
                    except OSError:
                        continue
                    if not data:
                        continue
                    reply = self.handle_request(data)
                    if reply:
                        try:
                            conn.sendall(reply)
                        except OSError:
                            pass

    def monitor(self) -> None:
        """Report CPU and memory usage to the manager until the agent is stopped."""
        while not self._stop.is_set():
            cpu = self._sampler.sample(read_cpu_line(self.stat_path))
            mem = read_memory_usage(self.meminfo_path)
            self.send_to_manager(format_usage_report(cpu, mem))
            self._stop.wait(self.monitor_interval)

    def _close_manager(self) -> None:
        with self._send_lock:
            if self._manager is not None:
                self._manager.close()
                self._manager = None

    def run(self) -> None:
        """Register if needed, then serve tasks and report load until stopped.

        Raises OSError when the manager cannot be reached.
        """
        if self._manager is None:
            self.connect()
        monitor = threading.Thread(target=self.monitor, daemon=True)
        monitor.start()
        try:
            self.listen()
        finally:
            self.stop()
            monitor.join()
            self._close_manager()
        log_event("INFO", f"Node {self.node_id}: Shutdown complete.")

    def stop(self) -> None:
        """Ask the listener and the monitor to finish."""
        self._stop.set()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point: ``<node_id> <manager_ip> <manager_port> <listen_port>``."""
    args = sys.argv[1:] if argv is None else list(argv)
    usage = (
        f"Usage: {os.path.basename(sys.argv[0]) or 'node_agent'} "
        "<node_id> <manager_ip> <manager_port> <listen_port>"
    )
    if len(args) != 4:
        print(usage, file=sys.stderr)
        return 1
    node_id, manager_ip = args[0], args[1]
    try:
        manager_port = int(args[2])
        listen_port = int(args[3])
    except ValueError:
        print(usage, file=sys.stderr)
        return 1

    log_event("INFO", f"NodeAgent {node_id}: initialized.")
    agent = NodeAgent(node_id, manager_ip, manager_port, listen_port)
    try:
        agent.connect()
    except OSError:
        log_event("ERROR", f"Node {node_id}: Could not connect to manager.")
        return 1

    def _on_signal(signum: int, _frame: object) -> None:
        log_event("INFO", f"Caught signal {signum}. Shutting down node...")
        agent.stop()

    signal.signal(signal.SIGINT, _on_signal)
    agent.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())