import socket
import threading
import time

import pytest

from clusterq.manager import Manager, ManagerConfig, parse_port
from clusterq.state import ClusterState, TaskStatus


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _FakeNode:
    """Accepts one connection, records what it reads and optionally replies."""

    def __init__(self, reply=None):
        self.reply = reply
        self.received = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(5)
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        self.sock.settimeout(5)
        try:
            conn, _ = self.sock.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(5)
            try:
                self.received.append(conn.recv(1024))
                if self.reply is not None:
                    conn.sendall(self.reply)
            except OSError:
                pass

    def close(self):
        self.thread.join(5)
        self.sock.close()


@pytest.fixture
def fake_node():
    nodes = []

    def make(reply=None):
        node = _FakeNode(reply)
        nodes.append(node)
        return node

    yield make
    for node in nodes:
        node.close()


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _manager(**overrides):
    settings = dict(node_unresponsive_timeout_ms=2000, poll_interval=0.01)
    settings.update(overrides)
    config = ManagerConfig(**settings)
    state = ClusterState(unresponsive_timeout_ms=config.node_unresponsive_timeout_ms)
    return Manager(config, state)


def test_config_defaults_match_service_settings():
    config = ManagerConfig()
    assert config.listen_port == 5000
    assert config.heartbeat_ping_interval_sec == 2
    assert config.node_unresponsive_timeout_ms == 10000
    assert config.log_file_name == "manager.log"


def test_parse_port_accepts_number():
    assert parse_port("6001", 5000) == 6001


def test_parse_port_falls_back_to_default():
    assert parse_port("abc", 5000) == 5000


def test_handle_client_queues_each_line():
    manager = _manager()
    ours, theirs = socket.socketpair()
    with theirs:
        theirs.sendall(b"Task_1:Workload_1\nTask_2:Workload_2\n")
        theirs.shutdown(socket.SHUT_WR)
        added = manager.handle_client(ours)
    assert added == ["Task_1:Workload_1", "Task_2:Workload_2"]
    assert list(manager.state.queue) == added
    assert manager.state.tasks["Task_2:Workload_2"].status is TaskStatus.QUEUED


def test_handle_node_registers_updates_and_cleans_up():
    manager = _manager()
    ours, theirs = socket.socketpair()
    worker = threading.Thread(
        target=manager.handle_node, args=(ours, ("127.0.0.1", 40000)), daemon=True
    )
    worker.start()
    theirs.sendall(b"REGISTER n1 6000\n")
    assert _wait_for(lambda: "n1" in manager.state.nodes)
    node = manager.state.nodes["n1"]
    assert (node.ip, node.port) == ("127.0.0.1", 6000)

    theirs.sendall(b"CPU_USAGE 12.5\nMEM_USAGE 40\n")
    assert _wait_for(lambda: manager.state.nodes["n1"].mem_usage == 40.0)
    assert manager.state.nodes["n1"].cpu_usage == 12.5

    theirs.close()
    worker.join(5)
    assert not worker.is_alive()
    assert "n1" not in manager.state.nodes


def test_handle_node_ignores_bad_usage_report():
    manager = _manager()
    ours, theirs = socket.socketpair()
    worker = threading.Thread(
        target=manager.handle_node, args=(ours, ("127.0.0.1", 40000)), daemon=True
    )
    worker.start()
    theirs.sendall(b"REGISTER n1 6000\n")
    assert _wait_for(lambda: "n1" in manager.state.nodes)
    theirs.sendall(b"CPU_USAGE abc\n")
    theirs.sendall(b"CPU_USAGE 7\n")
    assert _wait_for(lambda: manager.state.nodes["n1"].cpu_usage == 7.0)
    theirs.close()
    worker.join(5)
    assert "n1" not in manager.state.nodes


def test_handle_node_requeues_tasks_of_departed_node():
    manager = _manager()
    manager.state.submit("Task_1:Workload_1")
    ours, theirs = socket.socketpair()
    worker = threading.Thread(
        target=manager.handle_node, args=(ours, ("127.0.0.1", 40000)), daemon=True
    )
    worker.start()
    theirs.sendall(b"REGISTER n1 6000\n")
    assert _wait_for(lambda: "n1" in manager.state.nodes)
    manager.state.mark_assigned("Task_1:Workload_1", "n1")
    theirs.close()
    worker.join(5)
    entry = manager.state.tasks["Task_1:Workload_1"]
    assert entry.status is TaskStatus.QUEUED
    assert entry.requeued_count == 1
    assert list(manager.state.queue) == ["Task_1:Workload_1"]


def test_handle_node_rejects_unknown_command():
    manager = _manager()
    ours, theirs = socket.socketpair()
    with theirs:
        theirs.sendall(b"HELLO n1 6000\n")
        manager.handle_node(ours, ("127.0.0.1", 40000))
        theirs.settimeout(5)
        assert theirs.recv(16) == b""
    assert manager.state.nodes == {}


def test_heartbeat_ping_pong_marks_node_alive(fake_node):
    manager = _manager()
    server = fake_node(b"PONG\n")
    node = manager.state.register_node("n1", "127.0.0.1", server.port)
    manager.state.mark_unavailable("n1")
    assert manager.send_heartbeat_ping(node) is True
    server.close()
    assert server.received == [b"PING\n"]
    assert manager.state.nodes["n1"].available is True


def test_heartbeat_unexpected_reply_marks_unavailable(fake_node):
    manager = _manager()
    server = fake_node(b"NOPE\n")
    node = manager.state.register_node("n1", "127.0.0.1", server.port)
    assert manager.send_heartbeat_ping(node) is False
    assert manager.state.nodes["n1"].available is False


def test_heartbeat_connect_failure_marks_unavailable():
    manager = _manager()
    node = manager.state.register_node("n1", "127.0.0.1", _free_port())
    assert manager.send_heartbeat_ping(node) is False
    assert manager.state.nodes["n1"].available is False


def test_check_heartbeats_flags_silent_node():
    now = [0.0]
    state = ClusterState(unresponsive_timeout_ms=1000, clock=lambda: now[0])
    manager = Manager(ManagerConfig(node_unresponsive_timeout_ms=1000), state)
    state.register_node("n1", "127.0.0.1", _free_port())
    now[0] = 5.0
    assert manager.check_heartbeats() == []
    assert state.nodes["n1"].available is False


def test_check_heartbeats_pings_responsive_node(fake_node):
    now = [0.0]
    state = ClusterState(unresponsive_timeout_ms=1000, clock=lambda: now[0])
    manager = Manager(ManagerConfig(node_unresponsive_timeout_ms=1000), state)
    server = fake_node(b"PONG\n")
    state.register_node("n1", "127.0.0.1", server.port)
    now[0] = 0.5
    pings = manager.check_heartbeats()
    assert len(pings) == 1
    for ping in pings:
        ping.join(5)
    assert state.nodes["n1"].last_heartbeat_pong == 0.5
    assert state.nodes["n1"].available is True


def test_assign_once_sends_task_to_least_loaded_node(fake_node):
    manager = _manager()
    busy = fake_node()
    idle = fake_node()
    manager.state.register_node("busy", "127.0.0.1", busy.port)
    manager.state.register_node("idle", "127.0.0.1", idle.port)
    manager.state.handle_node_line("idle", "CPU_USAGE 10")
    manager.state.submit("Task_1:Workload_1")

    assert manager.assign_once() == "Task_1:Workload_1"
    idle.close()
    assert idle.received == [b"Task_1:Workload_1"]
    entry = manager.state.tasks["Task_1:Workload_1"]
    assert entry.status is TaskStatus.ASSIGNED
    assert entry.assigned_node == "idle"
    assert list(manager.state.queue) == []


def test_assign_once_without_nodes_keeps_task_queued():
    manager = _manager()
    manager.state.submit("Task_1:Workload_1")
    assert manager.assign_once() is None
    assert list(manager.state.queue) == ["Task_1:Workload_1"]


def test_assign_once_with_empty_queue_does_nothing():
    manager = _manager()
    assert manager.assign_once() is None
    assert manager.state.tasks == {}


def test_assign_once_marks_unreachable_node_unavailable():
    manager = _manager()
    manager.state.register_node("n1", "127.0.0.1", _free_port())
    manager.state.submit("Task_1:Workload_1")
    assert manager.assign_once() is None
    assert manager.state.nodes["n1"].available is False
    assert manager.state.tasks["Task_1:Workload_1"].status is TaskStatus.QUEUED


def test_broadcast_shutdown_reaches_nodes(fake_node):
    manager = _manager()
    server = fake_node()
    manager.state.register_node("n1", "127.0.0.1", server.port)
    manager.state.register_node("gone", "127.0.0.1", _free_port())
    assert manager.broadcast_shutdown() == ["n1"]
    server.close()
    assert server.received == [b"SHUTDOWN"]


def test_serve_accepts_client_tasks_and_shuts_down():
    manager = _manager(
        host="127.0.0.1",
        listen_port=0,
        heartbeat_ping_interval_sec=0.05,
        assign_interval=0.02,
        retry_delay=0.02,
        accept_timeout=0.05,
    )
    runner = threading.Thread(target=manager.serve, daemon=True)
    runner.start()
    assert manager.ready.wait(5)
    with socket.create_connection(manager.address, timeout=5) as sock:
        sock.sendall(b"Task_1:Workload_1\n")
    assert _wait_for(lambda: "Task_1:Workload_1" in manager.state.tasks)
    manager.shutdown()
    runner.join(5)
    assert not runner.is_alive()
    assert manager.running is False