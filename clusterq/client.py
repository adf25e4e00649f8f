"""Command-line client that submits numbered tasks to the manager."""

from __future__ import annotations

import os
import socket
import sys
import time
from collections.abc import Iterator, Sequence


def task_messages(count: int) -> Iterator[str]:
    """Yield the task strings ``Task_<i>:Workload_<i>`` for i in 1..count."""
    for i in range(1, count + 1):
        yield f"Task_{i}:Workload_{i}"


def send_tasks(host: str, port: int, count: int, delay: float = 0.1) -> list[str]:
    """Send each task over its own connection and return those that were sent."""
    sent = []
    for number, task in enumerate(task_messages(count), start=1):
        try:
            sock = socket.create_connection((host, port))
        except OSError:
            print(f"Connection to manager failed for Task_{number}", file=sys.stderr)
            continue
        with sock:
            sock.sendall(task.encode())
        print(f"[CLIENT] Sent: {task}", flush=True)
        sent.append(task)
        time.sleep(delay)
    return sent


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point: ``<manager_ip> <manager_port> <number_of_tasks>``."""
    args = sys.argv[1:] if argv is None else list(argv)
    usage = (
        f"Usage: {os.path.basename(sys.argv[0]) or 'client'} "
        "<manager_ip> <manager_port> <number_of_tasks>"
    )
    if len(args) != 3:
        print(usage, file=sys.stderr)
        return 1
    try:
        port = int(args[1])
        count = int(args[2])
    except ValueError:
        print(usage, file=sys.stderr)
        return 1
    send_tasks(args[0], port, count)
    return 0


if __name__ == "__main__":
    sys.exit(main())