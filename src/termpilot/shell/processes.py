"""Background processes started by the agent (dev servers, watchers)."""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field

from .base import sanitize_command
from .bash_adapter import default_executable

LOGGER = logging.getLogger(__name__)

INITIAL_OUTPUT_PREVIEW = 1500


@dataclass(slots=True)
class ManagedProcess:
    pid: int
    command: str
    process: subprocess.Popen[bytes]
    started_at: float = field(default_factory=time.monotonic)
    _chunks: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def output(self) -> str:
        with self._lock:
            return "".join(self._chunks)

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    def append(self, text: str) -> None:
        with self._lock:
            self._chunks.append(text)


@dataclass(frozen=True, slots=True)
class BackgroundStart:
    pid: int
    initial_output: str
    running: bool
    matched: bool
    returncode: int | None = None


class ProcessManager:
    """Owns every background process started during a session."""

    def __init__(self, executable: str | None = None) -> None:
        self.executable = executable or default_executable(fallback_to_sh=True)
        self._processes: dict[int, ManagedProcess] = {}

    def start(
        self,
        command: str,
        *,
        cwd: str | None = None,
        wait_for: str | None = None,
        timeout: float = 5.0,
    ) -> BackgroundStart:
        """Start ``command`` and wait up to ``timeout`` for ``wait_for`` or exit.

        When the timeout elapses the process keeps running in the background.
        """
        LOGGER.info(
            "background_process_start",
            extra={"command": sanitize_command(command), "cwd": cwd, "timeout": timeout},
        )
        process = subprocess.Popen(  # noqa: S603
            [self.executable, "-c", command],
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )
        managed = ManagedProcess(pid=process.pid, command=command, process=process)
        self._processes[process.pid] = managed
        reader = threading.Thread(target=_pump_output, args=(managed,), daemon=True)
        reader.start()

        deadline = time.monotonic() + timeout
        matched = False
        while time.monotonic() < deadline:
            if wait_for and wait_for in managed.output:
                matched = True
                break
            if not managed.running:
                reader.join(timeout=0.5)
                break
            time.sleep(0.05)

        return BackgroundStart(
            pid=process.pid,
            initial_output=managed.output[:INITIAL_OUTPUT_PREVIEW],
            running=managed.running,
            matched=matched,
            returncode=process.poll(),
        )

    def get(self, pid: int) -> ManagedProcess | None:
        return self._processes.get(pid)

    def list(self) -> list[ManagedProcess]:
        return sorted(self._processes.values(), key=lambda item: item.pid)

    def stop(self, pid: int) -> bool:
        managed = self._processes.pop(pid, None)
        if managed is None:
            return False
        if managed.running:
            try:
                os.killpg(managed.process.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                managed.process.wait(timeout=3)
            except subprocess.TimeoutExpired:
                managed.process.kill()
                managed.process.wait(timeout=3)
        LOGGER.info("background_process_stopped", extra={"pid": pid})
        return True

    def stop_all(self) -> int:
        return sum(1 for pid in list(self._processes) if self.stop(pid))


def pid_is_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.5)
        return sock.connect_ex((host, port)) == 0


def _pump_output(managed: ManagedProcess) -> None:
    stream = managed.process.stdout
    if stream is None:
        return
    for raw in iter(stream.readline, b""):
        managed.append(raw.decode("utf-8", errors="replace"))
    stream.close()
