import asyncio
import shlex
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

import paramiko

from smart_e2b.config import (
    BUFFER_SIZE, CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, SANDBOX_TTL_SECONDS, SSH_INTERPRETERS, SSH_SCRATCH_DIR, config
)
from smart_e2b.fs import SSHFiles
from smart_e2b.utils import log_error


@dataclass
class Logs:
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)


@dataclass
class ExecutionError:
    name: str
    value: str
    traceback: str = ""


@dataclass
class Execution:
    logs: Logs
    error: Optional[ExecutionError] = None
    results: List = field(default_factory=list)


def _chunks(text: str) -> List[str]:
    return text.splitlines(keepends=True)


class SSHSandbox:
    """A plain SSH host standing in for a cloud sandbox.

    Code is uploaded over SFTP and run with the interpreter for its
    language. The remote timeout is a lease: when it lapses without being
    renewed the connection is closed.
    """

    def __init__(self, sandbox_id: str):
        self.sandbox_id = sandbox_id
        self.client: Optional[paramiko.SSHClient] = None
        self.files = SSHFiles(self)
        self.lock = threading.Lock()
        self.lease_timer: Optional[threading.Timer] = None
        self.is_dead = False
        self.death_reason = ""

    @classmethod
    async def create(cls, timeout: int = SANDBOX_TTL_SECONDS) -> "SSHSandbox":
        sandbox = cls(f"ssh-{uuid.uuid4().hex[:12]}")
        await asyncio.to_thread(sandbox.connect)
        await sandbox.set_timeout(timeout)
        return sandbox

    def connect(self) -> None:
        self.client = paramiko.SSHClient()
        if config.SSH_VERIFY_HOST_KEY:
            self.client.load_system_host_keys()
        else:
            self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": config.SSH_HOST,
            "port": config.SSH_PORT,
            "username": config.SSH_USER,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if config.SSH_PASSWORD:
            connect_kwargs["password"] = config.SSH_PASSWORD
        if config.SSH_KEY_PATH:
            connect_kwargs["key_filename"] = config.SSH_KEY_PATH
            if config.SSH_KEY_PASSPHRASE:
                connect_kwargs["passphrase"] = config.SSH_KEY_PASSPHRASE

        try:
            self.client.connect(**connect_kwargs)
        except Exception as exc:
            self.close(reason=f"connect failed: {exc}")
            raise ConnectionError(f"SSH connect to {config.SSH_HOST}:{config.SSH_PORT} failed: {exc}") from exc

        transport = self.client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)

    def _mark_dead(self, reason: str) -> None:
        if self.is_dead:
            return
        self.is_dead = True
        self.death_reason = reason

    def is_alive(self) -> bool:
        if self.is_dead or not self.client:
            return False
        transport = self.client.get_transport()
        return bool(transport and transport.is_active())

    def open_sftp(self) -> paramiko.SFTPClient:
        if not self.is_alive():
            raise ConnectionError(f"sandbox {self.sandbox_id} is closed: {self.death_reason or 'not connected'}")
        return self.client.open_sftp()

    # ----- lease -----

    async def set_timeout(self, timeout: int) -> None:
        if self.is_dead:
            raise ConnectionError(f"sandbox {self.sandbox_id} is closed: {self.death_reason}")
        with self.lock:
            if self.lease_timer is not None:
                self.lease_timer.cancel()
            self.lease_timer = threading.Timer(timeout, self._lease_expired)
            self.lease_timer.daemon = True
            self.lease_timer.start()

    def _lease_expired(self) -> None:
        log_error(f"SSH sandbox {self.sandbox_id} lease expired, closing connection")
        self.close(reason="lease expired")

    async def kill(self) -> None:
        await asyncio.to_thread(self.close, "killed")

    def close(self, reason: str = "closed") -> None:
        with self.lock:
            if self.lease_timer is not None:
                self.lease_timer.cancel()
                self.lease_timer = None
        self._mark_dead(reason)
        if self.client:
            try:
                self.client.close()
            except Exception as exc:
                log_error(f"SSH sandbox {self.sandbox_id} close error: {exc}")
        self.client = None

    # ----- execution -----

    async def run_code(self, code: str, language: Optional[str] = None) -> Execution:
        return await asyncio.to_thread(self._run_code, code, language or "python")

    def _run_code(self, code: str, language: str) -> Execution:
        interpreter = SSH_INTERPRETERS.get(language)
        if interpreter is None:
            raise ValueError(f"unsupported language for SSH sandbox: {language}")
        if not self.is_alive():
            raise ConnectionError(f"sandbox {self.sandbox_id} is closed: {self.death_reason or 'not connected'}")

        suffix = ".py" if language == "python" else ".js"
        script = f"{SSH_SCRATCH_DIR}/{self.sandbox_id}-{uuid.uuid4().hex[:8]}{suffix}"
        self._exec(f"mkdir -p {shlex.quote(SSH_SCRATCH_DIR)}")
        self.files.write_sync(script, code)

        quoted = shlex.quote(script)
        status, out, err = self._exec(f"{interpreter} {quoted}; status=$?; rm -f {quoted}; exit $status")
        error = None
        if status != 0:
            error = ExecutionError(
                name="ExitStatus",
                value=f"{interpreter} exited with status {status}",
                traceback=err,
            )
        return Execution(logs=Logs(stdout=_chunks(out), stderr=_chunks(err)), error=error)

    def _exec(self, command: str):
        _, stdout, _ = self.client.exec_command(command)
        channel = stdout.channel
        out = bytearray()
        err = bytearray()
        # Drain both streams together; an unread stderr fills the window and stalls the remote side.
        while True:
            has_progress = False
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    out += data
                    has_progress = True
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if data:
                    err += data
                    has_progress = True
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if channel.closed and not has_progress:
                break
            if not has_progress:
                time.sleep(0.02)
        status = channel.recv_exit_status()
        return status, out.decode("utf-8", errors="replace"), err.decode("utf-8", errors="replace")
