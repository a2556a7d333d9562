"""
SSH command execution and file transfer against build servers.

Paramiko is blocking, so every public coroutine hands its work to a worker
thread. Each call opens its own connection; nothing is shared between tasks.
"""

from __future__ import annotations

import asyncio
import io
import shlex
import stat
import threading
import typing as t
from dataclasses import dataclass
from pathlib import Path

import paramiko

from ._types import Command, LineSink
from .errors import ArtifactNotFound, RemoteScriptError, TransportError

SSH_USER = "root"
CONNECT_TIMEOUT = 5.0
PROBE_COMMAND = "echo 'SSH ready'"


def shell_command(command: Command) -> str:
    """Render a command for ``bash -lc`` with strict error handling."""
    if isinstance(command, str):
        script = f"set -euo pipefail\n{command}"
    else:
        script = " ".join(shlex.quote(str(part)) for part in command)
    return f"bash -lc {shlex.quote(script)}"


@dataclass(slots=True, frozen=True)
class ExecResult:
    output: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor:
    def __init__(
        self,
        private_key: Path | None = None,
        *,
        user: str = SSH_USER,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self._private_key = private_key.expanduser() if private_key else None
        self._user = user
        self._connect_timeout = connect_timeout
        self._clients: set[paramiko.SSHClient] = set()
        self._lock = threading.Lock()

    def _connect(self, address: str, *, timeout: float | None = None) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # fresh servers have unknown host keys
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                address,
                username=self._user,
                key_filename=str(self._private_key) if self._private_key else None,
                timeout=timeout or self._connect_timeout,
                banner_timeout=timeout or self._connect_timeout,
                auth_timeout=timeout or self._connect_timeout,
            )
        except (paramiko.SSHException, OSError):
            client.close()
            raise
        with self._lock:
            self._clients.add(client)
        return client

    def _disconnect(self, client: paramiko.SSHClient) -> None:
        with self._lock:
            self._clients.discard(client)
        client.close()

    def close(self) -> None:
        """Close every open connection, unblocking worker threads still reading."""
        with self._lock:
            clients, self._clients = list(self._clients), set()
        for client in clients:
            client.close()

    # -------------------- exec -------------------- #

    def _exec_sync(self, address: str, command: str, sink: LineSink | None) -> ExecResult:
        try:
            client = self._connect(address)
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(f"ssh root@{address} failed: {exc}") from exc
        try:
            transport = client.get_transport()
            if transport is None:
                raise TransportError(f"ssh root@{address}: no transport")
            transport.set_keepalive(30)
            channel = transport.open_session()
            channel.set_combine_stderr(True)
            channel.exec_command(command)
            lines: list[str] = []
            with channel.makefile("r") as stream:
                for raw_line in stream:
                    line = raw_line.decode("utf-8", "replace") if isinstance(raw_line, bytes) else raw_line
                    lines.append(line)
                    if sink is not None:
                        sink(line.rstrip("\r\n"))
            exit_code = channel.recv_exit_status()
            return ExecResult(output="".join(lines), exit_code=exit_code)
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(f"ssh root@{address} lost connection: {exc}") from exc
        finally:
            self._disconnect(client)

    async def exec(
        self,
        address: str,
        command: Command,
        *,
        sink: LineSink | None = None,
    ) -> ExecResult:
        return await asyncio.to_thread(self._exec_sync, address, shell_command(command), sink)

    async def run_script(
        self,
        address: str,
        name: str,
        body: str,
        *,
        sink: LineSink | None = None,
        arch: str | None = None,
    ) -> ExecResult:
        """Upload ``body`` as /tmp/<name>.sh and execute it; non-zero exit raises."""
        remote_path = f"/tmp/{name}.sh"
        await asyncio.to_thread(self._put_bytes, address, body.encode("utf-8"), remote_path, 0o755)
        result = await self.exec(address, remote_path, sink=sink)
        if not result.ok:
            error_parts = [f"{name} failed with exit code {result.exit_code}"]
            tail = "\n".join(result.output.rstrip().splitlines()[-20:])
            if tail:
                error_parts.append(f"output (tail):\n{tail}")
            raise RemoteScriptError(
                "\n".join(error_parts),
                exit_code=result.exit_code,
                output=result.output,
                arch=arch,
                phase=name,
            )
        return result

    # -------------------- probe -------------------- #

    def _probe_sync(self, address: str) -> bool:
        try:
            client = self._connect(address)
        except (paramiko.SSHException, OSError):
            return False
        try:
            _, stdout, _ = client.exec_command(PROBE_COMMAND, timeout=self._connect_timeout)
            return stdout.channel.recv_exit_status() == 0
        except (paramiko.SSHException, OSError):
            return False
        finally:
            self._disconnect(client)

    async def probe(self, address: str) -> bool:
        return await asyncio.to_thread(self._probe_sync, address)

    # -------------------- file transfer -------------------- #

    def _sftp_call(self, address: str, func: t.Callable[[paramiko.SFTPClient], None]) -> None:
        try:
            client = self._connect(address)
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(f"sftp root@{address} failed: {exc}") from exc
        try:
            with client.open_sftp() as sftp:
                func(sftp)
        except paramiko.SSHException as exc:
            raise TransportError(f"sftp root@{address} failed: {exc}") from exc
        finally:
            self._disconnect(client)

    def _put_bytes(self, address: str, data: bytes, remote_path: str, mode: int | None) -> None:
        def _put(sftp: paramiko.SFTPClient) -> None:
            sftp.putfo(io.BytesIO(data), remote_path)
            if mode is not None:
                sftp.chmod(remote_path, mode)

        try:
            self._sftp_call(address, _put)
        except OSError as exc:
            raise TransportError(f"upload to {address}:{remote_path} failed: {exc}") from exc

    def _upload_sync(self, address: str, local_path: Path, remote_path: str, mode: int | None) -> None:
        def _put(sftp: paramiko.SFTPClient) -> None:
            sftp.put(str(local_path), remote_path)
            if mode is not None:
                sftp.chmod(remote_path, mode)

        try:
            self._sftp_call(address, _put)
        except OSError as exc:
            raise TransportError(f"upload of {local_path} to {address}:{remote_path} failed: {exc}") from exc

    async def upload(
        self,
        address: str,
        local_path: Path,
        remote_path: str,
        *,
        mode: int | None = None,
    ) -> None:
        await asyncio.to_thread(self._upload_sync, address, local_path.expanduser(), remote_path, mode)

    def _download_sync(self, address: str, remote_path: str, local_path: Path) -> None:
        def _get(sftp: paramiko.SFTPClient) -> None:
            try:
                attrs = sftp.stat(remote_path)
            except FileNotFoundError:
                # paramiko raises IOError(errno.ENOENT, ...), which is a FileNotFoundError
                raise ArtifactNotFound(f"{address}:{remote_path} does not exist") from None
            if attrs.st_mode is not None and not stat.S_ISREG(attrs.st_mode):
                raise ArtifactNotFound(f"{address}:{remote_path} is not a regular file")
            local_path.parent.mkdir(parents=True, exist_ok=True)
            sftp.get(remote_path, str(local_path))

        try:
            self._sftp_call(address, _get)
        except OSError as exc:
            raise TransportError(f"download of {address}:{remote_path} failed: {exc}") from exc

    async def download(self, address: str, remote_path: str, local_path: Path) -> None:
        await asyncio.to_thread(self._download_sync, address, remote_path, local_path)
