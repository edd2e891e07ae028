from __future__ import annotations

import asyncio
import io
import logging
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import paramiko

from vtb.exceptions import ConnectionLost

_TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError)


@dataclass(frozen=True, slots=True)
class SSHEndpoint:
    host: str
    port: int
    user: str
    private_key: Path


class RemoteShell:
    """
    One authenticated SSH connection to a guest.

    paramiko is blocking; every operation runs in a worker thread. Transport
    problems of any kind surface as ``ConnectionLost``.
    """

    def __init__(
        self,
        endpoint: SSHEndpoint,
        *,
        connect_timeout: float = 10.0,
        keepalive_seconds: int = 5,
        poll_seconds: float = 1.0,
        operation_timeout: float = 60.0,
    ) -> None:
        self.endpoint = endpoint
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self.keepalive_seconds = keepalive_seconds
        self.poll_seconds = poll_seconds
        self._client: paramiko.SSHClient | None = None
        self._logger = logging.getLogger(__name__)

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _connect(self) -> None:
        client = paramiko.SSHClient()
        # Guests are ephemeral and regenerate host keys.
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.endpoint.host,
                port=self.endpoint.port,
                username=self.endpoint.user,
                key_filename=str(self.endpoint.private_key),
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except _TRANSPORT_ERRORS as e:
            client.close()
            raise ConnectionLost(f"Could not connect to {self.endpoint.host}:{self.endpoint.port}: {e}") from e
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(self.keepalive_seconds)
        self._client = client

    async def connect(self) -> None:
        await asyncio.to_thread(self._connect)

    def _require_client(self) -> paramiko.SSHClient:
        if not self.connected or self._client is None:
            raise ConnectionLost("Remote shell is not connected")
        return self._client

    def _open_sftp(self, client: paramiko.SSHClient) -> paramiko.SFTPClient:
        """SFTP session whose channel open and every read are bounded."""
        transport = client.get_transport()
        if transport is None:
            raise ConnectionLost("Remote shell transport is gone")
        channel = transport.open_session(timeout=self.connect_timeout)
        channel.settimeout(self.operation_timeout)
        try:
            channel.invoke_subsystem("sftp")
            return paramiko.SFTPClient(channel)
        except BaseException:
            channel.close()
            raise

    def _exec(
        self,
        command: str,
        timeout: float | None,
        on_output: Callable[[str], None] | None,
    ) -> int:
        client = self._require_client()
        deadline = None if timeout is None else time.monotonic() + timeout
        pending = b""
        try:
            transport = client.get_transport()
            if transport is None:
                raise ConnectionLost("Remote shell transport is gone")
            channel = transport.open_session(timeout=self.connect_timeout)
            channel.set_combine_stderr(True)
            channel.settimeout(self.poll_seconds)
            channel.exec_command(command)
            channel.shutdown_write()
            while True:
                try:
                    chunk = channel.recv(32768)
                except socket.timeout:
                    if not transport.is_active():
                        raise ConnectionLost("Connection dropped while the command was running")
                    if deadline is not None and time.monotonic() > deadline:
                        channel.close()
                        raise TimeoutError(f"Command did not finish within {timeout:g}s")
                    continue
                if not chunk:
                    break
                pending += chunk
                *lines, pending = pending.split(b"\n")
                if on_output is not None:
                    for line in lines:
                        on_output(line.decode(errors="replace"))
            if pending and on_output is not None:
                on_output(pending.decode(errors="replace"))
            status = channel.recv_exit_status()
        except TimeoutError:
            raise
        except _TRANSPORT_ERRORS as e:
            raise ConnectionLost(f"Connection dropped while the command was running: {e}") from e
        if status == -1:
            # The channel closed without ever reporting an exit status.
            raise ConnectionLost("Connection closed before the command reported an exit status")
        return status

    async def exec(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> int:
        """Run ``command`` and return its exit status."""
        return await asyncio.to_thread(self._exec, command, timeout, on_output)

    def _upload(self, source: bytes | Path, remote_path: str, mode: int) -> None:
        client = self._require_client()
        try:
            with self._open_sftp(client) as sftp:
                if isinstance(source, Path):
                    sftp.put(str(source), remote_path)
                else:
                    sftp.putfo(io.BytesIO(source), remote_path)
                sftp.chmod(remote_path, mode)
        except _TRANSPORT_ERRORS as e:
            raise ConnectionLost(f"Upload of {remote_path} failed: {e}") from e

    async def upload(self, source: bytes | Path, remote_path: str, *, mode: int = 0o644) -> None:
        await asyncio.to_thread(self._upload, source, remote_path, mode)

    def _read_text(self, remote_path: str) -> str | None:
        client = self._require_client()
        try:
            with self._open_sftp(client) as sftp:
                with sftp.open(remote_path, "r") as handle:
                    return handle.read().decode(errors="replace")
        except FileNotFoundError:
            return None
        except _TRANSPORT_ERRORS as e:
            raise ConnectionLost(f"Reading {remote_path} failed: {e}") from e

    async def read_text(self, remote_path: str) -> str | None:
        """Return the file's content, or ``None`` when it does not exist."""
        return await asyncio.to_thread(self._read_text, remote_path)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await asyncio.to_thread(client.close)


def default_shell_factory(
    *,
    connect_timeout: float,
    operation_timeout: float = 60.0,
) -> Callable[[SSHEndpoint], RemoteShell]:
    def factory(endpoint: SSHEndpoint) -> RemoteShell:
        return RemoteShell(endpoint, connect_timeout=connect_timeout, operation_timeout=operation_timeout)

    return factory
