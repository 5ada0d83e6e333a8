#!/usr/bin/env python3
"""
Command Executor for TopoSentry

This module provides the command channel used by the infrastructure graph
manager to probe the managed host. Commands are plain POSIX shell strings;
an executor returns captured standard output or raises ExecutionError.
"""

import os
import time
import signal
import socket
import logging
import threading
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

import paramiko

logger = logging.getLogger("CommandExecutor")

# Exit code reported when a command exceeds its timeout (same as timeout(1))
TIMEOUT_EXIT_CODE = 124

# Exit code reported when a running command is aborted through its token
CANCELLED_EXIT_CODE = 130

# Seconds between cancellation checks while a command runs
POLL_INTERVAL = 0.05

RECV_BUFFER_SIZE = 32768


class ExecutionError(Exception):
    """A command could not be executed or exited with a failure status"""

    def __init__(self, message: str, code: int = -1):
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return f"{self.message} (code {self.code})"


class GraphCollectionError(Exception):
    """Fatal failure of a collection pass; no partial graph is returned"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def __str__(self) -> str:
        return f"could not build graph: {self.reason}"


class CollectionCancelledError(GraphCollectionError):
    """The pass was cancelled by the caller or ran past its deadline"""


class CancellationToken:
    """
    Caller-supplied cancellation for a collection pass.

    Combines an explicit cancel() with an optional pass-wide timeout. The
    manager calls check() before every remote command and clamps each
    command's own timeout to remaining().
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a deadline"""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self):
        """Raise CollectionCancelledError if the pass must stop"""
        if self.cancelled:
            raise CollectionCancelledError("collection cancelled")
        if self.expired:
            raise CollectionCancelledError("collection timed out")


class CommandExecutor(ABC):
    """Base class for command channels to the managed host"""

    @abstractmethod
    def execute(self, command: str, timeout: Optional[float] = None,
                cancel_token: Optional[CancellationToken] = None) -> str:
        """
        Run a shell command on the managed host

        Args:
            command: POSIX shell command string
            timeout: Seconds before the command is abandoned
            cancel_token: Token whose cancellation aborts the running command

        Returns:
            Captured standard output

        Raises:
            ExecutionError: if the command fails, times out or is cancelled
        """

    def is_connected(self) -> bool:
        return True

    def close(self):
        pass


def _deadline(timeout: Optional[float]) -> Optional[float]:
    return time.monotonic() + timeout if timeout is not None else None


def _past(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


class LocalCommandExecutor(CommandExecutor):
    """Runs commands on the local host through the system shell"""

    def execute(self, command: str, timeout: Optional[float] = None,
                cancel_token: Optional[CancellationToken] = None) -> str:
        logger.debug(f"Executing locally: {command}")
        try:
            # Own process group so a kill reaches every process of a pipeline
            process = subprocess.Popen(
                command,
                shell=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True
            )
        except OSError as e:
            raise ExecutionError(f"Failed to start command: {e}")

        deadline = _deadline(timeout)
        while True:
            try:
                stdout, stderr = process.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel_token is not None and cancel_token.cancelled:
                    self._kill(process)
                    raise ExecutionError(f"Command cancelled: {command}", CANCELLED_EXIT_CODE)
                if _past(deadline):
                    self._kill(process)
                    raise ExecutionError(f"Command timed out after {timeout}s: {command}", TIMEOUT_EXIT_CODE)

        if process.returncode != 0:
            message = stderr.strip() or f"Command exited with status {process.returncode}"
            raise ExecutionError(message, process.returncode)

        return stdout

    @staticmethod
    def _kill(process: subprocess.Popen):
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        process.communicate()


class SSHCommandExecutor(CommandExecutor):
    """
    Runs commands over an established paramiko SSH session.

    Connection lifecycle (authentication, reconnects) belongs to the caller;
    connect() is a thin helper for the command line entry point.
    """

    def __init__(self, client: paramiko.SSHClient, command_timeout: float = 30.0):
        self.client = client
        self.command_timeout = command_timeout

    @classmethod
    def connect(cls, host: str, port: int = 22, username: Optional[str] = None,
                key_file: Optional[str] = None, password: Optional[str] = None,
                timeout: float = 10.0) -> 'SSHCommandExecutor':
        """
        Open an SSH session and wrap it in an executor

        Raises:
            ExecutionError: if the session cannot be established
        """
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.WarningPolicy())

        try:
            client.connect(
                hostname=host,
                port=port,
                username=username,
                key_filename=key_file,
                password=password,
                timeout=timeout
            )
        except (paramiko.SSHException, socket.error) as e:
            client.close()
            raise ExecutionError(f"Failed to connect to {host}:{port}: {e}")

        logger.info(f"Connected to {host}:{port}")
        return cls(client, command_timeout=timeout)

    def is_connected(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def execute(self, command: str, timeout: Optional[float] = None,
                cancel_token: Optional[CancellationToken] = None) -> str:
        if not self.is_connected():
            raise ExecutionError("SSH session is not connected")

        timeout = timeout if timeout is not None else self.command_timeout
        logger.debug(f"Executing over SSH: {command}")

        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        deadline = _deadline(timeout)

        try:
            _, stdout, _ = self.client.exec_command(command, timeout=timeout)
            channel = stdout.channel

            # Both streams are drained while waiting; an unread stream can
            # exhaust the channel window and stall the remote command.
            while True:
                received = self._drain(channel, stdout_chunks, stderr_chunks)
                if channel.exit_status_ready() and (channel.eof_received or channel.closed):
                    self._drain(channel, stdout_chunks, stderr_chunks)
                    break
                if cancel_token is not None and cancel_token.cancelled:
                    channel.close()
                    raise ExecutionError(f"Command cancelled: {command}", CANCELLED_EXIT_CODE)
                if _past(deadline):
                    channel.close()
                    raise ExecutionError(f"Command timed out after {timeout}s: {command}", TIMEOUT_EXIT_CODE)
                if not received:
                    time.sleep(POLL_INTERVAL)

            exit_code = channel.recv_exit_status()
        except socket.timeout:
            raise ExecutionError(f"Command timed out after {timeout}s: {command}", TIMEOUT_EXIT_CODE)
        except paramiko.SSHException as e:
            raise ExecutionError(f"SSH error: {e}")

        stdout_data = b"".join(stdout_chunks).decode(errors='replace')
        stderr_data = b"".join(stderr_chunks).decode(errors='replace')

        if exit_code != 0:
            message = stderr_data.strip() or f"Command exited with status {exit_code}"
            raise ExecutionError(message, exit_code)

        return stdout_data

    @staticmethod
    def _drain(channel: paramiko.Channel, stdout_chunks: List[bytes], stderr_chunks: List[bytes]) -> bool:
        """Read whatever is buffered on either stream; True if anything arrived"""
        received = False
        while channel.recv_stderr_ready():
            stderr_chunks.append(channel.recv_stderr(RECV_BUFFER_SIZE))
            received = True
        while channel.recv_ready():
            stdout_chunks.append(channel.recv(RECV_BUFFER_SIZE))
            received = True
        return received

    def close(self):
        self.client.close()
