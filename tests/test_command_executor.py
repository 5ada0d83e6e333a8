import threading
import time
import unittest
from unittest.mock import MagicMock

from toposentry.common.command_executor import (
    CANCELLED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    CancellationToken,
    CollectionCancelledError,
    ExecutionError,
    GraphCollectionError,
    LocalCommandExecutor,
    SSHCommandExecutor,
)


class TestLocalCommandExecutor(unittest.TestCase):
    def setUp(self):
        self.executor = LocalCommandExecutor()

    def test_captures_stdout(self):
        self.assertEqual(self.executor.execute("echo hello | tr a-z A-Z"), "HELLO\n")

    def test_failure_carries_exit_code_and_stderr(self):
        with self.assertRaises(ExecutionError) as ctx:
            self.executor.execute("echo broken >&2; exit 3")
        self.assertEqual(ctx.exception.code, 3)
        self.assertEqual(ctx.exception.message, "broken")

    def test_timeout(self):
        start = time.monotonic()
        with self.assertRaises(ExecutionError) as ctx:
            self.executor.execute("sleep 5", timeout=0.2)
        self.assertEqual(ctx.exception.code, TIMEOUT_EXIT_CODE)
        self.assertLess(time.monotonic() - start, 3)

    def test_cancel_kills_running_command(self):
        token = CancellationToken()
        threading.Timer(0.1, token.cancel).start()

        start = time.monotonic()
        with self.assertRaises(ExecutionError) as ctx:
            self.executor.execute("sleep 3 | cat", cancel_token=token)
        self.assertEqual(ctx.exception.code, CANCELLED_EXIT_CODE)
        self.assertLess(time.monotonic() - start, 2)


class ScriptedChannel:
    """Stands in for a paramiko channel delivering canned chunks"""

    def __init__(self, stdout=(), stderr=(), exit_code=0, finished=True, stdout_after_stderr=False):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.exit_code = exit_code
        self.finished = finished
        self.stdout_after_stderr = stdout_after_stderr
        self.closed = False

    @property
    def eof_received(self):
        return self.finished and not self.stdout and not self.stderr

    def recv_ready(self):
        if self.stdout_after_stderr and self.stderr:
            return False
        return bool(self.stdout)

    def recv(self, nbytes):
        return self.stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, nbytes):
        return self.stderr.pop(0)

    def exit_status_ready(self):
        return self.finished

    def recv_exit_status(self):
        return self.exit_code

    def close(self):
        self.closed = True


def make_ssh_client(channel, active=True):
    client = MagicMock()
    client.get_transport.return_value.is_active.return_value = active

    stdout_file = MagicMock()
    stdout_file.channel = channel
    client.exec_command.return_value = (MagicMock(), stdout_file, MagicMock())
    return client


class TestSSHCommandExecutor(unittest.TestCase):
    def test_returns_stdout(self):
        client = make_ssh_client(ScriptedChannel(stdout=[b"act", b"ive\n"]))
        executor = SSHCommandExecutor(client, command_timeout=12)

        self.assertEqual(executor.execute("systemctl is-active nginx"), "active\n")
        client.exec_command.assert_called_once_with("systemctl is-active nginx", timeout=12)

    def test_non_zero_exit(self):
        channel = ScriptedChannel(stderr=[b"no such container\n"], exit_code=1)
        executor = SSHCommandExecutor(make_ssh_client(channel))

        with self.assertRaises(ExecutionError) as ctx:
            executor.execute("docker port ghost", timeout=3)
        self.assertEqual(ctx.exception.code, 1)
        self.assertEqual(ctx.exception.message, "no such container")

    def test_stderr_is_read_while_stdout_waits(self):
        channel = ScriptedChannel(
            stdout=[b"80/tcp -> 0.0.0.0:8080\n"],
            stderr=[b"warning\n"] * 50,
            stdout_after_stderr=True
        )
        executor = SSHCommandExecutor(make_ssh_client(channel))

        self.assertEqual(executor.execute("docker port web", timeout=2), "80/tcp -> 0.0.0.0:8080\n")

    def test_timeout(self):
        channel = ScriptedChannel(finished=False)
        executor = SSHCommandExecutor(make_ssh_client(channel))

        with self.assertRaises(ExecutionError) as ctx:
            executor.execute("docker ps", timeout=0.2)
        self.assertEqual(ctx.exception.code, TIMEOUT_EXIT_CODE)
        self.assertTrue(channel.closed)

    def test_cancel_closes_running_channel(self):
        channel = ScriptedChannel(finished=False)
        executor = SSHCommandExecutor(make_ssh_client(channel))
        token = CancellationToken()
        threading.Timer(0.1, token.cancel).start()

        with self.assertRaises(ExecutionError) as ctx:
            executor.execute("docker ps", timeout=5, cancel_token=token)
        self.assertEqual(ctx.exception.code, CANCELLED_EXIT_CODE)
        self.assertTrue(channel.closed)

    def test_inactive_session(self):
        client = make_ssh_client(ScriptedChannel(), active=False)
        executor = SSHCommandExecutor(client)

        self.assertFalse(executor.is_connected())
        with self.assertRaises(ExecutionError):
            executor.execute("docker ps")
        client.exec_command.assert_not_called()


class TestCancellationToken(unittest.TestCase):
    def test_no_deadline(self):
        token = CancellationToken()
        self.assertIsNone(token.remaining())
        token.check()

    def test_cancel(self):
        token = CancellationToken()
        token.cancel()

        self.assertTrue(token.cancelled)
        with self.assertRaises(CollectionCancelledError) as ctx:
            token.check()
        self.assertEqual(str(ctx.exception), "could not build graph: collection cancelled")

    def test_deadline(self):
        token = CancellationToken(timeout=0.05)
        self.assertLessEqual(token.remaining(), 0.05)

        time.sleep(0.1)

        self.assertTrue(token.expired)
        self.assertEqual(token.remaining(), 0.0)
        with self.assertRaises(GraphCollectionError):
            token.check()


if __name__ == "__main__":
    unittest.main()
