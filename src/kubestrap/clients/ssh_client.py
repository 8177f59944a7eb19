"""SSH client for running scripts on cluster nodes."""

import socket
import time
from pathlib import Path

import paramiko

from kubestrap.clients.aws_client import AWSClient
from kubestrap.core.exceptions import ProviderError, ProviderErrorKind, RemoteExecError, RemoteExecErrorKind
from kubestrap.core.models import CommandResult, Node
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)

# Scripts run as root through a non-interactive shell fed on stdin
REMOTE_SHELL = "sudo -n bash -s"

RECV_CHUNK = 32768
POLL_INTERVAL = 0.05


class SSHClient:
    """Paramiko wrapper that opens one connection per script.

    When an AWSClient is given, a fresh RSA key is generated for every
    connection and its public half pushed with EC2 Instance Connect; the
    key is valid for about a minute and never written to disk. Otherwise
    the static ``private_key_path`` is used.
    """

    def __init__(
        self,
        username: str = "ubuntu",
        private_key_path: str | None = None,
        aws_client: AWSClient | None = None,
        port: int = 22,
        connect_timeout: float = 10.0,
    ):
        """Initialize SSH client.

        Args:
            username: OS user to log in as
            private_key_path: Static private key (fallback when Instance Connect is not used)
            aws_client: Client used to push ephemeral keys (optional)
            port: SSH port
            connect_timeout: TCP and banner timeout in seconds
        """
        if aws_client is None and private_key_path is None:
            raise ValueError("Either aws_client or private_key_path is required")
        self.username = username
        self.private_key_path = str(Path(private_key_path).expanduser()) if private_key_path else None
        self.aws_client = aws_client
        self.port = port
        self.connect_timeout = connect_timeout

    def _publish_key(self, aws_client: AWSClient, node: Node) -> paramiko.PKey:
        key = paramiko.RSAKey.generate(2048)
        aws_client.send_ssh_public_key(
            instance_id=node.physical_id,
            os_user=self.username,
            public_key=f"{key.get_name()} {key.get_base64()}",
        )
        return key

    def connect(self, node: Node) -> paramiko.SSHClient:
        """Open an authenticated connection to ``node``.

        Raises:
            RemoteExecError: CONNECT_FAILED if the node is unreachable or
                rejects the credential
            ProviderError: If publishing the key is denied
        """
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict = {
            "hostname": node.public_address,
            "username": self.username,
            "port": self.port,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "look_for_keys": False,
            "allow_agent": False,
        }
        try:
            if self.aws_client is not None:
                kwargs["pkey"] = self._publish_key(self.aws_client, node)
            else:
                kwargs["key_filename"] = self.private_key_path
            logger.debug("ssh_connecting", node=node.name, host=node.public_address)
            client.connect(**kwargs)
        except ProviderError as e:
            client.close()
            if e.kind == ProviderErrorKind.PERMISSION_DENIED:
                raise
            raise RemoteExecError(
                f"Could not publish SSH key to {node.name}: {e}",
                kind=RemoteExecErrorKind.CONNECT_FAILED,
                node=node.name,
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteExecError(
                f"SSH connection to {node.name} ({node.public_address}) failed: {e}",
                kind=RemoteExecErrorKind.CONNECT_FAILED,
                node=node.name,
            ) from e

        logger.debug("ssh_connected", node=node.name)
        return client

    def execute(
        self,
        client: paramiko.SSHClient,
        node: Node,
        script: str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``script`` over an open connection and capture its output.

        Raises:
            RemoteExecError: COMMAND_FAILED if the command times out or the
                channel drops mid-command
        """
        try:
            stdin, stdout, stderr = client.exec_command(REMOTE_SHELL, timeout=timeout)
            stdin.write(script)
            stdin.flush()
            stdin.channel.shutdown_write()
            out, err = _drain(stdout.channel, timeout)
            code = stdout.channel.recv_exit_status()
        except (socket.timeout, TimeoutError) as e:
            raise RemoteExecError(
                f"Command on {node.name} timed out after {timeout}s",
                kind=RemoteExecErrorKind.COMMAND_FAILED,
                node=node.name,
            ) from e
        except (paramiko.SSHException, OSError) as e:
            raise RemoteExecError(
                f"SSH channel to {node.name} failed mid-command: {e}",
                kind=RemoteExecErrorKind.COMMAND_FAILED,
                node=node.name,
            ) from e

        logger.debug("ssh_command_finished", node=node.name, exit_code=code)
        return CommandResult(exit_code=code, stdout=out, stderr=err)


def _drain(channel: paramiko.Channel, timeout: float | None) -> tuple[str, str]:
    """Read stdout and stderr side by side until the command exits.

    Reading one stream to the end first stalls once the other fills its
    window, so both are polled in the same loop.

    Raises:
        socket.timeout: If the command is still running after ``timeout``
    """
    out, err = bytearray(), bytearray()
    deadline = time.monotonic() + timeout if timeout is not None else None
    while True:
        idle = True
        if channel.recv_ready():
            out += channel.recv(RECV_CHUNK)
            idle = False
        if channel.recv_stderr_ready():
            err += channel.recv_stderr(RECV_CHUNK)
            idle = False
        if not idle:
            continue
        # Output always arrives before the exit status
        if channel.exit_status_ready():
            return out.decode(errors="replace"), err.decode(errors="replace")
        if deadline is not None and time.monotonic() > deadline:
            raise socket.timeout(f"no exit status after {timeout}s")
        time.sleep(POLL_INTERVAL)
