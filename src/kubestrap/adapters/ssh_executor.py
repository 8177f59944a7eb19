"""SSH adapter implementing the RemoteExecutor interface."""

import asyncio

import paramiko

from kubestrap.clients.ssh_client import SSHClient
from kubestrap.core.exceptions import RemoteExecError, RemoteExecErrorKind
from kubestrap.core.models import CommandResult, Node
from kubestrap.interfaces.remote_executor import RemoteExecutor
from kubestrap.utils.logging import get_logger
from kubestrap.utils.retry import RetryPolicy, call_with_retry

logger = get_logger(__name__)


class SSHExecutor(RemoteExecutor):
    """Run scripts over a fresh SSH connection per call.

    Connection failures are retried with backoff, since a freshly booted
    instance may not accept SSH yet. The script itself is run exactly once
    per call.
    """

    def __init__(self, client: SSHClient, connect_policy: RetryPolicy | None = None):
        """Initialize SSH executor.

        Args:
            client: SSH client
            connect_policy: Retry bounds for establishing the connection
        """
        self.client = client
        self.connect_policy = connect_policy or RetryPolicy(max_attempts=10, min_wait=2, max_wait=15)

    async def _connect(self, node: Node) -> paramiko.SSHClient:
        return await asyncio.to_thread(self.client.connect, node)

    async def run(
        self, node: Node, script: str, check: bool = True, timeout: float | None = None
    ) -> CommandResult:
        connection = await call_with_retry(
            self._connect,
            node,
            policy=self.connect_policy,
            operation=f"ssh_connect:{node.name}",
        )
        try:
            result = await asyncio.to_thread(self.client.execute, connection, node, script, timeout)
        finally:
            connection.close()

        if check and not result.ok:
            logger.warning(
                "remote_command_failed",
                node=node.name,
                exit_code=result.exit_code,
                output=result.output[-2000:],
            )
            raise RemoteExecError(
                f"Command on {node.name} exited {result.exit_code}: {result.output[-500:]}",
                kind=RemoteExecErrorKind.COMMAND_FAILED,
                node=node.name,
                result=result,
            )
        return result
