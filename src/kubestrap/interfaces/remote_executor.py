"""Remote execution interface."""

from abc import ABC, abstractmethod

from kubestrap.core.models import CommandResult, Node


class RemoteExecutor(ABC):
    """Run scripts on a node over an authenticated transport.

    A transport is established per invocation. Scripts must be idempotent;
    the executor neither deduplicates calls nor interprets script output.
    """

    @abstractmethod
    async def run(
        self, node: Node, script: str, check: bool = True, timeout: float | None = None
    ) -> CommandResult:
        """Run ``script`` on ``node``.

        Args:
            node: Target node
            script: Shell script, executed with ``bash -s`` semantics
            check: Raise on non-zero exit instead of returning the result
            timeout: Optional per-command timeout in seconds

        Returns:
            CommandResult with captured output

        Raises:
            RemoteExecError: CONNECT_FAILED after connection retries are
                exhausted, COMMAND_FAILED on non-zero exit when ``check``
        """

    async def fetch_file(self, node: Node, path: str) -> str:
        """Read a remote file as text (default: ``sudo cat`` through :meth:`run`)."""
        result = await self.run(node, f"sudo cat {path}")
        return result.stdout
