"""Node preparation: apply convergence steps over the remote executor."""

from collections.abc import Sequence

from kubestrap.core.exceptions import ConvergenceError, RemoteExecError, RemoteExecErrorKind
from kubestrap.core.models import Node, NodeRole, StepResult
from kubestrap.interfaces.remote_executor import RemoteExecutor
from kubestrap.preparation.steps import ConvergenceStep, default_steps
from kubestrap.utils.logging import get_logger

logger = get_logger(__name__)


class NodePreparer:
    """Converge a node's OS state, one verified step at a time.

    For each step the verification runs first; a satisfied step is skipped
    without any mutating command. Otherwise the step is applied and
    verified again, up to ``attempts`` times. Role does not change the
    sequence.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        steps: Sequence[ConvergenceStep] | None = None,
        attempts: int = 2,
        step_timeout: float | None = 900.0,
    ):
        """Initialize node preparer.

        Args:
            executor: Remote executor used for every script
            steps: Ordered steps (defaults to the standard kubeadm sequence)
            attempts: Apply-and-verify rounds per step before giving up
            step_timeout: Per-script timeout in seconds
        """
        self.executor = executor
        self.steps = list(steps) if steps is not None else default_steps()
        self.attempts = attempts
        self.step_timeout = step_timeout

    async def _verified(self, node: Node, step: ConvergenceStep) -> bool:
        result = await self.executor.run(node, step.verify, check=False, timeout=self.step_timeout)
        return result.ok

    async def prepare(self, node: Node, role: NodeRole | None = None) -> list[StepResult]:
        """Apply every step to ``node`` in order.

        Args:
            node: Target node
            role: Node role (logged only)

        Returns:
            One StepResult per step

        Raises:
            ConvergenceError: If a step's verification never succeeds
            RemoteExecError: CONNECT_FAILED if the node cannot be reached
        """
        role = role or node.role
        logger.info("node_preparation_started", node=node.name, role=role.value, steps=len(self.steps))
        results = []
        for step in self.steps:
            results.append(await self._converge(node, step))
        applied = sum(1 for r in results if not r.skipped)
        logger.info("node_preparation_finished", node=node.name, applied=applied, skipped=len(results) - applied)
        return results

    async def _converge(self, node: Node, step: ConvergenceStep) -> StepResult:
        if await self._verified(node, step):
            logger.debug("step_skipped", node=node.name, step=step.name)
            return StepResult(step_name=step.name, node=node.name, skipped=True, message="already satisfied")

        detail = ""
        for attempt in range(1, self.attempts + 1):
            logger.info("step_applying", node=node.name, step=step.name, attempt=attempt)
            try:
                await self.executor.run(node, step.apply, timeout=self.step_timeout)
            except RemoteExecError as e:
                if e.kind == RemoteExecErrorKind.CONNECT_FAILED:
                    raise
                detail = e.result.output[-500:] if e.result else str(e)
                logger.warning("step_apply_failed", node=node.name, step=step.name, attempt=attempt)
                continue

            if await self._verified(node, step):
                logger.info("step_applied", node=node.name, step=step.name, attempt=attempt)
                return StepResult(step_name=step.name, node=node.name, skipped=False, message=step.description)
            detail = "verification failed after apply"
            logger.warning("step_not_converged", node=node.name, step=step.name, attempt=attempt)

        raise ConvergenceError(node.name, step.name, detail)
