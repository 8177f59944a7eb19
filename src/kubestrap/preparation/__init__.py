"""Node OS preparation."""

from kubestrap.preparation.preparer import NodePreparer
from kubestrap.preparation.steps import ConvergenceStep, default_steps

__all__ = ["ConvergenceStep", "NodePreparer", "default_steps"]
