"""Resource teardown."""

from kubestrap.teardown.engine import Teardown, TeardownResult, teardown_order

__all__ = ["Teardown", "TeardownResult", "teardown_order"]
