"""
Engine exceptions.

Absence of market or cost data is never an exception — it is encoded as
an empty opportunity set or a rejected decision. Only upstream contract
violations (a caller bug) propagate out of ``DecisionEngine.evaluate``.
"""


class RebalanceError(Exception):
    """Base class for rebalance engine errors."""


class ContractViolationError(RebalanceError):
    """An upstream record broke the engine's input contract."""


class ProviderError(RebalanceError):
    """A market-data / cost / portfolio collaborator failed to answer."""
