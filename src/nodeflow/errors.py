"""Error taxonomy for workflow execution."""


class WorkflowError(Exception):
    """Base class for business errors raised while running a workflow."""

    retriable = False


class ConfigurationError(WorkflowError):
    """A node is missing a field, a required connection, or has a broken template."""


class CycleError(WorkflowError):
    """The node/connection set has no topological order."""

    def __init__(self, message: str = "Workflow contains a cycle"):
        super().__init__(message)


class QuotaExceededError(WorkflowError):
    """The workflow owner is over the monthly execution allowance."""


class TransientError(WorkflowError):
    """Network, timeout or rate-limit failure; retried by the step runner only."""

    retriable = True


class NodeExecutionError(WorkflowError):
    """An executor's side effect failed. The cause is chained."""


class NotFoundError(WorkflowError):
    """A workflow, node or credential does not exist."""


class UnauthorizedError(WorkflowError):
    """The caller does not own the requested resource."""


class UnregisteredTypeError(LookupError):
    """No executor is registered for a node type.

    This is a deployment defect, not a business error, so it is not a
    WorkflowError.
    """

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No executor registered for node type: {node_type}")
