from __future__ import annotations


class OrchestrationError(RuntimeError):
    pass


class ProvisioningError(OrchestrationError):
    """The cloud provider rejected or failed an instance operation."""


class InstanceTimeoutError(OrchestrationError):
    """The instance never passed its health check within the readiness bound."""


class DispatchError(OrchestrationError):
    """A batch job against a ready instance failed; the instance itself may be fine."""


class InferenceError(OrchestrationError):
    pass


class StorageError(OrchestrationError):
    pass


class SelfTerminationError(OrchestrationError):
    pass
