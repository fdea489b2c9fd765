"""Pipeline exceptions."""


class PipelineError(Exception):
    """Base class for incident pipeline errors."""


class DeviceNotFound(PipelineError):
    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} not found")
        self.device_id = device_id


class IncidentNotFound(PipelineError):
    def __init__(self, incident_id: str):
        super().__init__(f"Incident {incident_id} not found")
        self.incident_id = incident_id


class DuplicateIncident(PipelineError):
    def __init__(self, incident_id: str):
        super().__init__(f"Incident {incident_id} already exists")
        self.incident_id = incident_id


class LedgerTransitionError(PipelineError):
    """Raised when a ledger status change would leave the pending state twice or break an invariant."""


class NotaryError(PipelineError):
    """Notary unreachable, transaction rejected, or response unusable."""


class PolicyNotFound(PipelineError):
    def __init__(self, policy_ref: str):
        super().__init__(f"Policy {policy_ref} not found")
        self.policy_ref = policy_ref
