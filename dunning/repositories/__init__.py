from dunning.repositories.dunning_retry_policy_repository import DunningRetryPolicyRepository
from dunning.repositories.dunning_sequence_repository import DunningSequenceRepository

__all__ = [
    "DunningRetryPolicyRepository",
    "DunningSequenceRepository",
]
