from dunning.models.dunning_attempt import AttemptOutcome, AttemptTrigger, DunningAttempt
from dunning.models.dunning_note import DunningNote
from dunning.models.dunning_retry_policy import DunningRetryPolicy
from dunning.models.dunning_sequence import (
    OPEN_STATUSES,
    SCHEDULED_STATUSES,
    TERMINAL_STATUSES,
    DunningSequence,
    DunningStatus,
    NotificationStepStatus,
)

__all__ = [
    "AttemptOutcome",
    "AttemptTrigger",
    "DunningAttempt",
    "DunningNote",
    "DunningRetryPolicy",
    "DunningSequence",
    "DunningStatus",
    "NotificationStepStatus",
    "OPEN_STATUSES",
    "SCHEDULED_STATUSES",
    "TERMINAL_STATUSES",
]
