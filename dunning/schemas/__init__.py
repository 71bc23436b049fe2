from dunning.schemas.dunning_analytics import (
    CurrencyAmount,
    DayBucket,
    DunningStatisticsResponse,
    RevenueAtRiskResponse,
)
from dunning.schemas.dunning_retry_policy import (
    DunningRetryPolicyCreate,
    DunningRetryPolicyResponse,
    DunningRetryPolicyUpdate,
)
from dunning.schemas.dunning_sequence import (
    AddNoteRequest,
    AssignCsmRequest,
    CancelRequest,
    DunningAttemptResponse,
    DunningNoteResponse,
    DunningSequenceCreate,
    DunningSequenceDetailResponse,
    DunningSequenceResponse,
    EscalateRequest,
    NotificationStepResponse,
    PauseRequest,
    RecoverRequest,
    ResumeRequest,
    RetryPaymentRequest,
    SendPaymentLinkResponse,
    TimelineEvent,
    TimelineResponse,
)

__all__ = [
    "AddNoteRequest",
    "AssignCsmRequest",
    "CancelRequest",
    "CurrencyAmount",
    "DayBucket",
    "DunningAttemptResponse",
    "DunningNoteResponse",
    "DunningRetryPolicyCreate",
    "DunningRetryPolicyResponse",
    "DunningRetryPolicyUpdate",
    "DunningSequenceCreate",
    "DunningSequenceDetailResponse",
    "DunningSequenceResponse",
    "DunningStatisticsResponse",
    "EscalateRequest",
    "NotificationStepResponse",
    "PauseRequest",
    "RecoverRequest",
    "ResumeRequest",
    "RetryPaymentRequest",
    "RevenueAtRiskResponse",
    "SendPaymentLinkResponse",
    "TimelineEvent",
    "TimelineResponse",
]
