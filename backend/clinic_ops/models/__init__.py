from clinic_ops.models.base import Base
from clinic_ops.models.audit_log import AuditLog
from clinic_ops.models.followup import (
    AUTO_COMPLETION_TAG,
    Followup,
    FollowupCancelReason,
    FollowupStatus,
)
from clinic_ops.models.followup_attempt import (
    FollowupAttempt,
    FollowupAttemptChannel,
    FollowupAttemptOutcome,
)
from clinic_ops.models.encounter import (
    ACTIVE_CONSULT_STATUSES,
    BranchCode,
    ConsultStatus,
    Encounter,
)
from clinic_ops.models.consultation import Consultation, ConsultationStatus

__all__ = [
    "Base",
    "AuditLog",
    "AUTO_COMPLETION_TAG",
    "Followup",
    "FollowupCancelReason",
    "FollowupStatus",
    "FollowupAttempt",
    "FollowupAttemptChannel",
    "FollowupAttemptOutcome",
    "ACTIVE_CONSULT_STATUSES",
    "BranchCode",
    "ConsultStatus",
    "Encounter",
    "Consultation",
    "ConsultationStatus",
]
