from overstay_engine.schemas.base import BaseSchema, ErrorResponse
from overstay_engine.schemas.overstay import (
    EffectivePenaltyConfig,
    PenaltyCalculation,
    OverstayDetectionResult,
    DetectionRunResponse,
    OverstayRecordResponse,
    OverstayHistoryResponse,
    PendingOverstayReview,
    ChefUnpaidPenalty,
    ChefPenaltyStatus,
    OverstayStats,
    ManagerPenaltyDecision,
    ManagerDecisionRequest,
    DecisionResult,
    ResolveOverstayRequest,
    RetryChargeRequest,
    PaymentResult,
    ChargeResult,
)

__all__ = [
    "BaseSchema",
    "ErrorResponse",
    "EffectivePenaltyConfig",
    "PenaltyCalculation",
    "OverstayDetectionResult",
    "DetectionRunResponse",
    "OverstayRecordResponse",
    "OverstayHistoryResponse",
    "PendingOverstayReview",
    "ChefUnpaidPenalty",
    "ChefPenaltyStatus",
    "OverstayStats",
    "ManagerPenaltyDecision",
    "ManagerDecisionRequest",
    "DecisionResult",
    "ResolveOverstayRequest",
    "RetryChargeRequest",
    "PaymentResult",
    "ChargeResult",
]
