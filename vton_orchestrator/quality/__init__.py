from .gate import QualityGate
from .retry import CycleFlags, LadderState, RetryDecision, RetryEscalationPolicy

__all__ = ["QualityGate", "CycleFlags", "LadderState", "RetryDecision", "RetryEscalationPolicy"]
