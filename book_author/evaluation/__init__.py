from .quality import QualityEvaluator, DIMENSIONS
from .continuity import ContinuityVerifier

__all__ = ["QualityEvaluator", "ContinuityVerifier", "DIMENSIONS"]
