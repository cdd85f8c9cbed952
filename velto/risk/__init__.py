from velto.risk.calculator import RiskAssessment, RiskBucket, RiskCalculator

__all__ = ["RiskAssessment", "RiskBucket", "RiskCalculator"]
