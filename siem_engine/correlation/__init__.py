"""
Correlation: composite findings across signals and time.

Components:
    rules: Attack chain, coordinated attack, lateral movement, data breach
    engine: CorrelationEngine cycle runner
"""

from siem_engine.correlation.engine import CorrelationEngine, create_correlation_engine
from siem_engine.correlation.rules import (
    ATTACK_STAGES,
    AttackChainRule,
    CoordinatedAttackRule,
    CorrelationRule,
    DataBreachRule,
    LateralMovementRule,
    build_correlation_rules,
    classify_stage,
    correlation_severity,
    extract_affected_assets,
)

__all__ = [
    "CorrelationEngine",
    "create_correlation_engine",
    "ATTACK_STAGES",
    "AttackChainRule",
    "CoordinatedAttackRule",
    "CorrelationRule",
    "DataBreachRule",
    "LateralMovementRule",
    "build_correlation_rules",
    "classify_stage",
    "correlation_severity",
    "extract_affected_assets",
]
