"""
Safety screening for incoming messages.

Keyword and pattern rules live in data/safety_rules.yml.
"""

from .classifier import SafetyCategory, SafetyCheckResult, SafetyClassifier, SafetyResponse

__all__ = ["SafetyCategory", "SafetyCheckResult", "SafetyClassifier", "SafetyResponse"]
