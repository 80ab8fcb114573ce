from .condition_compiler import compile_condition
from .rule_evaluator import build_rules_predicate, resolve_matching_principals
from .segment_service import SegmentService

__all__ = [
    "compile_condition",
    "build_rules_predicate",
    "resolve_matching_principals",
    "SegmentService",
]
