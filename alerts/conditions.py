"""Rule comparison semantics."""
from models.enums import Operator
from utils.numbers import parse_number

OPERATOR_MAP = {
    Operator.LT: lambda v, t: v < t,
    Operator.GT: lambda v, t: v > t,
    Operator.LTE: lambda v, t: v <= t,
    Operator.GTE: lambda v, t: v >= t,
    Operator.EQ: lambda v, t: v == t,
    Operator.NE: lambda v, t: v != t,
}

ORDERING_OPERATORS = {Operator.LT, Operator.GT, Operator.LTE, Operator.GTE}


class ConfigurationError(Exception):
    """A rule or channel definition that cannot be evaluated as written."""


def compare(value, operator, threshold):
    """Apply operator to a sample value and a rule threshold.

    Numeric when both sides parse as numbers, exact string comparison for
    == and != otherwise. Ordering operators on non-numeric operands raise
    ConfigurationError.
    """
    operator = Operator(operator)
    if value is None:
        return False
    left = parse_number(value)
    right = parse_number(threshold)
    if left is not None and right is not None:
        return OPERATOR_MAP[operator](left, right)
    if operator in ORDERING_OPERATORS:
        raise ConfigurationError(
            f"Operator {operator.value} needs numeric operands (value={value!r}, threshold={threshold!r})"
        )
    return OPERATOR_MAP[operator](str(value), str(threshold))


def validate_rule(rule):
    """Static check used before evaluation; returns an error message or None."""
    if rule.window_seconds < 1:
        return "window_seconds must be >= 1"
    if rule.operator in ORDERING_OPERATORS and parse_number(rule.threshold) is None:
        return f"threshold {rule.threshold!r} is not numeric but operator is {rule.operator.value}"
    return None
