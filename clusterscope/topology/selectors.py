"""Object keys and label selector predicates.

Two selector conventions coexist in Kubernetes and are kept apart here:

* Service selectors (``service_selects``): an empty selector selects
  nothing.
* Label selectors (``matches_label_selector``): an empty or missing
  selector selects everything.
"""

from __future__ import annotations

from collections.abc import Mapping

from clusterscope.models.state import LabelSelector, LabelSelectorRequirement, SelectorOperator


class InvalidSelectorError(ValueError):
    """Raised when a label selector requirement cannot be evaluated."""


def object_key(name: str, namespace: str = "") -> str:
    """Return the snapshot map key for an object.

    Namespaced objects use ``name@namespace``; cluster-scoped objects use
    their name alone.
    """
    if not name:
        raise ValueError("object name must not be empty")
    if not namespace:
        return name
    return f"{name}@{namespace}"


def service_selects(selector: Mapping[str, str], pod_labels: Mapping[str, str]) -> bool:
    """Return True if a Service *selector* targets pods labelled *pod_labels*."""
    if not selector:
        return False
    return all(pod_labels.get(key) == value for key, value in selector.items())


# Case-insensitive: API management resources in the wild declare "in".
_OPERATORS = {op.value.lower(): op for op in SelectorOperator}


def _operator(req: LabelSelectorRequirement) -> SelectorOperator:
    op = _OPERATORS.get(req.operator.lower())
    if op is None:
        raise InvalidSelectorError(f"{req.operator!r} is not a valid label selector operator")
    if op in (SelectorOperator.IN, SelectorOperator.NOT_IN) and not req.values:
        raise InvalidSelectorError(f"values must be non-empty for operator {op.value} on key {req.key!r}")
    if op in (SelectorOperator.EXISTS, SelectorOperator.DOES_NOT_EXIST) and req.values:
        raise InvalidSelectorError(f"values must be empty for operator {op.value} on key {req.key!r}")
    return op


def requirement_matches(req: LabelSelectorRequirement, labels: Mapping[str, str]) -> bool:
    """Evaluate a single ``matchExpressions`` entry against *labels*."""
    op = _operator(req)
    match op:
        case SelectorOperator.IN:
            return req.key in labels and labels[req.key] in req.values
        case SelectorOperator.NOT_IN:
            # A missing key satisfies NotIn, as in Kubernetes.
            return req.key not in labels or labels[req.key] not in req.values
        case SelectorOperator.EXISTS:
            return req.key in labels
        case SelectorOperator.DOES_NOT_EXIST:
            return req.key not in labels
    raise InvalidSelectorError(f"unhandled operator {op}")


def matches_label_selector(selector: LabelSelector | None, labels: Mapping[str, str]) -> bool:
    """Return True if *labels* satisfy *selector*.

    ``matchLabels`` and ``matchExpressions`` are ANDed; ``None`` or an
    empty selector matches every label set.
    """
    if selector is None or selector.is_empty():
        return True
    # Reject malformed selectors regardless of the labels being tested.
    for req in selector.match_expressions:
        _operator(req)
    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False
    return all(requirement_matches(req, labels) for req in selector.match_expressions)
