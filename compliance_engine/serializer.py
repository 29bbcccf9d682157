"""
Serialization of label filters to and from their document form.

The document form is the wire and storage format shared with other services:

    Scope     := {"condition": Condition} | {"query": Query}
    Condition := {"label": str, "operator": str, "value": str}
    Query     := {"operator": str, "scopes": [Scope, ...]}
    Filter    := {"scope": Scope | null}

Only the populated branch of a scope is emitted, and query scopes keep their
original order.
"""

import json
from typing import Any, Dict, Optional

from .errors import FilterDecodeError
from .models import (
    Condition,
    ConditionScope,
    EmptyScope,
    Filter,
    Query,
    QueryScope,
    Scope,
)


def _require_str(doc: Dict[str, Any], key: str, where: str) -> str:
    value = doc.get(key, "")
    if not isinstance(value, str):
        raise FilterDecodeError(f"{where}.{key} must be a string, got {type(value).__name__}")
    return value


def _decode_condition(doc: Any) -> Condition:
    if not isinstance(doc, dict):
        raise FilterDecodeError("condition must be an object")
    label = _require_str(doc, 'label', 'condition')
    if not label:
        raise FilterDecodeError("condition.label must not be empty")
    return Condition(
        label=label,
        operator=_require_str(doc, 'operator', 'condition'),
        value=_require_str(doc, 'value', 'condition'),
    )


def _decode_query(doc: Any) -> Query:
    if not isinstance(doc, dict):
        raise FilterDecodeError("query must be an object")
    scopes = doc.get('scopes')
    if scopes is None:
        scopes = []
    if not isinstance(scopes, list):
        raise FilterDecodeError("query.scopes must be a list")
    return Query(
        operator=_require_str(doc, 'operator', 'query'),
        scopes=tuple(decode_scope(child) for child in scopes),
    )


def decode_scope(doc: Any) -> Scope:
    """Decode a scope document.

    Args:
        doc: A dictionary holding either a 'condition' or a 'query' key

    Returns:
        ConditionScope or QueryScope for the key present, EmptyScope when
        neither key is present

    Raises:
        FilterDecodeError: If both keys are present or a value is malformed
    """
    if not isinstance(doc, dict):
        raise FilterDecodeError(f"scope must be an object, got {type(doc).__name__}")

    has_condition = doc.get('condition') is not None
    has_query = doc.get('query') is not None

    if has_condition and has_query:
        raise FilterDecodeError("scope must hold either a condition or a query, not both")
    if has_condition:
        return ConditionScope(_decode_condition(doc['condition']))
    if has_query:
        return QueryScope(_decode_query(doc['query']))
    return EmptyScope()


def decode_filter(doc: Optional[Dict[str, Any]]) -> Filter:
    """Decode a filter document. A missing or null scope matches everything.

    Raises:
        FilterDecodeError: If the document is not an object or a scope is malformed
    """
    if doc is None:
        return Filter()
    if not isinstance(doc, dict):
        raise FilterDecodeError(f"filter must be an object, got {type(doc).__name__}")
    scope = doc.get('scope')
    if scope is None:
        return Filter()
    return Filter(scope=decode_scope(scope))


def encode_scope(scope: Scope) -> Dict[str, Any]:
    """Encode a scope, emitting only its populated branch."""
    if isinstance(scope, ConditionScope):
        cond = scope.condition
        return {
            'condition': {
                'label': cond.label,
                'operator': cond.operator,
                'value': cond.value,
            }
        }
    if isinstance(scope, QueryScope):
        return {
            'query': {
                'operator': scope.query.operator,
                'scopes': [encode_scope(child) for child in scope.query.scopes],
            }
        }
    if isinstance(scope, EmptyScope):
        return {}
    raise TypeError(f"Unknown scope type: {type(scope)}")


def encode_filter(label_filter: Filter) -> Dict[str, Any]:
    """Encode a filter into its document form."""
    if label_filter.scope is None:
        return {'scope': None}
    return {'scope': encode_scope(label_filter.scope)}


def loads_filter(text: str) -> Filter:
    """Decode a filter from a JSON string.

    Raises:
        FilterDecodeError: If the text is not valid JSON or not a filter
    """
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise FilterDecodeError(f"Invalid filter JSON: {e}") from e
    return decode_filter(doc)


def dumps_filter(label_filter: Filter, indent: Optional[int] = None) -> str:
    """Encode a filter as a JSON string."""
    return json.dumps(encode_filter(label_filter), indent=indent)
