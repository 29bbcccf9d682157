"""
Label filter compilers.

Translates a filter tree into the native query form of a record store:

- MongoCompiler emits document-store query dictionaries
  ({"labels.env": "prod"}, {"$or": [...]}).
- SqlCompiler emits parameterised WHERE fragments using EXISTS sub-selects
  against the record_labels table.

Unsupported operators and empty scopes compile to the store's match-all
query. With strict=True an unsupported operator raises
UnsupportedOperatorError instead.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, TypeVar

from .errors import UnsupportedOperatorError
from .models import (
    Condition,
    ConditionScope,
    EmptyScope,
    Filter,
    Query,
    QueryScope,
    Scope,
)

logger = logging.getLogger(__name__)

LABEL_FIELD_PREFIX = 'labels.'

T = TypeVar('T')


class FilterCompiler(Generic[T]):
    """Walks a filter tree and delegates node translation to subclasses."""

    def __init__(self, strict: bool = False):
        """Initialize the compiler.

        Args:
            strict: Raise UnsupportedOperatorError instead of matching everything
        """
        self.strict = strict

    def compile(self, label_filter: Filter) -> T:
        """Compile a filter into a native query."""
        if label_filter.scope is None:
            return self.match_all()
        return self.compile_scope(label_filter.scope)

    def compile_scope(self, scope: Scope) -> T:
        """Compile a single scope and, recursively, its children."""
        if isinstance(scope, ConditionScope):
            return self._compile_condition(scope.condition)
        if isinstance(scope, QueryScope):
            return self._compile_query(scope.query)
        if isinstance(scope, EmptyScope):
            return self.match_all()
        raise TypeError(f"Unknown scope type: {type(scope)}")

    def _compile_condition(self, cond: Condition) -> T:
        if cond.operator == '=':
            return self.equals(LABEL_FIELD_PREFIX + cond.label, cond.value)
        if cond.operator == '!=':
            return self.not_equals(LABEL_FIELD_PREFIX + cond.label, cond.value)
        return self._unsupported(cond.operator, 'condition')

    def _compile_query(self, q: Query) -> T:
        operator = q.operator.lower()
        if operator not in ('and', 'or'):
            return self._unsupported(q.operator, 'query')
        if not q.scopes:
            return self.match_all()

        sub_queries = [self.compile_scope(child) for child in q.scopes]
        if operator == 'and':
            return self.all_of(sub_queries)
        return self.any_of(sub_queries)

    def _unsupported(self, operator: str, kind: str) -> T:
        if self.strict:
            raise UnsupportedOperatorError(operator, kind)
        logger.warning(f"Unsupported {kind} operator {operator!r} in label filter, matching everything")
        return self.match_all()

    # Native query construction

    def match_all(self) -> T:
        raise NotImplementedError

    def equals(self, field_name: str, value: str) -> T:
        raise NotImplementedError

    def not_equals(self, field_name: str, value: str) -> T:
        raise NotImplementedError

    def all_of(self, sub_queries: List[T]) -> T:
        raise NotImplementedError

    def any_of(self, sub_queries: List[T]) -> T:
        raise NotImplementedError


class MongoCompiler(FilterCompiler[Dict[str, Any]]):
    """Compiles filters into document-store query dictionaries."""

    def match_all(self) -> Dict[str, Any]:
        return {}

    def equals(self, field_name: str, value: str) -> Dict[str, Any]:
        return {field_name: value}

    def not_equals(self, field_name: str, value: str) -> Dict[str, Any]:
        return {field_name: {'$ne': value}}

    def all_of(self, sub_queries: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {'$and': sub_queries}

    def any_of(self, sub_queries: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {'$or': sub_queries}


@dataclass(frozen=True)
class SqlQuery:
    """A parameterised SQL boolean expression.

    The clause refers to the record being filtered as 'r' and uses '?'
    placeholders bound, in order, to params.
    """
    clause: str
    params: List[Any] = field(default_factory=list, hash=False)


MATCH_ALL_SQL = SqlQuery('1 = 1')


class SqlCompiler(FilterCompiler[SqlQuery]):
    """Compiles filters into WHERE fragments over a records/record_labels schema."""

    LABEL_EXISTS = (
        "EXISTS (SELECT 1 FROM record_labels lbl "
        "WHERE lbl.record_id = r.id AND lbl.name = ? AND lbl.value = ?)"
    )

    def match_all(self) -> SqlQuery:
        return MATCH_ALL_SQL

    def equals(self, field_name: str, value: str) -> SqlQuery:
        return SqlQuery(self.LABEL_EXISTS, [self._label_name(field_name), value])

    def not_equals(self, field_name: str, value: str) -> SqlQuery:
        return SqlQuery(f"NOT {self.LABEL_EXISTS}", [self._label_name(field_name), value])

    def all_of(self, sub_queries: List[SqlQuery]) -> SqlQuery:
        return self._join(' AND ', sub_queries)

    def any_of(self, sub_queries: List[SqlQuery]) -> SqlQuery:
        return self._join(' OR ', sub_queries)

    @staticmethod
    def _label_name(field_name: str) -> str:
        return field_name[len(LABEL_FIELD_PREFIX):]

    @staticmethod
    def _join(separator: str, sub_queries: List[SqlQuery]) -> SqlQuery:
        clause = separator.join(sub.clause for sub in sub_queries)
        params: List[Any] = []
        for sub in sub_queries:
            params.extend(sub.params)
        return SqlQuery(f"({clause})", params)


def compile_filter(label_filter: Filter, strict: bool = False) -> Dict[str, Any]:
    """Compile a label filter into a document-store query.

    Args:
        label_filter: The filter to compile
        strict: Raise on unsupported operators instead of matching everything

    Returns:
        The query dictionary; {} matches every record

    Raises:
        UnsupportedOperatorError: In strict mode, for an unknown operator
    """
    return MongoCompiler(strict=strict).compile(label_filter)


def compile_sql(label_filter: Filter, strict: bool = False) -> SqlQuery:
    """Compile a label filter into a SQL WHERE fragment."""
    return SqlCompiler(strict=strict).compile(label_filter)
