"""
Label filter expression tokenizer and parser.

Implements a lightweight tokenizer and recursive descent parser for the text
form of label filters, e.g.:

    env=prod AND (tier=web OR tier:api) AND owner != "team a"

'label:value' is shorthand for 'label=value'. AND binds tighter than OR,
and runs of the same operator collapse into a single query.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from .models import (
    Condition,
    ConditionScope,
    Filter,
    Query,
    QueryScope,
    Scope,
)


@dataclass
class Token:
    """Represents a lexical token."""
    type: str
    value: str
    position: int


class Tokenizer:
    """Tokenizes label filter expressions."""

    TOKEN_PATTERNS = [
        (r'(?i)\band\b', 'AND'),
        (r'(?i)\bor\b', 'OR'),
        (r'!=', 'NEQ'),
        (r'=', 'EQ'),
        (r':', 'COLON'),
        (r'\(', 'LPAREN'),
        (r'\)', 'RPAREN'),
        (r'"[^"]*"', 'STRING'),
        (r"'[^']*'", 'STRING'),
        (r'[A-Za-z0-9_][A-Za-z0-9_\.\-/]*', 'WORD'),
        (r'\s+', 'WHITESPACE'),
    ]

    _COMPILED = [(re.compile(pattern), token_type) for pattern, token_type in TOKEN_PATTERNS]

    def __init__(self, expression: str):
        """Initialize tokenizer with an expression string."""
        self.expression = expression
        self.position = 0
        self.tokens: List[Token] = []
        self._tokenize()

    def _tokenize(self) -> None:
        while self.position < len(self.expression):
            for regex, token_type in self._COMPILED:
                match = regex.match(self.expression, self.position)
                if match:
                    if token_type != 'WHITESPACE':
                        self.tokens.append(Token(token_type, match.group(0), self.position))
                    self.position = match.end()
                    break
            else:
                raise SyntaxError(
                    f"Invalid character at position {self.position}: "
                    f"'{self.expression[self.position]}'"
                )

    def get_tokens(self) -> List[Token]:
        """Return the list of tokens."""
        return self.tokens


class Parser:
    """Parses label filter tokens into a scope tree."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.position = 0

    def _current_token(self) -> Optional[Token]:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def _consume(self, expected_type: Optional[str] = None) -> Token:
        token = self._current_token()
        if token is None:
            raise SyntaxError("Unexpected end of input")
        if expected_type and token.type != expected_type:
            raise SyntaxError(
                f"Expected {expected_type}, got {token.type}: {token.value}"
            )
        self.position += 1
        return token

    def _at(self, token_type: str) -> bool:
        token = self._current_token()
        return token is not None and token.type == token_type

    def parse(self) -> Filter:
        """Parse the whole expression into a filter."""
        if not self.tokens:
            return Filter()

        scope = self._parse_or()

        leftover = self._current_token()
        if leftover is not None:
            raise SyntaxError(
                f"Unexpected {leftover.type} at position {leftover.position}: {leftover.value}"
            )
        return Filter(scope=scope)

    def _parse_or(self) -> Scope:
        scopes = [self._parse_and()]
        while self._at('OR'):
            self._consume('OR')
            scopes.append(self._parse_and())
        if len(scopes) == 1:
            return scopes[0]
        return QueryScope(Query(operator='OR', scopes=tuple(scopes)))

    def _parse_and(self) -> Scope:
        scopes = [self._parse_term()]
        while self._at('AND'):
            self._consume('AND')
            scopes.append(self._parse_term())
        if len(scopes) == 1:
            return scopes[0]
        return QueryScope(Query(operator='AND', scopes=tuple(scopes)))

    def _parse_term(self) -> Scope:
        if self._at('LPAREN'):
            self._consume('LPAREN')
            scope = self._parse_or()
            self._consume('RPAREN')
            return scope
        return self._parse_condition()

    def _parse_condition(self) -> ConditionScope:
        label = self._consume('WORD').value

        current = self._current_token()
        if current is None or current.type not in ('EQ', 'NEQ', 'COLON'):
            raise SyntaxError(
                f"Expected comparison operator after '{label}', "
                f"got {current.type if current else 'EOF'}"
            )
        self._consume()
        operator = '!=' if current.type == 'NEQ' else '='

        value_token = self._current_token()
        if value_token is None:
            raise SyntaxError("Expected value after operator")
        if value_token.type == 'STRING':
            value = value_token.value[1:-1]
        elif value_token.type == 'WORD':
            value = value_token.value
        else:
            raise SyntaxError(f"Expected value, got {value_token.type}")
        self._consume()

        return ConditionScope(Condition(label=label, operator=operator, value=value))


def parse_filter(expression: str) -> Filter:
    """Parse a label filter expression.

    Args:
        expression: The text form, e.g. 'env=prod AND (tier=web OR tier=api)'

    Returns:
        The parsed Filter; an empty expression matches everything

    Raises:
        SyntaxError: If the expression is malformed
    """
    tokenizer = Tokenizer(expression)
    parser = Parser(tokenizer.get_tokens())
    return parser.parse()
