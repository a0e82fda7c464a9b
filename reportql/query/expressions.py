"""
Derived-field expressions.

Three entry points:

- ``normalize_expression_ast`` validates the JSON form of an expression tree
  (as stored with a derived field definition) and turns it into nodes.
- ``parse_expression`` parses the formula language typed by report authors,
  e.g. ``round(Order.total * 1.2, 2)``.
- ``ExpressionCompiler`` renders a node tree into a dialect-quoted SQL fragment.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .catalog import SchemaCatalog
from .dialect import SqlDialect
from .errors import ExpressionSyntaxError, UnknownEntity, UnknownField
from .schemas import (
    BinaryNode,
    ColumnNode,
    ExpressionNode,
    FunctionNode,
    LiteralNode,
    UnaryNode,
)

BINARY_OPERATORS = frozenset(["+", "-", "*", "/"])
UNARY_OPERATORS = frozenset(["+", "-"])
ALLOWED_FUNCTIONS = frozenset(["abs", "ceil", "coalesce", "floor", "greatest", "least", "round"])


@dataclass(frozen=True)
class NormalizedExpression:
    """A validated expression tree plus the models and fields it touches."""

    expression: ExpressionNode
    referenced_models: Tuple[str, ...]
    referenced_fields: Dict[str, List[str]]
    join_dependencies: Tuple[Tuple[str, str], ...]


# ===== METADATA =====


def collect_references(node: ExpressionNode) -> Tuple[List[str], Dict[str, List[str]]]:
    """Walk a tree and return (models in first-seen order, sorted fields per model sorted by model)."""
    models: List[str] = []
    fields: Dict[str, set] = {}

    def visit(current: ExpressionNode) -> None:
        if isinstance(current, ColumnNode):
            if current.entity not in fields:
                models.append(current.entity)
                fields[current.entity] = set()
            fields[current.entity].add(current.field)
        elif isinstance(current, BinaryNode):
            visit(current.left)
            visit(current.right)
        elif isinstance(current, UnaryNode):
            visit(current.operand)
        elif isinstance(current, FunctionNode):
            for arg in current.args:
                visit(arg)

    visit(node)
    return models, {model: sorted(fields[model]) for model in sorted(fields)}


def build_join_dependencies(models) -> Tuple[Tuple[str, str], ...]:
    """Every unordered pair of referenced models; empty below two models."""
    ordered = sorted(set(models))
    if len(ordered) < 2:
        return ()
    return tuple(
        (ordered[i], ordered[j]) for i in range(len(ordered)) for j in range(i + 1, len(ordered))
    )


def analyze_expression(node: ExpressionNode) -> NormalizedExpression:
    models, fields = collect_references(node)
    return NormalizedExpression(
        expression=node,
        referenced_models=tuple(models),
        referenced_fields=fields,
        join_dependencies=build_join_dependencies(models),
    )


# ===== JSON AST =====


def _trimmed(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _parse_node(value: Any) -> Optional[ExpressionNode]:
    if not isinstance(value, Mapping):
        return None

    node_type = value.get("type")
    if node_type == "column":
        entity = _trimmed(value.get("modelId"))
        field = _trimmed(value.get("fieldId"))
        if not entity or not field:
            return None
        return ColumnNode(entity=entity, field=field)

    if node_type == "literal":
        literal = value.get("value")
        value_type = value.get("valueType")
        if (
            value_type == "number"
            and isinstance(literal, (int, float))
            and not isinstance(literal, bool)
            and math.isfinite(literal)
        ):
            return LiteralNode(value=literal, value_type="number")
        if value_type == "string" and isinstance(literal, str):
            return LiteralNode(value=literal, value_type="string")
        if value_type == "boolean" and isinstance(literal, bool):
            return LiteralNode(value=literal, value_type="boolean")
        return None

    if node_type == "binary":
        operator = value.get("operator")
        if operator not in BINARY_OPERATORS:
            return None
        left = _parse_node(value.get("left"))
        right = _parse_node(value.get("right"))
        if left is None or right is None:
            return None
        return BinaryNode(operator=operator, left=left, right=right)

    if node_type == "unary":
        operator = value.get("operator")
        if operator not in UNARY_OPERATORS:
            return None
        operand = _parse_node(value.get("argument"))
        if operand is None:
            return None
        return UnaryNode(operator=operator, operand=operand)

    if node_type == "function":
        name = _trimmed(value.get("name")).lower()
        if not name or name not in ALLOWED_FUNCTIONS:
            return None
        raw_args = value.get("args")
        args = []
        for entry in raw_args if isinstance(raw_args, list) else []:
            parsed = _parse_node(entry)
            if parsed is None:
                return None
            args.append(parsed)
        return FunctionNode(name=name, args=tuple(args))

    return None


def normalize_expression_ast(payload: Any) -> Optional[NormalizedExpression]:
    """Validate a JSON expression tree. Returns None when any node is malformed or disallowed."""
    node = _parse_node(payload)
    if node is None:
        return None
    return analyze_expression(node)


def expression_to_ast(node: ExpressionNode) -> Dict[str, Any]:
    """Render nodes back into the JSON tree accepted by normalize_expression_ast."""
    if isinstance(node, ColumnNode):
        return {"type": "column", "modelId": node.entity, "fieldId": node.field}
    if isinstance(node, LiteralNode):
        return {"type": "literal", "value": node.value, "valueType": node.value_type}
    if isinstance(node, BinaryNode):
        return {
            "type": "binary",
            "operator": node.operator,
            "left": expression_to_ast(node.left),
            "right": expression_to_ast(node.right),
        }
    if isinstance(node, UnaryNode):
        return {"type": "unary", "operator": node.operator, "argument": expression_to_ast(node.operand)}
    if isinstance(node, FunctionNode):
        return {"type": "function", "name": node.name, "args": [expression_to_ast(a) for a in node.args]}
    raise TypeError(f"Unsupported expression node: {type(node).__name__}")


# ===== FORMULA TEXT =====


class ExpressionParser:
    """Recursive-descent parser for derived-field formulas."""

    def __init__(self, source: str):
        self.source = source
        self.index = 0

    def parse(self) -> ExpressionNode:
        node = self._expression()
        self._skip_whitespace()
        if self.index < len(self.source):
            raise ExpressionSyntaxError(f"Unexpected token {self.source[self.index]!r}", self.index)
        return node

    def _expression(self) -> ExpressionNode:
        node = self._term()
        while True:
            self._skip_whitespace()
            operator = self._peek()
            if operator in ("+", "-"):
                self.index += 1
                node = BinaryNode(operator=operator, left=node, right=self._term())
                continue
            return node

    def _term(self) -> ExpressionNode:
        node = self._factor()
        while True:
            self._skip_whitespace()
            operator = self._peek()
            if operator in ("*", "/"):
                self.index += 1
                node = BinaryNode(operator=operator, left=node, right=self._factor())
                continue
            return node

    def _factor(self) -> ExpressionNode:
        self._skip_whitespace()
        operator = self._peek()
        if operator in ("+", "-"):
            self.index += 1
            return UnaryNode(operator=operator, operand=self._factor())
        return self._primary()

    def _primary(self) -> ExpressionNode:
        self._skip_whitespace()
        char = self._peek()
        if char == "(":
            self.index += 1
            node = self._expression()
            self._skip_whitespace()
            self._expect(")")
            return node
        if char in ("'", '"'):
            return self._string()
        if char is not None and (char.isdigit() or char == "."):
            return self._number()
        if char is not None and (char.isalpha() or char == "_"):
            return self._identifier_or_call()
        raise ExpressionSyntaxError(f"Unexpected token {char or 'EOF'!r}", self.index)

    def _identifier(self) -> str:
        start = self.index
        while self._peek() is not None and (self._peek().isalnum() or self._peek() == "_"):
            self.index += 1
        return self.source[start:self.index]

    def _identifier_or_call(self) -> ExpressionNode:
        start = self.index
        identifier = self._identifier()
        self._skip_whitespace()
        nxt = self._peek()

        if nxt == ".":
            self.index += 1
            char = self._peek()
            if char is None or not (char.isalpha() or char == "_"):
                raise ExpressionSyntaxError("Expected field identifier after '.'", self.index)
            return ColumnNode(entity=identifier, field=self._identifier())

        if nxt == "(":
            name = identifier.lower()
            if name not in ALLOWED_FUNCTIONS:
                raise ExpressionSyntaxError(f"Unknown function {identifier!r}", start)
            self.index += 1
            args: List[ExpressionNode] = []
            self._skip_whitespace()
            if self._peek() != ")":
                while True:
                    args.append(self._expression())
                    self._skip_whitespace()
                    if self._peek() == ",":
                        self.index += 1
                        continue
                    break
            self._expect(")")
            return FunctionNode(name=name, args=tuple(args))

        if identifier.lower() in ("true", "false"):
            return LiteralNode(value=identifier.lower() == "true", value_type="boolean")

        raise ExpressionSyntaxError(f"Unexpected identifier {identifier!r}", start)

    def _number(self) -> ExpressionNode:
        start = self.index
        while self._peek() is not None and self._peek().isdigit():
            self.index += 1
        is_decimal = False
        if self._peek() == ".":
            is_decimal = True
            self.index += 1
            while self._peek() is not None and self._peek().isdigit():
                self.index += 1
        text = self.source[start:self.index]
        try:
            value = float(text) if is_decimal else int(text)
        except ValueError:
            raise ExpressionSyntaxError(f"Invalid numeric literal {text!r}", start)
        return LiteralNode(value=value, value_type="number")

    def _string(self) -> ExpressionNode:
        quote = self._peek()
        start = self.index
        self.index += 1
        chars: List[str] = []
        while self._peek() is not None and self._peek() != quote:
            if self._peek() == "\\" and self.index + 1 < len(self.source):
                chars.append(self.source[self.index + 1])
                self.index += 2
            else:
                chars.append(self.source[self.index])
                self.index += 1
        if self._peek() != quote:
            raise ExpressionSyntaxError("Unterminated string literal", start)
        self.index += 1
        return LiteralNode(value="".join(chars), value_type="string")

    def _skip_whitespace(self) -> None:
        while self.index < len(self.source) and self.source[self.index].isspace():
            self.index += 1

    def _expect(self, token: str) -> None:
        if self._peek() != token:
            raise ExpressionSyntaxError(f"Expected {token!r}", self.index)
        self.index += len(token)

    def _peek(self) -> Optional[str]:
        if self.index >= len(self.source):
            return None
        return self.source[self.index]


def parse_expression(source: str) -> NormalizedExpression:
    """Parse a formula such as ``Order.total - Order.discount`` and collect its references."""
    return analyze_expression(ExpressionParser(source).parse())


# ===== SQL COMPILATION =====


class ExpressionCompiler:
    """Structural recursion from expression nodes to a SQL fragment."""

    def __init__(self, catalog: SchemaCatalog, dialect: SqlDialect):
        self.catalog = catalog
        self.dialect = dialect

    def compile(self, node: ExpressionNode, alias_of: Mapping[str, str]) -> str:
        if isinstance(node, ColumnNode):
            return self._column(node, alias_of)
        if isinstance(node, LiteralNode):
            return self._literal(node)
        if isinstance(node, BinaryNode):
            left = self.compile(node.left, alias_of)
            right = self.compile(node.right, alias_of)
            return f"({left} {node.operator} {right})"
        if isinstance(node, UnaryNode):
            return f"{node.operator}({self.compile(node.operand, alias_of)})"
        if isinstance(node, FunctionNode):
            args = ", ".join(self.compile(arg, alias_of) for arg in node.args)
            return f"{node.name}({args})"
        raise TypeError(f"Unsupported expression node: {type(node).__name__}")

    def _column(self, node: ColumnNode, alias_of: Mapping[str, str]) -> str:
        alias = alias_of.get(node.entity)
        if alias is None:
            raise UnknownEntity(node.entity, f"Entity '{node.entity}' is not part of this query")
        descriptor = self.catalog.describe(node.entity)
        field = descriptor.get_field(node.field)
        if field is None:
            raise UnknownField(node.entity, node.field)
        return self.dialect.column(alias, field.column_name)

    def _literal(self, node: LiteralNode) -> str:
        value = node.value
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValueError(f"Non-finite numeric literal: {value}")
            return format(Decimal(repr(value)), "f")
        return self.dialect.string_literal(str(value))
