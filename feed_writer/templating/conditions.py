"""
Condition expressions for template sections and pipeline steps

限定的 boolean DSL；不使用 eval，也不允許函式呼叫、index、算術。

Grammar:
    or_expr     := and_expr (("or" | "||") and_expr)*
    and_expr    := not_expr (("and" | "&&") not_expr)*
    not_expr    := ("not" | "!") not_expr | comparison
    comparison  := operand (("==" | "!=" | "===" | "!==" | "<" | "<=" | ">" | ">=") operand)?
    operand     := name("." name)* | string | number | true | false | null | "(" or_expr ")"

名稱以 options mapping 解析，不存在時為 null。
"""

from functools import lru_cache
from typing import Any, Callable, List, Mapping, NamedTuple, Optional
import logging
import re

from feed_writer.errors import ConditionSyntaxError

logger = logging.getLogger(__name__)

Context = Mapping[str, Any]
Node = Callable[[Context], Any]

_TOKEN_PATTERN = re.compile(r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>===|!==|==|!=|<=|>=|<|>|&&|\|\||!|\(|\))
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
""", re.VERBOSE)

_WORD_OPERATORS = {"and": "&&", "or": "||", "not": "!"}
_LITERALS = {"true": True, "false": False, "null": None}
_COMPARISONS = {"==", "!=", "===", "!==", "<", "<=", ">", ">="}
_ESCAPE = re.compile(r"\\(.)")


class Token(NamedTuple):
    kind: str  # op | string | number | name | literal | end
    value: Any
    position: int


def tokenize(expression: str) -> List[Token]:
    tokens = []
    position = 0
    while position < len(expression):
        match = _TOKEN_PATTERN.match(expression, position)
        if match is None:
            raise ConditionSyntaxError(
                f"Unexpected character {expression[position]!r}", expression, position
            )
        kind = match.lastgroup
        text = match.group()
        if kind == "string":
            tokens.append(Token("string", _ESCAPE.sub(r"\1", text[1:-1]), position))
        elif kind == "number":
            tokens.append(Token("number", float(text) if "." in text else int(text), position))
        elif kind == "op":
            tokens.append(Token("op", text, position))
        elif kind == "name":
            if text in _WORD_OPERATORS:
                tokens.append(Token("op", _WORD_OPERATORS[text], position))
            elif text in _LITERALS:
                tokens.append(Token("literal", _LITERALS[text], position))
            else:
                tokens.append(Token("name", text, position))
        position = match.end()
    tokens.append(Token("end", None, len(expression)))
    return tokens


def resolve_name(context: Any, dotted: str) -> Any:
    """
    以 dotted path 取值 (mapping key 或 attribute)

    Returns:
        值；任一段不存在時為 None
    """
    value = context
    for part in dotted.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in ("==", "==="):
        return left == right
    if op in ("!=", "!=="):
        return left != right
    if left is None or right is None:
        return False
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right
    except TypeError:
        # 型別不同 (e.g. 字串與數字) 視為 false
        return False


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _accept(self, op: str) -> bool:
        if self.current.kind == "op" and self.current.value == op:
            self.index += 1
            return True
        return False

    def _error(self, message: str) -> ConditionSyntaxError:
        return ConditionSyntaxError(message, self.expression, self.current.position)

    def parse(self) -> Node:
        if self.current.kind == "end":
            raise self._error("Empty condition")
        node = self._or_expr()
        if self.current.kind != "end":
            raise self._error(f"Unexpected token {self.current.value!r}")
        return node

    def _or_expr(self) -> Node:
        nodes = [self._and_expr()]
        while self._accept("||"):
            nodes.append(self._and_expr())
        if len(nodes) == 1:
            return nodes[0]
        return lambda ctx: any(truthy(n(ctx)) for n in nodes)

    def _and_expr(self) -> Node:
        nodes = [self._not_expr()]
        while self._accept("&&"):
            nodes.append(self._not_expr())
        if len(nodes) == 1:
            return nodes[0]
        return lambda ctx: all(truthy(n(ctx)) for n in nodes)

    def _not_expr(self) -> Node:
        if self._accept("!"):
            operand = self._not_expr()
            return lambda ctx: not truthy(operand(ctx))
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._operand()
        token = self.current
        if token.kind == "op" and token.value in _COMPARISONS:
            self.index += 1
            right = self._operand()
            op = token.value
            return lambda ctx: _compare(op, left(ctx), right(ctx))
        return left

    def _operand(self) -> Node:
        token = self.current
        if self._accept("("):
            node = self._or_expr()
            if not self._accept(")"):
                raise self._error("Missing ')'")
            return node
        if token.kind in ("string", "number", "literal"):
            self.index += 1
            value = token.value
            return lambda ctx: value
        if token.kind == "name":
            self.index += 1
            name = token.value
            return lambda ctx: resolve_name(ctx, name)
        if token.kind == "end":
            raise self._error("Unexpected end of condition")
        raise self._error(f"Unexpected token {token.value!r}")


def truthy(value: Any) -> bool:
    return bool(value)


@lru_cache(maxsize=256)
def compile_condition(expression: str) -> Node:
    """
    解析條件式

    Args:
        expression: 條件式字串

    Returns:
        context -> value 的 callable

    Raises:
        ConditionSyntaxError: 語法錯誤
    """
    return _Parser(expression.strip()).parse()


def evaluate_condition(expression: Optional[str], context: Optional[Context]) -> bool:
    """
    評估條件式 (None / 空字串視為 true)

    Args:
        expression: 條件式
        context: 評估用的 options

    Returns:
        bool
    """
    if expression is None or not expression.strip():
        return True
    result = truthy(compile_condition(expression)(context or {}))
    logger.debug(f"Condition {expression!r} -> {result}")
    return result
