"""
A small, auditable expression and script language.

Expressions cover literals, variable and property access, arithmetic,
comparisons, boolean logic, ternaries, list/dict literals, single-argument
lambdas (``x => x.price * 2``) and calls into a curated function library.
Scripts add ``let``, assignment, ``if``/``else``, ``for ... in``, ``break``,
``continue`` and ``return``.

Nothing here touches host objects: values are plain JSON-like data and the
only functions reachable are the ones in :data:`FUNCTIONS`.
"""
import json
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..exceptions import ScriptError, ScriptMemoryError, ScriptSyntaxError, StepTimeoutError
from .paths import get_path

KEYWORDS = {
    "and", "or", "not", "in", "let", "if", "else", "for", "return",
    "break", "continue", "true", "false", "null",
}

OPERATORS = [
    "=>", "==", "!=", "<=", ">=", "&&", "||", "**", "+=", "-=",
    "+", "-", "*", "/", "%", "<", ">", "!", "=", "?", ":", ".", ",",
    "(", ")", "[", "]", "{", "}", ";",
]

MAX_NESTING = 64


@dataclass
class Token:
    type: str  # NUM, STR, NAME, OP, NEWLINE, EOF
    value: Any
    pos: int


def tokenize(source: str) -> List[Token]:
    """Turn source text into tokens; newlines inside () and [] are dropped"""
    tokens: List[Token] = []
    depth = 0
    i = 0
    length = len(source)
    while i < length:
        ch = source[i]
        if ch == "\n":
            if depth == 0:
                tokens.append(Token("NEWLINE", "\n", i))
            i += 1
            continue
        if ch.isspace():
            i += 1
            continue
        if ch == "#" or source.startswith("//", i):
            while i < length and source[i] != "\n":
                i += 1
            continue
        if ch.isdigit() or (ch == "." and i + 1 < length and source[i + 1].isdigit()):
            start = i
            while i < length and (source[i].isdigit() or source[i] == "."):
                i += 1
            if i < length and source[i] in "eE":
                i += 1
                if i < length and source[i] in "+-":
                    i += 1
                while i < length and source[i].isdigit():
                    i += 1
            text = source[start:i]
            try:
                value = float(text) if any(c in text for c in ".eE") else int(text)
            except ValueError:
                raise ScriptSyntaxError(f"Invalid number '{text}'", start)
            tokens.append(Token("NUM", value, start))
            continue
        if ch in "\"'":
            start = i
            quote = ch
            i += 1
            chars = []
            while True:
                if i >= length:
                    raise ScriptSyntaxError("Unterminated string", start)
                c = source[i]
                if c == quote:
                    i += 1
                    break
                if c == "\\" and i + 1 < length:
                    nxt = source[i + 1]
                    chars.append({"n": "\n", "t": "\t", "r": "\r"}.get(nxt, nxt))
                    i += 2
                    continue
                chars.append(c)
                i += 1
            tokens.append(Token("STR", "".join(chars), start))
            continue
        if ch.isalpha() or ch == "_" or ch == "$":
            start = i
            i += 1
            while i < length and (source[i].isalnum() or source[i] == "_"):
                i += 1
            tokens.append(Token("NAME", source[start:i], start))
            continue
        for op in OPERATORS:
            if source.startswith(op, i):
                if op in "([":
                    depth += 1
                elif op in ")]":
                    depth = max(0, depth - 1)
                tokens.append(Token("OP", op, i))
                i += len(op)
                break
        else:
            raise ScriptSyntaxError(f"Unexpected character '{ch}'", i)
    tokens.append(Token("EOF", None, length))
    return tokens


# -- AST ---------------------------------------------------------------------

@dataclass
class Node:
    pos: int = field(default=0, repr=False, compare=False)


@dataclass
class Literal(Node):
    value: Any = None


@dataclass
class Name(Node):
    id: str = ""


@dataclass
class Attr(Node):
    obj: Node = None
    name: str = ""


@dataclass
class Index(Node):
    obj: Node = None
    index: Node = None


@dataclass
class Call(Node):
    func: str = ""
    args: List[Node] = field(default_factory=list)


@dataclass
class Unary(Node):
    op: str = ""
    operand: Node = None


@dataclass
class Binary(Node):
    op: str = ""
    left: Node = None
    right: Node = None


@dataclass
class Logical(Node):
    op: str = ""
    left: Node = None
    right: Node = None


@dataclass
class Ternary(Node):
    test: Node = None
    body: Node = None
    orelse: Node = None


@dataclass
class ListLit(Node):
    items: List[Node] = field(default_factory=list)


@dataclass
class DictLit(Node):
    pairs: List[Tuple[Node, Node]] = field(default_factory=list)


@dataclass
class Lambda(Node):
    param: str = ""
    body: Node = None


@dataclass
class Let(Node):
    name: str = ""
    value: Node = None


@dataclass
class Assign(Node):
    target: Node = None
    value: Node = None
    op: str = "="


@dataclass
class If(Node):
    test: Node = None
    body: List[Node] = field(default_factory=list)
    orelse: List[Node] = field(default_factory=list)


@dataclass
class For(Node):
    var: str = ""
    index_var: Optional[str] = None
    iterable: Node = None
    body: List[Node] = field(default_factory=list)


@dataclass
class Return(Node):
    value: Optional[Node] = None


@dataclass
class Break(Node):
    pass


@dataclass
class Continue(Node):
    pass


@dataclass
class ExprStmt(Node):
    value: Node = None


# -- Parser ------------------------------------------------------------------

class Parser:
    """Recursive-descent parser producing the AST above"""

    def __init__(self, source: str):
        self.tokens = tokenize(source)
        self.pos = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def peek(self, offset: int = 1) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.type != "EOF":
            self.pos += 1
        return token

    def check(self, type_: str, value: Any = None) -> bool:
        token = self.current
        return token.type == type_ and (value is None or token.value == value)

    def check_op(self, *values: str) -> bool:
        return self.current.type == "OP" and self.current.value in values

    def check_keyword(self, *values: str) -> bool:
        return self.current.type == "NAME" and self.current.value in values

    def expect_op(self, value: str) -> Token:
        if not self.check_op(value):
            raise ScriptSyntaxError(f"Expected '{value}'", self.current.pos)
        return self.advance()

    def expect_name(self) -> str:
        token = self.current
        if token.type != "NAME" or token.value in KEYWORDS:
            raise ScriptSyntaxError("Expected identifier", token.pos)
        self.advance()
        return token.value

    def skip_newlines(self):
        while self.check("NEWLINE") or self.check_op(";"):
            self.advance()

    def _enter(self):
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise ScriptSyntaxError("Expression nested too deeply", self.current.pos)

    def _leave(self):
        self.depth -= 1

    # entry points

    def parse_expression_source(self) -> Node:
        self.skip_newlines()
        node = self.expression()
        self.skip_newlines()
        if not self.check("EOF"):
            raise ScriptSyntaxError("Unexpected token", self.current.pos)
        return node

    def parse_program(self) -> List[Node]:
        statements = []
        self.skip_newlines()
        while not self.check("EOF"):
            statements.append(self.statement())
            self._end_statement()
        return statements

    # statements

    def _end_statement(self):
        if self.check("EOF") or self.check_op("}"):
            return
        if not (self.check("NEWLINE") or self.check_op(";")):
            raise ScriptSyntaxError("Expected end of statement", self.current.pos)
        self.skip_newlines()

    def block(self) -> List[Node]:
        self.expect_op("{")
        self._enter()
        statements = []
        self.skip_newlines()
        while not self.check_op("}"):
            if self.check("EOF"):
                raise ScriptSyntaxError("Unterminated block", self.current.pos)
            statements.append(self.statement())
            self._end_statement()
        self.advance()
        self._leave()
        return statements

    def statement(self) -> Node:
        token = self.current
        if self.check_keyword("let"):
            self.advance()
            name = self.expect_name()
            self.expect_op("=")
            return Let(pos=token.pos, name=name, value=self.expression())
        if self.check_keyword("if"):
            return self.if_statement()
        if self.check_keyword("for"):
            self.advance()
            var = self.expect_name()
            index_var = None
            if self.check_op(","):
                self.advance()
                index_var = self.expect_name()
            if not self.check_keyword("in"):
                raise ScriptSyntaxError("Expected 'in'", self.current.pos)
            self.advance()
            iterable = self.expression()
            return For(pos=token.pos, var=var, index_var=index_var,
                       iterable=iterable, body=self.block())
        if self.check_keyword("return"):
            self.advance()
            if self.check("NEWLINE") or self.check("EOF") or self.check_op(";", "}"):
                return Return(pos=token.pos)
            return Return(pos=token.pos, value=self.expression())
        if self.check_keyword("break"):
            self.advance()
            return Break(pos=token.pos)
        if self.check_keyword("continue"):
            self.advance()
            return Continue(pos=token.pos)
        expr = self.expression()
        if self.check_op("=", "+=", "-="):
            op = self.advance().value
            if not isinstance(expr, (Name, Attr, Index)):
                raise ScriptSyntaxError("Invalid assignment target", token.pos)
            return Assign(pos=token.pos, target=expr, value=self.expression(), op=op)
        return ExprStmt(pos=token.pos, value=expr)

    def if_statement(self) -> Node:
        token = self.advance()
        test = self.expression()
        body = self.block()
        orelse: List[Node] = []
        # allow "}\nelse {"
        save = self.pos
        while self.check("NEWLINE"):
            self.advance()
        if self.check_keyword("else"):
            self.advance()
            if self.check_keyword("if"):
                orelse = [self.if_statement()]
            else:
                orelse = self.block()
        else:
            self.pos = save
        return If(pos=token.pos, test=test, body=body, orelse=orelse)

    # expressions, lowest precedence first

    def expression(self) -> Node:
        self._enter()
        try:
            return self.ternary()
        finally:
            self._leave()

    def ternary(self) -> Node:
        node = self.logical_or()
        if self.check_op("?"):
            token = self.advance()
            body = self.expression()
            self.expect_op(":")
            orelse = self.expression()
            return Ternary(pos=token.pos, test=node, body=body, orelse=orelse)
        return node

    def logical_or(self) -> Node:
        node = self.logical_and()
        while self.check_op("||") or self.check_keyword("or"):
            token = self.advance()
            node = Logical(pos=token.pos, op="or", left=node, right=self.logical_and())
        return node

    def logical_and(self) -> Node:
        node = self.logical_not()
        while self.check_op("&&") or self.check_keyword("and"):
            token = self.advance()
            node = Logical(pos=token.pos, op="and", left=node, right=self.logical_not())
        return node

    def logical_not(self) -> Node:
        if self.check_op("!") or self.check_keyword("not"):
            token = self.advance()
            self._enter()
            try:
                return Unary(pos=token.pos, op="not", operand=self.logical_not())
            finally:
                self._leave()
        return self.comparison()

    def comparison(self) -> Node:
        node = self.additive()
        while True:
            if self.check_op("==", "!=", "<", "<=", ">", ">="):
                token = self.advance()
                node = Binary(pos=token.pos, op=token.value, left=node, right=self.additive())
            elif self.check_keyword("in"):
                token = self.advance()
                node = Binary(pos=token.pos, op="in", left=node, right=self.additive())
            elif self.check_keyword("not") and self.peek().type == "NAME" and self.peek().value == "in":
                token = self.advance()
                self.advance()
                node = Binary(pos=token.pos, op="not in", left=node, right=self.additive())
            else:
                return node

    def additive(self) -> Node:
        node = self.multiplicative()
        while self.check_op("+", "-"):
            token = self.advance()
            node = Binary(pos=token.pos, op=token.value, left=node, right=self.multiplicative())
        return node

    def multiplicative(self) -> Node:
        node = self.unary()
        while self.check_op("*", "/", "%"):
            token = self.advance()
            node = Binary(pos=token.pos, op=token.value, left=node, right=self.unary())
        return node

    def unary(self) -> Node:
        if self.check_op("-", "+"):
            token = self.advance()
            self._enter()
            try:
                return Unary(pos=token.pos, op=token.value, operand=self.unary())
            finally:
                self._leave()
        return self.power()

    def power(self) -> Node:
        node = self.postfix()
        if self.check_op("**"):
            token = self.advance()
            return Binary(pos=token.pos, op="**", left=node, right=self.unary())
        return node

    def postfix(self) -> Node:
        node = self.primary()
        while True:
            if self.check_op("."):
                token = self.advance()
                name = self.current
                if name.type != "NAME":
                    raise ScriptSyntaxError("Expected property name", name.pos)
                self.advance()
                node = Attr(pos=token.pos, obj=node, name=name.value)
            elif self.check_op("["):
                token = self.advance()
                index = self.expression()
                self.expect_op("]")
                node = Index(pos=token.pos, obj=node, index=index)
            elif self.check_op("(") and isinstance(node, Name):
                token = self.advance()
                args = []
                while not self.check_op(")"):
                    args.append(self.expression())
                    if not self.check_op(")"):
                        self.expect_op(",")
                self.advance()
                node = Call(pos=token.pos, func=node.id, args=args)
            else:
                return node

    def primary(self) -> Node:
        token = self.current
        if token.type == "NUM" or token.type == "STR":
            self.advance()
            return Literal(pos=token.pos, value=token.value)
        if token.type == "NAME":
            if token.value == "true":
                self.advance()
                return Literal(pos=token.pos, value=True)
            if token.value == "false":
                self.advance()
                return Literal(pos=token.pos, value=False)
            if token.value == "null":
                self.advance()
                return Literal(pos=token.pos, value=None)
            if token.value in KEYWORDS:
                raise ScriptSyntaxError(f"Unexpected keyword '{token.value}'", token.pos)
            self.advance()
            if self.check_op("=>"):
                self.advance()
                return Lambda(pos=token.pos, param=token.value, body=self.expression())
            return Name(pos=token.pos, id=token.value.lstrip("$"))
        if self.check_op("("):
            self.advance()
            node = self.expression()
            self.expect_op(")")
            return node
        if self.check_op("["):
            self.advance()
            items = []
            while not self.check_op("]"):
                items.append(self.expression())
                if not self.check_op("]"):
                    self.expect_op(",")
            self.advance()
            return ListLit(pos=token.pos, items=items)
        if self.check_op("{"):
            self.advance()
            pairs = []
            self.skip_newlines()
            while not self.check_op("}"):
                key_token = self.current
                if key_token.type in ("NAME", "STR"):
                    self.advance()
                    key: Node = Literal(pos=key_token.pos, value=key_token.value)
                else:
                    raise ScriptSyntaxError("Expected dict key", key_token.pos)
                self.expect_op(":")
                pairs.append((key, self.expression()))
                self.skip_newlines()
                if not self.check_op("}"):
                    self.expect_op(",")
                    self.skip_newlines()
            self.advance()
            return DictLit(pos=token.pos, pairs=pairs)
        if token.type == "EOF":
            raise ScriptSyntaxError("Unexpected end of input", token.pos)
        raise ScriptSyntaxError(f"Unexpected token '{token.value}'", token.pos)


def parse_expression(source: str) -> Node:
    if not isinstance(source, str) or not source.strip():
        raise ScriptSyntaxError("Empty expression")
    return Parser(source).parse_expression_source()


def parse_script(source: str) -> List[Node]:
    if not isinstance(source, str):
        raise ScriptSyntaxError("Script must be a string")
    return Parser(source).parse_program()


# -- Runtime -----------------------------------------------------------------

@dataclass
class Limits:
    """Resource caps applied to a single evaluation"""
    timeout_ms: int = 5000
    memory_mb: int = 128
    max_output_bytes: int = 1024 * 1024
    max_sleep_ms: int = 1000

    @property
    def max_items(self) -> int:
        # rough per-element estimate of 64 bytes
        return max(1000, self.memory_mb * 1024 * 1024 // 64)

    @property
    def max_string(self) -> int:
        return self.memory_mb * 1024 * 1024 // 2

    def to_dict(self) -> Dict[str, int]:
        return {
            "timeout_ms": self.timeout_ms,
            "memory_mb": self.memory_mb,
            "max_output_bytes": self.max_output_bytes,
            "max_sleep_ms": self.max_sleep_ms,
        }


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


@dataclass
class Function:
    """Closure created from a lambda literal"""
    param: str
    body: Node
    scope: "Scope"


class Scope:
    """Variable lookup: script locals shadow workflow variables"""

    def __init__(self, variables: Dict[str, Any], parent: Optional["Scope"] = None):
        self.variables = variables
        self.locals: Dict[str, Any] = {}
        self.parent = parent

    def lookup(self, name: str) -> Any:
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope.locals:
                return scope.locals[name]
            scope = scope.parent
        return self.variables.get(name)

    def declare(self, name: str, value: Any):
        self.locals[name] = value

    def assign(self, name: str, value: Any):
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope.locals:
                scope.locals[name] = value
                return
            scope = scope.parent
        self.variables[name] = value


class Interpreter:
    """Tree-walking evaluator with a wall-clock budget"""

    CHECK_EVERY = 128

    def __init__(self, variables: Dict[str, Any], limits: Limits, now_iso: str,
                 allow_sleep: bool = False):
        self.variables = variables
        self.limits = limits
        self.now_iso = now_iso
        self.allow_sleep = allow_sleep
        self.deadline = time.monotonic() + limits.timeout_ms / 1000.0
        self.ticks = 0

    def tick(self):
        self.ticks += 1
        if self.ticks % self.CHECK_EVERY == 0 and time.monotonic() > self.deadline:
            raise StepTimeoutError(f"Evaluation exceeded {self.limits.timeout_ms} ms")

    def check_size(self, value: Any) -> Any:
        if isinstance(value, str) and len(value) > self.limits.max_string:
            raise ScriptMemoryError("String exceeds memory ceiling")
        if isinstance(value, (list, dict)) and len(value) > self.limits.max_items:
            raise ScriptMemoryError("Collection exceeds memory ceiling")
        return value

    # scripts

    def run_program(self, statements: List[Node]) -> Any:
        scope = Scope(self.variables)
        try:
            self.exec_block(statements, scope)
        except _Return as ret:
            return ret.value
        except (_Break, _Continue):
            raise ScriptError("break/continue outside loop")
        return None

    def exec_block(self, statements: List[Node], scope: Scope):
        for statement in statements:
            self.exec_statement(statement, scope)

    def exec_statement(self, node: Node, scope: Scope):
        self.tick()
        if isinstance(node, Let):
            scope.declare(node.name, self.eval(node.value, scope))
        elif isinstance(node, Assign):
            value = self.eval(node.value, scope)
            if node.op != "=":
                current = self.eval(node.target, scope)
                value = self.binary("+" if node.op == "+=" else "-", current, value, node.pos)
            self.assign(node.target, value, scope)
        elif isinstance(node, If):
            branch = node.body if self.truthy(self.eval(node.test, scope)) else node.orelse
            self.exec_block(branch, scope)
        elif isinstance(node, For):
            iterable = self.eval(node.iterable, scope)
            if isinstance(iterable, dict):
                iterable = list(iterable.keys())
            if not isinstance(iterable, (list, str)):
                raise ScriptError(f"Cannot iterate over {type_name(iterable)}")
            for index, item in enumerate(list(iterable)):
                scope.declare(node.var, item)
                if node.index_var:
                    scope.declare(node.index_var, index)
                try:
                    self.exec_block(node.body, scope)
                except _Break:
                    break
                except _Continue:
                    continue
        elif isinstance(node, Return):
            raise _Return(self.eval(node.value, scope) if node.value else None)
        elif isinstance(node, Break):
            raise _Break()
        elif isinstance(node, Continue):
            raise _Continue()
        elif isinstance(node, ExprStmt):
            self.eval(node.value, scope)
        else:
            raise ScriptError(f"Unsupported statement {type(node).__name__}")

    def assign(self, target: Node, value: Any, scope: Scope):
        if isinstance(target, Name):
            scope.assign(target.id, value)
            return
        container = self.eval(target.obj, scope)
        if isinstance(target, Attr):
            key: Any = target.name
        else:
            key = self.eval(target.index, scope)
        if isinstance(container, dict):
            if not isinstance(key, str):
                key = str(key)
            container[key] = value
            self.check_size(container)
        elif isinstance(container, list) and isinstance(key, int) and not isinstance(key, bool):
            if key == len(container):
                container.append(value)
                self.check_size(container)
            elif -len(container) <= key < len(container):
                container[key] = value
            else:
                raise ScriptError(f"List index {key} out of range")
        else:
            raise ScriptError(f"Cannot assign into {type_name(container)}")

    # expressions

    def eval(self, node: Node, scope: Scope) -> Any:
        self.tick()
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            return scope.lookup(node.id)
        if isinstance(node, Attr):
            obj = self.eval(node.obj, scope)
            if isinstance(obj, dict):
                return obj.get(node.name)
            if isinstance(obj, (list, str)) and node.name == "length":
                return len(obj)
            if obj is None:
                return None
            raise ScriptError(f"Cannot read property '{node.name}' of {type_name(obj)}")
        if isinstance(node, Index):
            return self.index(self.eval(node.obj, scope), self.eval(node.index, scope))
        if isinstance(node, Call):
            return self.call(node, scope)
        if isinstance(node, Unary):
            value = self.eval(node.operand, scope)
            if node.op == "not":
                return not self.truthy(value)
            if not is_number(value):
                raise ScriptError(f"Unary '{node.op}' needs a number, got {type_name(value)}")
            return -value if node.op == "-" else value
        if isinstance(node, Logical):
            left = self.eval(node.left, scope)
            if node.op == "and":
                return self.eval(node.right, scope) if self.truthy(left) else left
            return left if self.truthy(left) else self.eval(node.right, scope)
        if isinstance(node, Binary):
            return self.binary(node.op, self.eval(node.left, scope),
                               self.eval(node.right, scope), node.pos)
        if isinstance(node, Ternary):
            if self.truthy(self.eval(node.test, scope)):
                return self.eval(node.body, scope)
            return self.eval(node.orelse, scope)
        if isinstance(node, ListLit):
            return self.check_size([self.eval(item, scope) for item in node.items])
        if isinstance(node, DictLit):
            return {self.eval(k, scope): self.eval(v, scope) for k, v in node.pairs}
        if isinstance(node, Lambda):
            return Function(node.param, node.body, scope)
        raise ScriptError(f"Unsupported expression {type(node).__name__}")

    def apply(self, fn: Any, arg: Any) -> Any:
        if not isinstance(fn, Function):
            raise ScriptError("Expected a function (x => ...)")
        scope = Scope(self.variables, parent=fn.scope)
        scope.declare(fn.param, arg)
        return self.eval(fn.body, scope)

    def call(self, node: Call, scope: Scope) -> Any:
        if node.func == "sleep":
            if not self.allow_sleep:
                raise ScriptError("sleep() is only available in scripts")
            args = [self.eval(arg, scope) for arg in node.args]
            return self.sleep(args[0] if args else 0)
        if node.func == "now":
            return self.now_iso
        fn = FUNCTIONS.get(node.func)
        if fn is None:
            raise ScriptError(f"Unknown function '{node.func}'")
        args = [self.eval(arg, scope) for arg in node.args]
        try:
            if node.func in HIGHER_ORDER:
                result = fn(self, *args)
            else:
                result = fn(*args)
        except ScriptError:
            raise
        except StepTimeoutError:
            raise
        except (TypeError, ValueError, KeyError, IndexError, AttributeError, ZeroDivisionError) as exc:
            raise ScriptError(f"{node.func}(): {exc}")
        return self.check_size(result)

    def sleep(self, ms: Any) -> None:
        if not is_number(ms) or ms < 0:
            raise ScriptError("sleep() needs a non-negative number of milliseconds")
        delay = min(ms, self.limits.max_sleep_ms) / 1000.0
        if time.monotonic() + delay > self.deadline:
            raise StepTimeoutError(f"Evaluation exceeded {self.limits.timeout_ms} ms")
        time.sleep(delay)
        return None

    def index(self, obj: Any, key: Any) -> Any:
        if isinstance(obj, dict):
            return obj.get(key if isinstance(key, str) else str(key))
        if isinstance(obj, (list, str)):
            if not isinstance(key, int) or isinstance(key, bool):
                raise ScriptError(f"Index must be an integer, got {type_name(key)}")
            if -len(obj) <= key < len(obj):
                return obj[key]
            return None
        if obj is None:
            return None
        raise ScriptError(f"Cannot index {type_name(obj)}")

    def binary(self, op: str, left: Any, right: Any, pos: int) -> Any:
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if op in ("in", "not in"):
            if isinstance(right, dict):
                found = not isinstance(left, (list, dict)) and left in right
            elif isinstance(right, list):
                found = left in right
            elif isinstance(right, str) and isinstance(left, str):
                found = left in right
            else:
                raise ScriptError(f"'in' needs a list, dict or string, got {type_name(right)}")
            return found if op == "in" else not found
        if op in ("<", "<=", ">", ">="):
            if not ((is_number(left) and is_number(right))
                    or (isinstance(left, str) and isinstance(right, str))):
                raise ScriptError(f"Cannot compare {type_name(left)} and {type_name(right)}")
            return {"<": left < right, "<=": left <= right,
                    ">": left > right, ">=": left >= right}[op]
        if op == "+":
            if isinstance(left, str) or isinstance(right, str):
                return self.check_size(to_string(left) + to_string(right))
            if isinstance(left, list) and isinstance(right, list):
                return self.check_size(left + right)
        if not (is_number(left) and is_number(right)):
            raise ScriptError(f"Operator '{op}' needs numbers, got {type_name(left)} and {type_name(right)}")
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op in ("/", "%"):
            if right == 0:
                raise ScriptError("Division by zero")
            if op == "%":
                return left % right
            result = left / right
            return int(result) if isinstance(left, int) and isinstance(right, int) and result.is_integer() else result
        if op == "**":
            if abs(right) > 1000 or (abs(left) > 1e6 and abs(right) > 100):
                raise ScriptMemoryError("Exponent too large")
            return left ** right
        raise ScriptError(f"Unknown operator '{op}'")

    @staticmethod
    def truthy(value: Any) -> bool:
        return bool(value)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "dict"
    if isinstance(value, Function):
        return "function"
    return "unknown"


def to_string(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return str(value)


# -- Function library ----------------------------------------------------------

def _number(value: Any) -> Any:
    if is_number(value):
        return value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        return float(text) if any(c in text for c in ".eE") else int(text)
    raise ScriptError(f"Cannot convert {type_name(value)} to number")


def _round(value: Any, digits: int = 0) -> Any:
    result = round(value, int(digits))
    return int(result) if digits == 0 else result


def _range(*args: Any) -> List[int]:
    values = range(*[int(a) for a in args])
    if len(values) > 100000:
        raise ScriptMemoryError("range() too large")
    return list(values)


def _avg(values: List[Any]) -> Any:
    return sum(values) / len(values) if values else None


def _map(interp: Interpreter, items: List[Any], fn: Function) -> List[Any]:
    return [interp.apply(fn, item) for item in _as_list(items)]


def _filter(interp: Interpreter, items: List[Any], fn: Function) -> List[Any]:
    return [item for item in _as_list(items) if interp.truthy(interp.apply(fn, item))]


def _find(interp: Interpreter, items: List[Any], fn: Function) -> Any:
    for item in _as_list(items):
        if interp.truthy(interp.apply(fn, item)):
            return item
    return None


def _any(interp: Interpreter, items: List[Any], fn: Optional[Function] = None) -> bool:
    return any(interp.truthy(interp.apply(fn, i) if fn else i) for i in _as_list(items))


def _all(interp: Interpreter, items: List[Any], fn: Optional[Function] = None) -> bool:
    return all(interp.truthy(interp.apply(fn, i) if fn else i) for i in _as_list(items))


def _sort_by(interp: Interpreter, items: List[Any], fn: Optional[Function] = None) -> List[Any]:
    keyed = [(interp.apply(fn, item) if fn else item, item) for item in _as_list(items)]
    try:
        keyed.sort(key=lambda pair: pair[0])
    except TypeError:
        raise ScriptError("sort(): values are not comparable")
    return [item for _, item in keyed]


def _sum_by(interp: Interpreter, items: List[Any], fn: Optional[Function] = None) -> Any:
    return sum(interp.apply(fn, item) if fn else item for item in _as_list(items))


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if value is None:
        return []
    raise ScriptError(f"Expected a list, got {type_name(value)}")


def _unique(items: List[Any]) -> List[Any]:
    seen: List[Any] = []
    for item in _as_list(items):
        if item not in seen:
            seen.append(item)
    return seen


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _from_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ScriptError(f"from_json(): {exc.msg}")


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": lambda v: len(v) if v is not None else 0,
    "lower": lambda s: to_string(s).lower(),
    "upper": lambda s: to_string(s).upper(),
    "trim": lambda s: to_string(s).strip(),
    "contains": lambda h, n: n in h if h is not None else False,
    "starts_with": lambda s, p: to_string(s).startswith(to_string(p)),
    "ends_with": lambda s, p: to_string(s).endswith(to_string(p)),
    "split": lambda s, sep=",": to_string(s).split(sep),
    "join": lambda items, sep=",": sep.join(to_string(i) for i in _as_list(items)),
    "replace": lambda s, old, new: to_string(s).replace(old, new),
    "substring": lambda s, start, end=None: to_string(s)[int(start):None if end is None else int(end)],
    "abs": abs,
    "round": _round,
    "floor": lambda v: math.floor(v),
    "ceil": lambda v: math.ceil(v),
    "min": lambda *v: min(v[0]) if len(v) == 1 else min(v),
    "max": lambda *v: max(v[0]) if len(v) == 1 else max(v),
    "avg": _avg,
    "number": _number,
    "int": lambda v: int(_number(v)),
    "float": lambda v: float(_number(v)),
    "str": to_string,
    "bool": bool,
    "keys": lambda d: list(d.keys()),
    "values": lambda d: list(d.values()),
    "get": lambda obj, path, default=None: get_path(obj, path, default),
    "has": lambda obj, key: isinstance(obj, dict) and key in obj,
    "range": _range,
    "concat": lambda *lists: [i for lst in lists for i in _as_list(lst)],
    "push": lambda items, value: _as_list(items) + [value],
    "slice": lambda items, start, end=None: _as_list(items)[int(start):None if end is None else int(end)],
    "reverse": lambda items: list(reversed(_as_list(items))),
    "unique": _unique,
    "count": lambda items: len(_as_list(items)),
    "coalesce": _coalesce,
    "is_null": lambda v: v is None,
    "type_of": type_name,
    "to_json": lambda v: json.dumps(v, sort_keys=True, default=str),
    "from_json": _from_json,
    "map": _map,
    "filter": _filter,
    "find": _find,
    "any": _any,
    "all": _all,
    "sort": _sort_by,
    "sum": _sum_by,
}

HIGHER_ORDER = {"map", "filter", "find", "any", "all", "sort", "sum"}
