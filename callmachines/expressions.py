"""
Inline script engine for machine ``methods``.

Scripts are short Python-syntax snippets parsed with ``ast`` and evaluated
node by node against a restricted set of operations; nothing is passed to
``exec`` or ``eval``.

Supported statements:
- Assignment and augmented assignment (``fsm.attempts += 1``,
  ``fsm["menu"] = payload.digit``, ``choice = payload.digit``)
- Expression statements, usually calls (``fire("retry")``)
- ``if`` / ``elif`` / ``else`` and ``pass``

Supported expressions: literals, names, attribute and subscript access,
comparisons, ``and``/``or``/``not``, arithmetic, dict/list/tuple displays,
conditional expressions, f-strings and calls to whitelisted functions.

Examples:
    fsm.attempts = (fsm.attempts or 0) + 1
    if fsm.attempts > 3:
        fire("hangupCall")
    control("playAudio", media="sound:" + payload.digit)
"""

import ast
import inspect
import operator
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import ActionFailure, DefinitionError, ScriptError
from .monitoring import get_logger

logger = get_logger(__name__)

# Capability functions bound per hook invocation
CAPABILITY_NAMES = ("external_call", "control", "fire", "log")

BUILTIN_FUNCTIONS: Dict[str, Callable] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "len": len,
    "min": min,
    "max": max,
    "round": round,
}

_ALLOWED_NODES = (
    ast.Module, ast.Assign, ast.AugAssign, ast.Expr, ast.If, ast.Pass,
    ast.Constant, ast.Name, ast.Attribute, ast.Subscript, ast.Compare,
    ast.BoolOp, ast.UnaryOp, ast.BinOp, ast.Dict, ast.List, ast.Tuple,
    ast.IfExp, ast.Call, ast.keyword, ast.Await, ast.JoinedStr,
    ast.FormattedValue, ast.Load, ast.Store,
    ast.And, ast.Or, ast.Not, ast.USub, ast.UAdd,
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod,
)


@dataclass
class Script:
    """A parsed and checked inline script."""
    name: str
    source: str
    tree: ast.Module


class ScriptEngine:
    """
    Parser and async evaluator for inline scripts.

    Parsing happens once, when a machine is compiled; evaluation happens
    each time the hook that owns the script runs.
    """

    COMPARISON_OPS = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.In: lambda a, b: a in b,
        ast.NotIn: lambda a, b: a not in b,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }

    BINARY_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
    }

    def __init__(self, extra_functions: Optional[Dict[str, Callable]] = None):
        self.functions = {**BUILTIN_FUNCTIONS, **(extra_functions or {})}

    def compile(self, source: str, name: str = "<script>") -> Script:
        """
        Parse a script and check it only uses supported syntax.

        Raises:
            DefinitionError: On syntax errors, unsupported constructs or
                calls to functions that are not available to scripts.
        """
        try:
            tree = ast.parse(source, mode="exec")
        except SyntaxError as e:
            raise DefinitionError(f"Invalid script syntax in '{name}': {e.msg} (line {e.lineno})") from e

        callable_names = set(self.functions) | set(CAPABILITY_NAMES)
        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise DefinitionError(f"Unsupported construct in script '{name}': {type(node).__name__}")
            if isinstance(node, ast.Call):
                if not isinstance(node.func, ast.Name) or node.func.id not in callable_names:
                    raise DefinitionError(f"Script '{name}' calls a function that is not available: {ast.unparse(node.func)}")

        return Script(name=name, source=source, tree=tree)

    async def run(
        self,
        script: Script,
        variables: Dict[str, Any],
        functions: Optional[Dict[str, Callable]] = None,
    ) -> Dict[str, Any]:
        """
        Evaluate a compiled script.

        Args:
            script: Result of :meth:`compile`
            variables: Read-only roots (``fsm``, ``event``, ``payload``); the
                objects they point to may be mutated by attribute assignment
            functions: Capability functions for this invocation

        Returns:
            Local names assigned by the script.

        Raises:
            ScriptError: On evaluation errors. Action failures raised by
                capability functions propagate unchanged.
        """
        scope = _Scope(variables, {**self.functions, **(functions or {})})
        try:
            await self._exec_block(script.tree.body, scope)
        except ActionFailure:
            raise
        except Exception as e:
            raise ScriptError(f"Script '{script.name}' failed: {e}") from e
        return scope.locals

    async def _exec_block(self, statements, scope: "_Scope") -> None:
        for statement in statements:
            await self._exec_stmt(statement, scope)

    async def _exec_stmt(self, node: ast.stmt, scope: "_Scope") -> None:
        if isinstance(node, ast.Assign):
            value = await self._eval_node(node.value, scope)
            for target in node.targets:
                await self._assign(target, value, scope)
            return

        if isinstance(node, ast.AugAssign):
            current = await self._eval_node(node.target, scope)
            op_func = self.BINARY_OPS.get(type(node.op))
            if op_func is None:
                raise ValueError(f"Unsupported operator: {type(node.op).__name__}")
            await self._assign(node.target, op_func(current, await self._eval_node(node.value, scope)), scope)
            return

        if isinstance(node, ast.Expr):
            await self._eval_node(node.value, scope)
            return

        if isinstance(node, ast.If):
            if await self._eval_node(node.test, scope):
                await self._exec_block(node.body, scope)
            else:
                await self._exec_block(node.orelse, scope)
            return

        if isinstance(node, ast.Pass):
            return

        raise ValueError(f"Unsupported statement: {type(node).__name__}")

    async def _assign(self, target: ast.expr, value: Any, scope: "_Scope") -> None:
        if isinstance(target, ast.Name):
            if target.id in scope.variables or target.id in scope.functions:
                raise ValueError(f"Cannot rebind '{target.id}'")
            scope.locals[target.id] = value
            return

        if isinstance(target, ast.Attribute):
            obj = await self._eval_node(target.value, scope)
            if not isinstance(obj, MutableMapping):
                raise ValueError(f"Cannot set attribute '{target.attr}' on {type(obj).__name__}")
            obj[target.attr] = value
            return

        if isinstance(target, ast.Subscript):
            obj = await self._eval_node(target.value, scope)
            index = await self._eval_node(target.slice, scope)
            obj[index] = value
            return

        raise ValueError(f"Unsupported assignment target: {type(target).__name__}")

    async def _eval_node(self, node: ast.AST, scope: "_Scope") -> Any:
        """Recursively evaluate an expression node."""

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            name = node.id
            if name in ('true', 'True'):
                return True
            if name in ('false', 'False'):
                return False
            if name in ('null', 'None'):
                return None
            return scope.lookup(name)

        # Mapping fields read like attributes; missing fields are None
        if isinstance(node, ast.Attribute):
            value = await self._eval_node(node.value, scope)
            if isinstance(value, Mapping):
                return value.get(node.attr)
            raise ValueError(f"Cannot read attribute '{node.attr}' of {type(value).__name__}")

        if isinstance(node, ast.Subscript):
            value = await self._eval_node(node.value, scope)
            index = await self._eval_node(node.slice, scope)
            return value[index]

        if isinstance(node, ast.Compare):
            left = await self._eval_node(node.left, scope)
            for op, comparator in zip(node.ops, node.comparators):
                right = await self._eval_node(comparator, scope)
                if not self.COMPARISON_OPS[type(op)](left, right):
                    return False
                left = right
            return True

        # Short-circuit, returning the deciding operand like Python does
        if isinstance(node, ast.BoolOp):
            result = None
            for value_node in node.values:
                result = await self._eval_node(value_node, scope)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = await self._eval_node(node.operand, scope)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
            raise ValueError(f"Unsupported unary operator: {type(node.op).__name__}")

        if isinstance(node, ast.BinOp):
            left = await self._eval_node(node.left, scope)
            right = await self._eval_node(node.right, scope)
            op_func = self.BINARY_OPS.get(type(node.op))
            if op_func is None:
                raise ValueError(f"Unsupported binary operator: {type(node.op).__name__}")
            return op_func(left, right)

        if isinstance(node, ast.IfExp):
            if await self._eval_node(node.test, scope):
                return await self._eval_node(node.body, scope)
            return await self._eval_node(node.orelse, scope)

        if isinstance(node, ast.Dict):
            result = {}
            for key_node, value_node in zip(node.keys, node.values):
                if key_node is None:
                    result.update(await self._eval_node(value_node, scope))
                else:
                    result[await self._eval_node(key_node, scope)] = await self._eval_node(value_node, scope)
            return result

        if isinstance(node, (ast.List, ast.Tuple)):
            items = [await self._eval_node(item, scope) for item in node.elts]
            return items if isinstance(node, ast.List) else tuple(items)

        if isinstance(node, ast.JoinedStr):
            parts = []
            for part in node.values:
                parts.append(str(await self._eval_node(part, scope)))
            return "".join(parts)

        if isinstance(node, ast.FormattedValue):
            value = await self._eval_node(node.value, scope)
            if node.conversion == ord('r'):
                value = repr(value)
            spec = await self._eval_node(node.format_spec, scope) if node.format_spec else ""
            return format(value, spec)

        if isinstance(node, ast.Await):
            return await self._eval_node(node.value, scope)

        if isinstance(node, ast.Call):
            func = scope.function(node.func.id)
            args = [await self._eval_node(arg, scope) for arg in node.args]
            kwargs = {kw.arg: await self._eval_node(kw.value, scope) for kw in node.keywords}
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        raise ValueError(f"Unsupported expression type: {type(node).__name__}")


class _Scope:
    """Name resolution for one script run: locals, then variables."""

    def __init__(self, variables: Dict[str, Any], functions: Dict[str, Callable]):
        self.variables = variables
        self.functions = functions
        self.locals: Dict[str, Any] = {}

    def lookup(self, name: str) -> Any:
        if name in self.locals:
            return self.locals[name]
        if name in self.variables:
            return self.variables[name]
        raise KeyError(f"Unknown variable: {name}")

    def function(self, name: str) -> Callable:
        if name not in self.functions:
            raise ValueError(f"Function '{name}' is not available here")
        return self.functions[name]


__all__ = [
    "CAPABILITY_NAMES",
    "Script",
    "ScriptEngine",
]
