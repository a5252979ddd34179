"""Mean function expressions.

A mean function is written as a Python arithmetic expression over named
parameters and the predictor, e.g. ``"exp(a + b / x)"``. It is parsed once
with the ast module into a restricted tree and evaluated against either
numpy or jax.numpy, so the same expression drives the JAX log density and
the numpy posterior projection.

Supported syntax:
    - numeric literals and names
    - binary + - * / ** and unary + -
    - calls to exp, log, sqrt, pow, abs, tanh, sin, cos
"""

from __future__ import annotations

import ast
from collections.abc import Mapping
from types import ModuleType
from typing import Any

from hdcurve.errors import ModelSpecError

__all__ = ["MeanExpression", "FUNCTIONS"]

# Function name -> attribute name on the array module
FUNCTIONS = {
    "exp": "exp",
    "log": "log",
    "sqrt": "sqrt",
    "pow": "power",
    "abs": "abs",
    "tanh": "tanh",
    "sin": "sin",
    "cos": "cos",
}

_ARITY = {"pow": 2}

_BINOPS = {
    ast.Add: lambda a, b: a + b,
    ast.Sub: lambda a, b: a - b,
    ast.Mult: lambda a, b: a * b,
    ast.Div: lambda a, b: a / b,
    ast.Pow: lambda a, b: a**b,
}

_UNARYOPS = {
    ast.USub: lambda a: -a,
    ast.UAdd: lambda a: a,
}


class MeanExpression:
    """Parsed, validated mean function.

    Attributes:
        source: The original expression text.
        free_variables: Names the expression reads (parameters and predictor).

    Example:
        >>> expr = MeanExpression("exp(a + b / x)")
        >>> sorted(expr.free_variables)
        ['a', 'b', 'x']
        >>> import numpy as np
        >>> float(expr.evaluate({"a": 0.0, "b": 0.0, "x": 2.0}, np))
        1.0
    """

    def __init__(self, source: str):
        if not isinstance(source, str) or not source.strip():
            raise ModelSpecError("Mean function must be a non-empty string")
        self.source = source.strip()
        try:
            tree = ast.parse(self.source, mode="eval")
        except SyntaxError as exc:
            raise ModelSpecError(f"Cannot parse mean function {source!r}: {exc.msg}") from None
        self._tree = tree.body
        names: set[str] = set()
        self._check(self._tree, names)
        self.free_variables = frozenset(names)

    def _check(self, node: ast.AST, names: set[str]) -> None:
        if isinstance(node, ast.BinOp):
            if type(node.op) not in _BINOPS:
                raise ModelSpecError(
                    f"Unsupported operator {type(node.op).__name__} in {self.source!r}"
                )
            self._check(node.left, names)
            self._check(node.right, names)
        elif isinstance(node, ast.UnaryOp):
            if type(node.op) not in _UNARYOPS:
                raise ModelSpecError(
                    f"Unsupported unary operator {type(node.op).__name__} in {self.source!r}"
                )
            self._check(node.operand, names)
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                func = getattr(node.func, "id", ast.dump(node.func))
                raise ModelSpecError(
                    f"Unsupported function {func!r} in {self.source!r}; "
                    f"allowed: {sorted(FUNCTIONS)}"
                )
            if node.keywords:
                raise ModelSpecError(f"Keyword arguments are not supported in {self.source!r}")
            expected = _ARITY.get(node.func.id, 1)
            if len(node.args) != expected:
                raise ModelSpecError(
                    f"{node.func.id}() takes {expected} argument(s), "
                    f"got {len(node.args)} in {self.source!r}"
                )
            for arg in node.args:
                self._check(arg, names)
        elif isinstance(node, ast.Name):
            if node.id in FUNCTIONS:
                raise ModelSpecError(f"Function name {node.id!r} used as a variable")
            names.add(node.id)
        elif isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise ModelSpecError(f"Unsupported literal {node.value!r} in {self.source!r}")
        else:
            raise ModelSpecError(
                f"Unsupported syntax {type(node).__name__} in {self.source!r}"
            )

    def evaluate(self, env: Mapping[str, Any], xp: ModuleType) -> Any:
        """Evaluate against an environment of scalars or arrays.

        Args:
            env: Maps every free variable to a value. Values broadcast.
            xp: Array module providing the functions (numpy or jax.numpy).

        Returns:
            The broadcast result.
        """
        missing = self.free_variables - set(env)
        if missing:
            raise KeyError(f"Missing values for {sorted(missing)}")
        return self._eval(self._tree, env, xp)

    def _eval(self, node: ast.AST, env: Mapping[str, Any], xp: ModuleType) -> Any:
        if isinstance(node, ast.BinOp):
            return _BINOPS[type(node.op)](
                self._eval(node.left, env, xp), self._eval(node.right, env, xp)
            )
        if isinstance(node, ast.UnaryOp):
            return _UNARYOPS[type(node.op)](self._eval(node.operand, env, xp))
        if isinstance(node, ast.Call):
            func = getattr(xp, FUNCTIONS[node.func.id])
            return func(*(self._eval(arg, env, xp) for arg in node.args))
        if isinstance(node, ast.Name):
            return env[node.id]
        return node.value

    def __repr__(self) -> str:
        return f"MeanExpression({self.source!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, MeanExpression) and other.source == self.source

    def __hash__(self) -> int:
        return hash(self.source)
