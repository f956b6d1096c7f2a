"""Linear equality constraints on regression coefficients.

Constraints are kept sparse (regressor key -> coefficient) and only expanded
into the dense ``C d`` pair over the full regressor order when the augmented
system is assembled. Constraint strings such as
``"Size + 2*Value = 3; Tech + Energy + Utility = 0"`` are parsed into the same
representation.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Union

import numpy as np

from kktreg.core.errors import ConfigurationError

if TYPE_CHECKING:
    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ConstraintLike",
    "LinearConstraint",
    "coerce_constraints",
    "expand_constraints",
    "parse_constraints",
]


@dataclass(frozen=True)
class LinearConstraint:
    """Linear equality ``sum_k coefficients[k] * beta_k = rhs``.

    Zero coefficients are dropped; keys not present have coefficient 0.
    ``label`` is used to name the corresponding Lagrange multiplier.
    """

    coefficients: Mapping[Hashable, float]
    rhs: float = 0.0
    label: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.coefficients, Mapping):
            msg = f"Constraint coefficients must be a mapping; got {type(self.coefficients).__name__}."
            raise ConfigurationError(msg)
        coeffs: dict[Hashable, float] = {}
        for key, raw in self.coefficients.items():
            try:
                c = float(raw)
            except (TypeError, ValueError) as exc:
                msg = f"Constraint coefficient for '{key}' is not numeric: {raw!r}."
                raise ConfigurationError(msg) from exc
            if not np.isfinite(c):
                msg = f"Constraint coefficient for '{key}' must be finite."
                raise ConfigurationError(msg)
            if c != 0.0:
                coeffs[key] = c
        if not coeffs:
            raise ConfigurationError("Constraint has no non-zero coefficient.")
        try:
            rhs = float(self.rhs)
        except (TypeError, ValueError) as exc:
            msg = f"Constraint right-hand side is not numeric: {self.rhs!r}."
            raise ConfigurationError(msg) from exc
        if not np.isfinite(rhs):
            raise ConfigurationError("Constraint right-hand side must be finite.")
        object.__setattr__(self, "coefficients", MappingProxyType(coeffs))
        object.__setattr__(self, "rhs", rhs)

    def __repr__(self) -> str:
        return f"LinearConstraint({self.describe()!r})"

    @property
    def keys(self) -> tuple[Hashable, ...]:
        return tuple(self.coefficients)

    def describe(self) -> str:
        """Human-readable form, e.g. ``'Size + 2*Value = 3'``."""
        if self.label:
            return self.label
        terms = []
        for key, c in self.coefficients.items():
            mag = abs(c)
            body = str(key) if mag == 1.0 else f"{mag:g}*{key}"
            if not terms:
                terms.append(body if c > 0 else f"-{body}")
            else:
                terms.append(f"{'+' if c > 0 else '-'} {body}")
        return f"{' '.join(terms)} = {self.rhs:g}"

    def row(self, regressors: Sequence[Hashable]) -> NDArray[np.float64]:
        """Dense coefficient row over ``regressors``."""
        C, _ = expand_constraints([self], regressors)
        return C[0]


ConstraintLike = Union[LinearConstraint, str, tuple, list]


def expand_constraints(
    constraints: Sequence[LinearConstraint], regressors: Sequence[Hashable],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Materialise ``(C, d)`` with ``C`` of shape (m, p) and ``d`` of shape (m,)."""
    index = {key: j for j, key in enumerate(regressors)}
    C = np.zeros((len(constraints), len(regressors)), dtype=np.float64)
    d = np.zeros((len(constraints),), dtype=np.float64)
    for i, con in enumerate(constraints):
        for key, c in con.coefficients.items():
            j = index.get(key)
            if j is None:
                msg = f"Constraint '{con.describe()}' references unknown regressor '{key}'."
                raise ConfigurationError(msg)
            C[i, j] = c
        d[i] = con.rhs
    return C, d


# ---------- parse linear equalities into constraints ----------
_NUM = r"(?:[+-]?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)"
_TERM = re.compile(
    rf"(?P<sign>[+-])\s*(?:(?P<c>{_NUM})\s*\*\s*)?"
    rf"(?:_b\[(?P<bv>.+?)\]|(?P<id>[A-Za-z_][A-Za-z0-9_.]*)|(?P<num>{_NUM}))",
)


def _split_items(body: str) -> list[str]:
    """Split a constraints body on ';' or ',' outside of brackets."""
    items, buf, depth = [], [], 0
    for ch in body:
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(0, depth - 1)
        elif ch in ",;" and depth == 0:
            s = "".join(buf).strip()
            if not s:
                raise ConfigurationError(
                    "Empty/trailing constraint separator detected; check for extra ',' or ';'.",
                )
            items.append(s)
            buf = []
            continue
        buf.append(ch)
    s = "".join(buf).strip()
    if s:
        items.append(s)
    return items


def _parse_side(side: str, names: Mapping[str, Hashable]) -> tuple[dict[Hashable, float], float]:
    """Parse one side of an equality into ``(coefficients, constant)``.

    Supported tokens: ``_b[name]``, bare identifiers, numeric constants, and an
    optional ``*``-joined numeric multiplier such as ``2*Value`` or ``0.5*_b[x y]``.
    """
    s = side.strip().replace("−", "-")
    if not s:
        return {}, 0.0
    if s[0] not in "+-":
        s = "+" + s
    coeffs: dict[Hashable, float] = {}
    const = 0.0
    pos = 0
    for m in _TERM.finditer(s):
        if s[pos : m.start()].strip():
            msg = f"Unrecognized token in constraint: '{s[pos : m.start()].strip()}'"
            raise ConfigurationError(msg)
        pos = m.end()
        sign = -1.0 if m.group("sign") == "-" else 1.0
        c = float(m.group("c")) if m.group("c") is not None else 1.0
        name = m.group("bv") if m.group("bv") is not None else m.group("id")
        if name is not None:
            key = names.get(name.strip())
            if key is None:
                msg = f"Constraint references unknown regressor '{name.strip()}'."
                raise ConfigurationError(msg)
            coeffs[key] = coeffs.get(key, 0.0) + sign * c
        else:
            const += sign * c * float(m.group("num"))
    if s[pos:].strip():
        msg = f"Unparsed tail in constraint: '{s[pos:].strip()}'"
        raise ConfigurationError(msg)
    return coeffs, const


def parse_constraints(text: str, regressors: Sequence[Hashable]) -> list[LinearConstraint]:
    """Parse semicolon/comma separated equalities into constraints.

    Example: ``"_b[Size] + 2*Value = 3; Tech + Energy + Utility == 0"``.
    Terms may appear on both sides; ``0 = 0`` items are skipped and
    ``0 = c`` items (c != 0) are rejected as infeasible.
    """
    names = {str(key): key for key in regressors}
    items = _split_items(str(text))
    if not items:
        raise ConfigurationError("Constraint string is empty.")
    out: list[LinearConstraint] = []
    for raw in items:
        eq = raw.replace("==", "=")
        parts = eq.split("=")
        if len(parts) != 2:
            msg = f"Constraint must contain exactly one '=': '{raw}'"
            raise ConfigurationError(msg)
        cl, al = _parse_side(parts[0], names)
        cr, ar = _parse_side(parts[1], names)
        coeffs = dict(cl)
        for key, c in cr.items():
            coeffs[key] = coeffs.get(key, 0.0) - c
        rhs = ar - al
        if not any(c != 0.0 for c in coeffs.values()):
            if rhs != 0.0:
                msg = f"Infeasible constraint '0 = {rhs:g}' generated from '{raw}'."
                raise ConfigurationError(msg)
            LOGGER.debug("Skipping trivial constraint '%s'.", raw)
            continue
        out.append(LinearConstraint(coeffs, rhs, label=raw.strip()))
    return out


def _coerce_one(item: Any, regressors: Sequence[Hashable]) -> list[LinearConstraint]:
    if isinstance(item, LinearConstraint):
        return [item]
    if isinstance(item, str):
        return parse_constraints(item, regressors)
    if isinstance(item, (tuple, list)) and len(item) in (2, 3) and isinstance(item[0], Mapping):
        label = item[2] if len(item) == 3 else None
        return [LinearConstraint(item[0], item[1], label=label)]
    msg = (
        "Constraints must be LinearConstraint objects, (coefficients, rhs[, label]) "
        f"tuples, or constraint strings; got {item!r}."
    )
    raise ConfigurationError(msg)


def coerce_constraints(
    constraints: ConstraintLike | Iterable[ConstraintLike] | None,
    regressors: Sequence[Hashable],
) -> tuple[LinearConstraint, ...]:
    """Normalise user constraint input into an ordered tuple of constraints."""
    if constraints is None:
        return ()
    if isinstance(constraints, (str, LinearConstraint)):
        return tuple(_coerce_one(constraints, regressors))
    if (
        isinstance(constraints, tuple)
        and len(constraints) in (2, 3)
        and isinstance(constraints[0], Mapping)
    ):
        return tuple(_coerce_one(constraints, regressors))
    out: list[LinearConstraint] = []
    for item in constraints:
        out.extend(_coerce_one(item, regressors))
    return tuple(out)
