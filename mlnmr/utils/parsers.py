"""
Parsing utilities for mlnmr.

Regression formulas are a small closed language: covariate main effects
plus covariate-by-treatment interactions. ``parse_regression`` turns a
formula string into the structured ``RegressionSpec`` consumed by the
design builder.
"""

import re
from dataclasses import dataclass, field
from typing import List

__all__ = []

# Unicode-aware identifier pattern: letter or underscore, then word characters
_IDENT = r"[^\W\d]\w*"
_TRT_TOKENS = (".trt", ".trtclass")


@dataclass(frozen=True)
class RegressionSpec:
    """Structured regression specification.

    Attributes:
        prognostic: Covariates entering as main effects.
        effect_modifiers: Covariates interacting with treatment.
        by_class: Interactions were written against ``.trtclass``
            (common class interactions).
    """

    prognostic: List[str] = field(default_factory=list)
    effect_modifiers: List[str] = field(default_factory=list)
    by_class: bool = False

    @property
    def covariates(self) -> List[str]:
        """All covariates in order of first appearance."""
        seen: List[str] = []
        for name in list(self.prognostic) + list(self.effect_modifiers):
            if name not in seen:
                seen.append(name)
        return seen

    @property
    def is_empty(self) -> bool:
        return not self.prognostic and not self.effect_modifiers


def _split_top_level(text: str, sep: str) -> List[str]:
    """Split *text* on *sep* outside parentheses."""
    parts, depth, current = [], 0, []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in '{text}'")
        if ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    if depth != 0:
        raise ValueError(f"Unbalanced parentheses in '{text}'")
    parts.append("".join(current).strip())
    return parts


def _parse_group(text: str) -> List[str]:
    """Parse ``a`` or ``(a + b + c)`` into a list of covariate names."""
    text = text.strip()
    if text.startswith("(") and text.endswith(")"):
        names = [t.strip() for t in _split_top_level(text[1:-1], "+")]
    else:
        names = [text]
    for name in names:
        if not re.fullmatch(_IDENT, name):
            raise ValueError(f"Invalid covariate name '{name}' in regression formula")
    return names


def parse_regression(formula: str) -> RegressionSpec:
    """Parse a regression formula.

    Supported terms (``.trtclass`` may replace ``.trt`` throughout):
    ``a``, ``a:.trt``, ``.trt:a``, ``a*.trt``, ``(a + b)*.trt``,
    ``(a + b):.trt``. A bare ``.trt`` term is accepted and ignored since
    treatment effects are always included.

    Args:
        formula: Formula string, optionally starting with ``~``.

    Returns:
        ``RegressionSpec``.

    Raises:
        ValueError: Unsupported term, or both ``.trt`` and ``.trtclass``
            interactions in one formula.

    Example:
        >>> parse_regression("~ (age + male)*.trt")
        RegressionSpec(prognostic=['age', 'male'], effect_modifiers=['age', 'male'], by_class=False)
    """
    if not isinstance(formula, str):
        raise TypeError("regression formula must be a string")
    text = formula.strip()
    if text.startswith("~"):
        text = text[1:].strip()
    if not text:
        return RegressionSpec()

    prognostic: List[str] = []
    modifiers: List[str] = []
    trt_tokens = set()

    for term in _split_top_level(text, "+"):
        if not term:
            raise ValueError(f"Empty term in regression formula '{formula}'")
        if term in _TRT_TOKENS:
            continue

        op = "*" if len(_split_top_level(term, "*")) == 2 else ":" if len(_split_top_level(term, ":")) == 2 else None
        if op is None:
            if ":" in term or "*" in term:
                raise ValueError(f"Unsupported term '{term}'; only two-way interactions with .trt are supported")
            prognostic.extend(_parse_group(term))
            continue

        left, right = _split_top_level(term, op)
        if right in _TRT_TOKENS:
            group, token = left, right
        elif left in _TRT_TOKENS:
            group, token = right, left
        else:
            raise ValueError(f"Unsupported interaction '{term}'; interactions must be with .trt or .trtclass")
        trt_tokens.add(token)

        names = _parse_group(group)
        modifiers.extend(names)
        if op == "*":
            prognostic.extend(names)

    if len(trt_tokens) > 1:
        raise ValueError("Use either .trt or .trtclass interactions, not both")

    def _unique(names):
        out: List[str] = []
        for n in names:
            if n not in out:
                out.append(n)
        return out

    return RegressionSpec(_unique(prognostic), _unique(modifiers), by_class=trt_tokens == {".trtclass"})
