"""
MarkupEngine — step-sequence interpreter for commercial markup ("наценка").

A markup sequence is an ordered list of steps authored per BOQ item type.
Each step starts from the original base value (sentinel index -1) or from an
earlier step's result and applies one to three (action, operand) pairs to the
running value. Operands are markup parameters (percent values, used either as
``1 + v/100`` or ``v/100``), earlier step results, or literal numbers.

Covers:
  - Typed step model + parsing from the persisted camelCase JSON shape
  - Load-time validation (forward references, unknown actions/operands)
  - Evaluation with per-step detail (for aggregation by markup parameter)
  - Coefficient derivation by probing with a normalized base of 100
  - Structural scale-invariance check for coefficient use
  - Subcontract growth exclusion filtering with index re-mapping

All functions are pure; errors are raised to the caller.
"""
from __future__ import annotations

import logging
import math
import operator
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence, Union

from app.config import (
    BASE_SENTINEL_INDEX,
    COEFFICIENT_PROBE_BASE,
    GROWTH_PARAMETER_BY_ITEM_TYPE,
    MAX_OPERATIONS_PER_STEP,
)

logger = logging.getLogger("tender-markup")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class MarkupEngineError(Exception):
    """Base class for markup engine failures."""

    def __init__(self, message: str, sequence_name: str = "", step_index: Optional[int] = None):
        self.message = message
        self.sequence_name = sequence_name
        self.step_index = step_index
        super().__init__(message)


class MarkupConfigError(MarkupEngineError):
    """Malformed step configuration. Raised at load/validation time."""

    def __init__(
        self,
        message: str,
        sequence_name: str = "",
        step_index: Optional[int] = None,
        reference: Any = None,
    ):
        self.reference = reference
        super().__init__(message, sequence_name, step_index)


class MarkupNumericError(MarkupEngineError):
    """Evaluation produced a value that must not reach financial totals."""


class MarkupDivisionByZeroError(MarkupNumericError):
    def __init__(self, sequence_name: str, step_index: int):
        super().__init__(
            f"division by zero in step {step_index + 1} of sequence '{sequence_name}'",
            sequence_name,
            step_index,
        )


# ---------------------------------------------------------------------------
# Step model
# ---------------------------------------------------------------------------

class MarkupAction(str, Enum):
    MULTIPLY = "multiply"
    DIVIDE = "divide"
    ADD = "add"
    SUBTRACT = "subtract"


class MultiplyFormat(str, Enum):
    ADD_ONE = "addOne"   # 10 % -> 1.10
    DIRECT = "direct"    # 10 % -> 0.10


@dataclass(frozen=True)
class MarkupOperand:
    """Reference to a markup parameter by key."""
    key: str
    format: MultiplyFormat = MultiplyFormat.DIRECT


@dataclass(frozen=True)
class StepOperand:
    """Reference to an earlier step result, or -1 for the base value."""
    index: int


@dataclass(frozen=True)
class LiteralOperand:
    value: float


Operand = Union[MarkupOperand, StepOperand, LiteralOperand]


@dataclass(frozen=True)
class Operation:
    action: MarkupAction
    operand: Operand


@dataclass(frozen=True)
class MarkupStep:
    base_index: int
    operations: tuple[Operation, ...]
    name: Optional[str] = None

    def parameter_keys(self) -> list[str]:
        return [op.operand.key for op in self.operations if isinstance(op.operand, MarkupOperand)]

    def to_dict(self) -> dict:
        """Serialize back to the persisted camelCase shape."""
        raw: dict[str, Any] = {"baseIndex": self.base_index}
        if self.name is not None:
            raw["name"] = self.name
        for n, op in enumerate(self.operations, start=1):
            raw[f"action{n}"] = op.action.value
            operand = op.operand
            if isinstance(operand, MarkupOperand):
                raw[f"operand{n}Type"] = "markup"
                raw[f"operand{n}Key"] = operand.key
                raw[f"operand{n}MultiplyFormat"] = operand.format.value
            elif isinstance(operand, StepOperand):
                raw[f"operand{n}Type"] = "step"
                raw[f"operand{n}Index"] = operand.index
            else:
                raw[f"operand{n}Type"] = "number"
                raw[f"operand{n}Key"] = operand.value
        return raw


@dataclass(frozen=True)
class StepDetail:
    step_index: int
    step_name: Optional[str]
    parameter_keys: tuple[str, ...]
    base_value: float
    result: float

    @property
    def markup_amount(self) -> float:
        return self.result - self.base_value


@dataclass(frozen=True)
class SequenceResult:
    base_value: float
    final_value: float
    step_results: tuple[float, ...] = ()
    step_details: tuple[StepDetail, ...] = field(default=())

    @property
    def coefficient(self) -> float:
        if self.base_value > 0:
            return self.final_value / self.base_value
        return 1.0


# ---------------------------------------------------------------------------
# Parsing (load time)
# ---------------------------------------------------------------------------

_OPERAND_TYPES = ("markup", "step", "number")


def _parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _parse_operand(raw: Mapping[str, Any], n: int, sequence_name: str, index: int) -> Operand:
    operand_type = raw.get(f"operand{n}Type")
    key = raw.get(f"operand{n}Key")

    if operand_type == "markup":
        if key is None or str(key).strip() == "":
            raise MarkupConfigError(
                f"{sequence_name}: step {index + 1}: operand{n} has no markup key",
                sequence_name, index, key,
            )
        fmt_raw = raw.get(f"operand{n}MultiplyFormat") or MultiplyFormat.DIRECT.value
        try:
            fmt = MultiplyFormat(fmt_raw)
        except ValueError:
            raise MarkupConfigError(
                f"{sequence_name}: step {index + 1}: unknown multiply format '{fmt_raw}'",
                sequence_name, index, fmt_raw,
            ) from None
        return MarkupOperand(key=str(key), format=fmt)

    if operand_type == "step":
        ref = _parse_int(raw.get(f"operand{n}Index"))
        if ref is None:
            raise MarkupConfigError(
                f"{sequence_name}: step {index + 1}: operand{n} has no step index",
                sequence_name, index, raw.get(f"operand{n}Index"),
            )
        return StepOperand(index=ref)

    if operand_type == "number":
        try:
            value = float(key)
        except (TypeError, ValueError):
            value = math.nan
        if isinstance(key, bool) or not math.isfinite(value):
            raise MarkupConfigError(
                f"{sequence_name}: step {index + 1}: operand{n} is not a number ({key!r})",
                sequence_name, index, key,
            )
        return LiteralOperand(value=value)

    raise MarkupConfigError(
        f"{sequence_name}: step {index + 1}: unknown operand type '{operand_type}'",
        sequence_name, index, operand_type,
    )


def parse_step(raw: Mapping[str, Any], sequence_name: str = "sequence", index: int = 0) -> MarkupStep:
    """
    Convert one persisted step dict into a MarkupStep.

    Raises MarkupConfigError for a missing first operation, an operator
    without an operand (or the reverse), unknown action/operand tags, more
    operations than supported, or a non-integer base index.
    """
    if not isinstance(raw, Mapping):
        raise MarkupConfigError(
            f"{sequence_name}: step {index + 1}: expected an object, got {type(raw).__name__}",
            sequence_name, index, raw,
        )

    base_index = _parse_int(raw.get("baseIndex"))
    if base_index is None:
        raise MarkupConfigError(
            f"{sequence_name}: step {index + 1}: missing or invalid baseIndex",
            sequence_name, index, raw.get("baseIndex"),
        )

    extra = [
        n for n in range(MAX_OPERATIONS_PER_STEP + 1, MAX_OPERATIONS_PER_STEP + 3)
        if raw.get(f"action{n}") or raw.get(f"operand{n}Type")
    ]
    if extra:
        raise MarkupConfigError(
            f"{sequence_name}: step {index + 1}: at most {MAX_OPERATIONS_PER_STEP} operations per step",
            sequence_name, index, f"action{extra[0]}",
        )

    operations: list[Operation] = []
    for n in range(1, MAX_OPERATIONS_PER_STEP + 1):
        action_raw = raw.get(f"action{n}")
        operand_type = raw.get(f"operand{n}Type")
        if not action_raw and not operand_type:
            if n == 1:
                raise MarkupConfigError(
                    f"{sequence_name}: step {index + 1}: missing required first operation",
                    sequence_name, index, "action1",
                )
            continue
        if not action_raw or not operand_type:
            missing = f"action{n}" if not action_raw else f"operand{n}Type"
            raise MarkupConfigError(
                f"{sequence_name}: step {index + 1}: {missing} is missing",
                sequence_name, index, missing,
            )
        try:
            action = MarkupAction(action_raw)
        except ValueError:
            raise MarkupConfigError(
                f"{sequence_name}: step {index + 1}: unknown operator '{action_raw}'",
                sequence_name, index, action_raw,
            ) from None
        operations.append(Operation(action, _parse_operand(raw, n, sequence_name, index)))

    name = raw.get("name")
    return MarkupStep(base_index=base_index, operations=tuple(operations), name=name or None)


def parse_sequence(raw_steps: Optional[Iterable[Mapping[str, Any]]], sequence_name: str = "sequence") -> list[MarkupStep]:
    """Parse and validate a whole sequence. ``None`` is an empty sequence."""
    if raw_steps is None:
        return []
    if isinstance(raw_steps, (str, bytes, Mapping)):
        raise MarkupConfigError(
            f"{sequence_name}: expected a list of steps", sequence_name, None, raw_steps,
        )
    steps = [parse_step(raw, sequence_name, i) for i, raw in enumerate(raw_steps)]
    ensure_valid_sequence(steps, sequence_name)
    return steps


def parse_sequences(raw_sequences: Optional[Mapping[str, Any]]) -> dict[str, list[MarkupStep]]:
    """Parse a tactic's ``{item_type: [steps]}`` mapping."""
    return {
        item_type: parse_sequence(raw_steps, item_type)
        for item_type, raw_steps in (raw_sequences or {}).items()
    }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _iter_problems(steps: Sequence[MarkupStep], sequence_name: str) -> Iterator[tuple[int, Any, str]]:
    for i, step in enumerate(steps):
        label = f"{sequence_name}: step {i + 1}"
        if step.base_index < BASE_SENTINEL_INDEX or step.base_index >= i:
            yield i, step.base_index, f"{label}: invalid baseIndex ({step.base_index})"
        if not step.operations:
            yield i, "action1", f"{label}: missing required first operation"
        if len(step.operations) > MAX_OPERATIONS_PER_STEP:
            yield i, len(step.operations), f"{label}: at most {MAX_OPERATIONS_PER_STEP} operations per step"
        for n, op in enumerate(step.operations, start=1):
            if not isinstance(op.action, MarkupAction):
                yield i, op.action, f"{label}: unknown operator '{op.action}'"
            ref = op.operand
            if isinstance(ref, StepOperand) and (ref.index < BASE_SENTINEL_INDEX or ref.index >= i):
                yield i, ref.index, f"{label}: invalid operand{n} step index ({ref.index})"


def validate_sequence(steps: Sequence[MarkupStep], sequence_name: str = "sequence") -> list[str]:
    """Return every validation problem as a message (empty list when valid)."""
    return [message for _, _, message in _iter_problems(steps, sequence_name)]


def ensure_valid_sequence(steps: Sequence[MarkupStep], sequence_name: str = "sequence") -> None:
    """Raise MarkupConfigError on the first validation problem."""
    for step_index, reference, message in _iter_problems(steps, sequence_name):
        raise MarkupConfigError(message, sequence_name, step_index, reference)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

_OPERATIONS: dict[MarkupAction, Callable[[float, float], float]] = {
    MarkupAction.MULTIPLY: operator.mul,
    MarkupAction.DIVIDE: operator.truediv,
    MarkupAction.ADD: operator.add,
    MarkupAction.SUBTRACT: operator.sub,
}


def apply_operation(action: MarkupAction, lhs: float, rhs: float) -> float:
    """Apply one operator. Division by zero raises ZeroDivisionError."""
    return _OPERATIONS[MarkupAction(action)](lhs, rhs)


def _lookup_step(
    index: int, base_value: float, results: Sequence[float], sequence_name: str, step_index: int,
) -> float:
    if index == BASE_SENTINEL_INDEX:
        return base_value
    if 0 <= index < len(results):
        return results[index]
    raise MarkupConfigError(
        f"{sequence_name}: step {step_index + 1}: reference to step {index} "
        f"(available: {len(results)})",
        sequence_name, step_index, index,
    )


def resolve_operand(
    operand: Operand,
    base_value: float,
    results: Sequence[float],
    markup_values: Mapping[str, float],
    sequence_name: str = "sequence",
    step_index: int = 0,
) -> float:
    """
    Resolve an operand to a number.

    Unknown markup keys resolve to 0 (no markup), not to an error.
    """
    if isinstance(operand, MarkupOperand):
        percent = float(markup_values.get(operand.key, 0.0) or 0.0)
        if operand.format is MultiplyFormat.ADD_ONE:
            return 1.0 + percent / 100.0
        return percent / 100.0
    if isinstance(operand, StepOperand):
        return _lookup_step(operand.index, base_value, results, sequence_name, step_index)
    if isinstance(operand, LiteralOperand):
        return float(operand.value)
    raise MarkupConfigError(
        f"{sequence_name}: step {step_index + 1}: unsupported operand {operand!r}",
        sequence_name, step_index, operand,
    )


def evaluate_sequence_detailed(
    steps: Sequence[MarkupStep],
    base_value: float,
    markup_values: Mapping[str, float],
    sequence_name: str = "sequence",
) -> SequenceResult:
    """
    Run every step in authored order and keep per-step details.

    The base sentinel always resolves to ``base_value``; the final value is
    the last step's result, or ``base_value`` for an empty sequence.
    """
    results: list[float] = []
    details: list[StepDetail] = []

    for i, step in enumerate(steps):
        done = tuple(results)
        start = _lookup_step(step.base_index, base_value, done, sequence_name, i)
        value = start
        for op in step.operations:
            rhs = resolve_operand(op.operand, base_value, done, markup_values, sequence_name, i)
            try:
                value = apply_operation(op.action, value, rhs)
            except ZeroDivisionError as exc:
                raise MarkupDivisionByZeroError(sequence_name, i) from exc
        if not math.isfinite(value):
            raise MarkupNumericError(
                f"non-finite result in step {i + 1} of sequence '{sequence_name}'",
                sequence_name, i,
            )
        results.append(value)
        details.append(StepDetail(
            step_index=i,
            step_name=step.name,
            parameter_keys=tuple(step.parameter_keys()),
            base_value=start,
            result=value,
        ))

    final = results[-1] if results else float(base_value)
    return SequenceResult(
        base_value=float(base_value),
        final_value=final,
        step_results=tuple(results),
        step_details=tuple(details),
    )


def evaluate_sequence(
    steps: Sequence[MarkupStep],
    base_value: float,
    markup_values: Mapping[str, float],
    sequence_name: str = "sequence",
) -> float:
    return evaluate_sequence_detailed(steps, base_value, markup_values, sequence_name).final_value


def _homogeneity_degree(steps: Sequence[MarkupStep]) -> Optional[int]:
    # Degree of the final value as a monomial in the base value; None when a
    # step adds/subtracts terms of different degree.
    degrees: list[int] = []

    def degree_of(operand: Operand) -> int:
        if isinstance(operand, StepOperand):
            return 1 if operand.index == BASE_SENTINEL_INDEX else degrees[operand.index]
        return 0

    for step in steps:
        d = 1 if step.base_index == BASE_SENTINEL_INDEX else degrees[step.base_index]
        for op in step.operations:
            rhs = degree_of(op.operand)
            if op.action is MarkupAction.MULTIPLY:
                d += rhs
            elif op.action is MarkupAction.DIVIDE:
                d -= rhs
            elif d != rhs:
                return None
        degrees.append(d)
    return degrees[-1] if degrees else 1


def is_scale_invariant(steps: Sequence[MarkupStep]) -> bool:
    """
    True when ``evaluate(steps, k*X) == k * evaluate(steps, X)`` for any k.

    Expects a validated sequence. A flat add/subtract of a literal or markup
    value onto the base lineage breaks this, as does multiplying the base by
    itself.
    """
    return _homogeneity_degree(steps) == 1


def compute_coefficient(
    steps: Sequence[MarkupStep],
    markup_values: Mapping[str, float],
    sequence_name: str = "sequence",
) -> float:
    """Probe the sequence with a base of 100 and return ``final / 100``."""
    ensure_valid_sequence(steps, sequence_name)
    if steps and not is_scale_invariant(steps):
        logger.warning(
            "Sequence '%s' is not scale-invariant; its coefficient depends on the base value",
            sequence_name,
        )
    final = evaluate_sequence(steps, COEFFICIENT_PROBE_BASE, markup_values, sequence_name)
    return final / COEFFICIENT_PROBE_BASE


def calculate_markup_percentage(base_amount: float, commercial_cost: float) -> float:
    if base_amount == 0:
        return 0.0
    return (commercial_cost - base_amount) / base_amount * 100.0


# ---------------------------------------------------------------------------
# Subcontract growth exclusions
# ---------------------------------------------------------------------------

def filter_sequence_for_exclusions(steps: Sequence[MarkupStep], item_type: str) -> list[MarkupStep]:
    """
    Drop every step that uses the item type's growth parameter in any operand.

    Remaining references are re-indexed. A reference to a dropped step is
    redirected to that step's own base reference, so dropping a step acts as
    replacing it with the identity.
    """
    growth_key = GROWTH_PARAMETER_BY_ITEM_TYPE.get(item_type)
    if not growth_key:
        return list(steps)

    remap: dict[int, int] = {}

    def new_ref(ref: int) -> int:
        if ref == BASE_SENTINEL_INDEX:
            return BASE_SENTINEL_INDEX
        return remap.get(ref, BASE_SENTINEL_INDEX)

    kept: list[MarkupStep] = []
    for i, step in enumerate(steps):
        if growth_key in step.parameter_keys():
            remap[i] = new_ref(step.base_index)
            continue
        remap[i] = len(kept)
        operations = tuple(
            Operation(op.action, StepOperand(new_ref(op.operand.index)))
            if isinstance(op.operand, StepOperand) else op
            for op in step.operations
        )
        kept.append(replace(step, base_index=new_ref(step.base_index), operations=operations))
    return kept
