"""
Simulation engine: sample a schema over its primary variable and find where
output series cross.

Both passes are pure functions of their inputs.  Nothing here raises for bad
schema content: failed samples and unusable segments are skipped, and a
schema that cannot be sampled at all yields an empty dataset.
"""

import itertools
import logging
import math

from simulator.config import get_settings
from simulator.expression import (
    FormulaEvaluationError,
    FormulaSyntaxError,
    compile_formula,
)
from simulator.schema import SimulationSchema

logger = logging.getLogger(__name__)

DEFAULT_MIN = -10.0
DEFAULT_MAX = 10.0

INTERSECTION_LABEL = "Intersection"
INTERSECTION_COLOR = "#FF3B30"
# Differences at or above this are treated as a jump across a
# discontinuity (e.g. 1/x around 0), not a crossing.
DISCONTINUITY_GUARD = 1000


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value) -> bool:
    return _is_number(value) and math.isfinite(value)


def _coerce_schema(schema) -> SimulationSchema:
    if isinstance(schema, SimulationSchema):
        return schema
    return SimulationSchema.model_validate(schema)


def _resolve_resolution(resolution) -> int:
    if _is_finite(resolution) and resolution >= 1:
        return int(resolution)
    return get_settings().default_resolution


# ── Sampling ────────────────────────────────────────────────────────────

def generate_dataset(schema, binding=None, resolution=None) -> dict:
    """Sample *schema*'s formula across its primary variable.

    Returns a dict with:
      - data    : list of points (primary symbol, binding symbols, outputs)
      - primary : the primary ``VariableDef`` or None
      - outputs : the schema's ``OutputVariable`` list

    *binding* entries override variable defaults.  *resolution* is the
    number of intervals N (N + 1 samples); values below 1 use the
    configured default.
    """
    schema = _coerce_schema(schema)
    outputs = list(schema.outputs)
    result = {"data": [], "primary": None, "outputs": outputs}

    primary = schema.primary
    if primary is None:
        return result
    result["primary"] = primary

    lo = primary.min if _is_finite(primary.min) else DEFAULT_MIN
    hi = primary.max if _is_finite(primary.max) else DEFAULT_MAX
    count = _resolve_resolution(resolution)
    step = (hi - lo) / count

    values = {**schema.default_binding(), **(binding or {})}
    try:
        formula = compile_formula(schema.formula, list(values))
    except FormulaSyntaxError as e:
        logger.warning("Formula for '%s' could not be compiled: %s", schema.title, e)
        return result

    default_symbol = outputs[0].symbol if outputs else "y"
    data = result["data"]
    for i in range(count + 1):
        x = round(lo + i * step, 2)
        context = {**values, primary.symbol: x}
        try:
            evaluated = formula.evaluate(context)
        except FormulaEvaluationError as e:
            logger.debug("Skipping %s=%s: %s", primary.symbol, x, e)
            continue

        point = {primary.symbol: x, **context}
        for key, value in evaluated.as_outputs(default_symbol).items():
            point[key] = round(value, 4)
        data.append(point)

    if len(data) < count + 1:
        logger.debug("Sampled %d of %d points for '%s'",
                     len(data), count + 1, schema.title)
    return result


# ── Intersections ───────────────────────────────────────────────────────

def _crosses(diff1: float, diff2: float, end_claimed: bool) -> bool:
    """Sign-change test for one segment.

    A zero difference at a sample counts once.  It belongs to the segment
    that starts there; the segment ending there claims it only when the
    next segment cannot (last segment, next values missing or non-finite,
    or the series coincide from there on).  Two zero ends (coincident
    series) never count.
    """
    if diff1 * diff2 < 0:
        return True
    if diff1 == 0:
        return diff2 != 0
    return diff2 == 0 and not end_claimed


def _segment(p1: dict, p2: dict, a: str, b: str, primary_symbol: str):
    """``(a1, b1, a2, b2, x1, x2)`` for two points, or None if any is unusable."""
    sample = (p1.get(a), p1.get(b), p2.get(a), p2.get(b),
              p1.get(primary_symbol), p2.get(primary_symbol))
    if not all(_is_finite(v) for v in sample):
        return None
    return sample


def find_intersections(data: list, outputs, primary_symbol: str, hidden=()) -> list:
    """Locate crossings between every pair of visible output series.

    Each crossing is linearly interpolated inside the segment where the
    difference between the two series changes sign.  Returns a list of
    ``{"x", "y", "label", "color", "series"}`` dicts; empty when fewer than
    two series are visible.
    """
    hidden = set(hidden or ())
    visible = [
        getattr(out, "symbol", out) for out in outputs
        if getattr(out, "symbol", out) not in hidden
    ]
    if len(visible) < 2 or len(data) < 2:
        return []

    markers = []
    for a, b in itertools.combinations(visible, 2):
        segments = [_segment(p1, p2, a, b, primary_symbol)
                    for p1, p2 in zip(data, data[1:])]
        for idx, sample in enumerate(segments):
            if sample is None:
                continue
            a1, b1, a2, b2, x1, x2 = sample

            diff1 = a1 - b1
            diff2 = a2 - b2
            if abs(diff1) >= DISCONTINUITY_GUARD:
                continue
            following = segments[idx + 1] if idx + 1 < len(segments) else None
            end_claimed = following is not None and following[2] != following[3]
            if not _crosses(diff1, diff2, end_claimed):
                continue

            fraction = abs(diff1) / (abs(diff1) + abs(diff2))
            markers.append({
                "x": round(x1 + fraction * (x2 - x1), 2),
                "y": round(a1 + fraction * (a2 - a1), 2),
                "label": INTERSECTION_LABEL,
                "color": INTERSECTION_COLOR,
                "series": (a, b),
            })
    return markers


def run_simulation(schema, binding=None, resolution=None, hidden=()) -> dict:
    """Sample *schema* and detect intersections in one call.

    Returns the ``generate_dataset`` dict plus an ``intersections`` list.
    *hidden* holds output symbols excluded from intersection detection.
    """
    result = generate_dataset(schema, binding, resolution)
    primary = result["primary"]
    if primary is None:
        result["intersections"] = []
        return result
    result["intersections"] = find_intersections(
        result["data"], result["outputs"], primary.symbol, hidden
    )
    return result
