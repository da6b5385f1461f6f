"""Word-problem simulator: schema model, formula compiler and sampling engine."""

from simulator.engine import find_intersections, generate_dataset, run_simulation
from simulator.expression import (
    FormulaError,
    FormulaEvaluationError,
    FormulaSyntaxError,
    compile_formula,
)
from simulator.schema import OutputVariable, SimulationSchema, VariableDef

__all__ = [
    "FormulaError",
    "FormulaEvaluationError",
    "FormulaSyntaxError",
    "OutputVariable",
    "SimulationSchema",
    "VariableDef",
    "compile_formula",
    "find_intersections",
    "generate_dataset",
    "run_simulation",
]
