"""
Simulation schema: the declarative model the engine samples.

Schemas arrive as untrusted JSON from the model provider.  Every model here
repairs what it can at validation time (missing fields, non-numeric bounds,
legacy field names) so the engine never has to fail on a malformed schema.
"""

import logging
import math
import re

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

DEFAULT_FORMULA = "return 0;"

# Used when the provider sends no usable list of independent variables.
DEFAULT_VARIABLE = {
    "name": "Time",
    "symbol": "t",
    "min": 0,
    "max": 20,
    "default": 0,
    "step": 1,
    "description": "Independent variable",
}
DEFAULT_OUTPUT = {"name": "f(x)", "symbol": "y", "unit": ""}

_RETURN_RE = re.compile(r"\breturn\b")


def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _number_or(value, fallback):
    return value if _is_number(value) else fallback


def _text_or(value, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return fallback


class VariableDef(BaseModel):
    """One independent (input) variable."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = "Variable"
    symbol: str = "x"
    min: float = -10.0
    max: float = 10.0
    default: float = 0.0
    step: float = 1.0
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data["name"] = _text_or(data.get("name"), "Variable")
        data["symbol"] = _text_or(data.get("symbol"), "x").strip()
        data["min"] = _number_or(data.get("min"), -10)
        data["max"] = _number_or(data.get("max"), 10)
        data["default"] = _number_or(data.get("default"), 0)
        data["step"] = _number_or(data.get("step"), 1)
        data["description"] = _text_or(data.get("description"), "")
        return data

    @model_validator(mode="after")
    def _order_bounds(self):
        if self.min > self.max:
            self.min, self.max = self.max, self.min
        self.default = min(max(self.default, self.min), self.max)
        return self


class OutputVariable(BaseModel):
    """One named result series the formula populates."""

    name: str = ""
    symbol: str = "y"
    unit: str | None = None
    color: str | None = None
    # Only a hint; visibility is tracked by whoever draws the series.
    visible: bool | None = None

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data["symbol"] = _text_or(data.get("symbol"), "y").strip()
        data["name"] = _text_or(data.get("name"), data["symbol"])
        return data


def _dedupe(items: list, kind: str) -> list:
    seen = set()
    kept = []
    for item in items:
        if item.symbol in seen:
            logger.warning("Dropping duplicate %s symbol '%s'", kind, item.symbol)
            continue
        seen.add(item.symbol)
        kept.append(item)
    return kept


def _coerce_items(raw: list, model) -> list:
    """Validate list entries, dropping anything that isn't a mapping/model."""
    items = []
    for entry in raw:
        if isinstance(entry, model):
            items.append(entry)
        elif isinstance(entry, dict):
            items.append(model.model_validate(entry))
        else:
            logger.warning("Ignoring malformed %s entry: %r", model.__name__, entry)
    return items


class SimulationSchema(BaseModel):
    """The full declarative model: variables, outputs, formula and narrative.

    JSON produced by the provider uses camelCase (``independentVariables``,
    ``jsFormula``, ``pythonFormula``, ``analysisMarkdown``); attributes are
    snake_case and either spelling is accepted on input.
    """

    model_config = ConfigDict(populate_by_name=True)

    title: str = "Simulation"
    description: str = ""
    independent_variables: list[VariableDef] = Field(
        default_factory=list, alias="independentVariables"
    )
    outputs: list[OutputVariable] = Field(default_factory=list)
    formula: str = Field(
        DEFAULT_FORMULA, validation_alias=AliasChoices("formula", "jsFormula")
    )
    python_formula: str = Field("", alias="pythonFormula")
    analysis_markdown: str = Field("", alias="analysisMarkdown")

    @model_validator(mode="before")
    @classmethod
    def _repair(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)

        data["title"] = _text_or(data.get("title"), "Simulation")
        data["description"] = _text_or(data.get("description"), "")

        # -- independent variables --
        raw_vars = data.pop("independentVariables", data.pop("independent_variables", None))
        if not isinstance(raw_vars, list):
            logger.warning("Schema has no independent variables; using default '%s'",
                           DEFAULT_VARIABLE["symbol"])
            raw_vars = [dict(DEFAULT_VARIABLE)]
        data["independentVariables"] = _dedupe(
            _coerce_items(raw_vars, VariableDef), "variable"
        )

        # -- outputs (with the legacy single dependentVariable form) --
        raw_outputs = data.get("outputs")
        legacy = data.pop("dependentVariable", None)
        if not isinstance(raw_outputs, list):
            if isinstance(legacy, dict):
                raw_outputs = [{
                    "name": legacy.get("name") or "Result",
                    "symbol": legacy.get("symbol") or "y",
                    "unit": legacy.get("unit") or "",
                }]
            else:
                raw_outputs = [dict(DEFAULT_OUTPUT)]
        data["outputs"] = _dedupe(_coerce_items(raw_outputs, OutputVariable), "output")

        # -- formula --
        formula = data.pop("formula", None) or data.pop("jsFormula", None)
        data.pop("jsFormula", None)
        if not isinstance(formula, str) or not formula.strip():
            formula = DEFAULT_FORMULA
        elif not _RETURN_RE.search(formula):
            formula = "return " + formula
        data["formula"] = formula

        for key, snake in (("pythonFormula", "python_formula"),
                           ("analysisMarkdown", "analysis_markdown")):
            value = data.pop(key, None) or data.pop(snake, None)
            data.pop(snake, None)
            data[key] = value if isinstance(value, str) else ""
        return data

    @property
    def primary(self) -> VariableDef | None:
        """The primary sweep variable (first declared), if any."""
        return self.independent_variables[0] if self.independent_variables else None

    def default_binding(self) -> dict:
        """Binding with every declared variable at its default value."""
        return {v.symbol: v.default for v in self.independent_variables}
