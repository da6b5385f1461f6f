from simulator.schema import (
    DEFAULT_FORMULA,
    OutputVariable,
    SimulationSchema,
    VariableDef,
)


def test_empty_payload_gets_every_default() -> None:
    schema = SimulationSchema.model_validate({})
    assert schema.title == "Simulation"
    assert [v.symbol for v in schema.independent_variables] == ["t"]
    assert schema.independent_variables[0].max == 20
    assert [(o.name, o.symbol) for o in schema.outputs] == [("f(x)", "y")]
    assert schema.formula == DEFAULT_FORMULA


def test_explicit_empty_variable_list_is_kept() -> None:
    schema = SimulationSchema.model_validate({"independentVariables": []})
    assert schema.independent_variables == []
    assert schema.primary is None


def test_variable_field_defaults() -> None:
    var = VariableDef.model_validate({"symbol": "", "min": "abc", "max": None,
                                      "default": True, "step": "1"})
    assert var.name == "Variable"
    assert var.symbol == "x"
    assert (var.min, var.max, var.default, var.step) == (-10, 10, 0, 1)


def test_bounds_are_ordered_and_default_clamped() -> None:
    var = VariableDef(symbol="v", min=10, max=-10, default=50)
    assert (var.min, var.max) == (-10, 10)
    assert var.default == 10


def test_output_name_falls_back_to_symbol() -> None:
    out = OutputVariable.model_validate({"symbol": "Ca"})
    assert out.name == "Ca"
    assert out.unit is None


def test_legacy_dependent_variable() -> None:
    schema = SimulationSchema.model_validate({
        "dependentVariable": {"name": "Distance", "symbol": "d", "unit": "km"},
    })
    assert [(o.name, o.symbol, o.unit) for o in schema.outputs] == [("Distance", "d", "km")]


def test_js_formula_alias_and_missing_return() -> None:
    schema = SimulationSchema.model_validate({"jsFormula": "2*x + 1"})
    assert schema.formula == "return 2*x + 1"

    schema = SimulationSchema.model_validate({"formula": "return x;", "jsFormula": "return 1;"})
    assert schema.formula == "return x;"

    schema = SimulationSchema.model_validate({"formula": "   "})
    assert schema.formula == DEFAULT_FORMULA


def test_duplicates_and_malformed_entries_are_dropped() -> None:
    schema = SimulationSchema.model_validate({
        "independentVariables": [
            {"name": "a", "symbol": "x", "min": 0, "max": 1, "default": 0},
            "not a variable",
            {"name": "b", "symbol": "x", "min": 5, "max": 6, "default": 5},
        ],
        "outputs": [{"symbol": "y"}, {"symbol": "y", "name": "again"}, 3],
    })
    assert [v.name for v in schema.independent_variables] == ["a"]
    assert [o.name for o in schema.outputs] == ["y"]


def test_snake_case_and_model_instances_accepted() -> None:
    schema = SimulationSchema(
        independent_variables=[VariableDef(symbol="t", min=0, max=5)],
        outputs=[OutputVariable(symbol="A")],
        formula="return { A: t };",
        analysis_markdown="# Notes",
    )
    assert schema.independent_variables[0].symbol == "t"
    assert schema.analysis_markdown == "# Notes"


def test_default_binding_and_alias_dump() -> None:
    schema = SimulationSchema.model_validate({
        "independentVariables": [
            {"symbol": "t", "min": 0, "max": 10, "default": 2},
            {"symbol": "v", "min": 0, "max": 30, "default": 14},
        ],
        "pythonFormula": "t * v",
    })
    assert schema.default_binding() == {"t": 2, "v": 14}

    dumped = schema.model_dump(by_alias=True)
    assert "independentVariables" in dumped
    assert dumped["pythonFormula"] == "t * v"
    assert SimulationSchema.model_validate(dumped) == schema
