from matplotlib.colors import to_hex
from matplotlib.figure import Figure

from simulator import graph, run_simulation
from simulator.schema import OutputVariable


def _result() -> dict:
    schema = {
        "title": "Lines",
        "independentVariables": [{"name": "x", "symbol": "x", "min": 0, "max": 10}],
        "outputs": [
            {"name": "Rising", "symbol": "A", "unit": "m", "color": "#123456"},
            {"name": "Falling", "symbol": "B"},
        ],
        "formula": "return { A: 2*x, B: -2*x + 10 };",
    }
    return run_simulation(schema, {}, 10)


def test_palette_and_style_axes() -> None:
    assert graph.palette("dark") is graph._DARK_GRAPH
    assert graph.palette("light") is graph._LIGHT_GRAPH
    assert graph.palette("neon") is graph._LIGHT_GRAPH

    fig = Figure(figsize=(4, 2))
    ax = fig.add_subplot(111)
    graph._style_axes(ax, fig, graph._DARK_GRAPH)
    assert to_hex(fig.get_facecolor()) == graph._DARK_GRAPH["C_BG"]
    assert ax.get_xlabel() == ""


def test_build_figure_theme() -> None:
    dark = graph.build_figure(_result(), theme="dark")
    light = graph.build_figure(_result())
    assert to_hex(dark.get_facecolor()) == graph._DARK_GRAPH["C_BG"]
    assert to_hex(light.get_facecolor()) == graph._LIGHT_GRAPH["C_BG"]


def test_series_color_prefers_output_color() -> None:
    assert graph.series_color(OutputVariable(symbol="A", color="#123456"), 0) == "#123456"
    assert graph.series_color(OutputVariable(symbol="B"), 1) == graph.COLORS[1]
    assert graph.series_color(OutputVariable(symbol="C"), 9) == graph.COLORS[1]


def test_build_figure_lines_and_intersections() -> None:
    fig = graph.build_figure(_result(), title="Lines")
    assert isinstance(fig, Figure)
    ax = fig.axes[0]
    labels = [line.get_label() for line in ax.get_lines()]
    assert labels == ["Rising (m)", "Falling"]
    assert ax.get_lines()[0].get_color() == "#123456"
    assert len(ax.collections) == 1
    assert ax.get_title() == "Lines"
    assert ax.get_xlabel() == "x"


def test_build_figure_respects_hidden() -> None:
    result = run_simulation(
        {
            "independentVariables": [{"symbol": "x", "min": 0, "max": 10}],
            "outputs": [{"symbol": "A"}, {"symbol": "B"}],
            "formula": "return { A: 2*x, B: -2*x + 10 };",
        },
        {}, 10, hidden=["B"],
    )
    fig = graph.build_figure(result, hidden=["B"])
    ax = fig.axes[0]
    assert [line.get_label() for line in ax.get_lines()] == ["A"]
    assert len(ax.collections) == 0


def test_empty_result_gives_text_figure() -> None:
    fig = graph.build_figure({"data": [], "primary": None, "outputs": []})
    assert isinstance(fig, Figure)
    assert fig.axes[0].get_title() == "No data"


def test_figure_to_png() -> None:
    png = graph.figure_to_png(graph.build_figure(_result()))
    assert png.startswith(b"\x89PNG")
