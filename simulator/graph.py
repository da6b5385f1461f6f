"""
Graph builder for the simulator.

Produces a matplotlib Figure from a ``run_simulation`` result: one line per
visible output series over the primary variable, plus a dot for every
detected intersection.  Figures are built with ``matplotlib.figure.Figure``
directly so no GUI backend is needed.
"""

import io

import numpy as np
from matplotlib.figure import Figure

# ── palette ────────────────────────────────────────────────────────────────
# Series colours, used when an output doesn't name its own.
COLORS = [
    "#007AFF",  # blue
    "#34C759",  # green
    "#FF9500",  # orange
    "#FF3B30",  # red
    "#AF52DE",  # purple
    "#5AC8FA",  # teal
    "#FF2D55",  # pink
    "#5856D6",  # indigo
]

_DARK_GRAPH = {
    "C_BG": "#0f0f0f",
    "C_AX": "#181818",
    "C_GRID": "#252525",
    "C_TICK": "#666666",
    "C_SPINE": "#333333",
    "C_TEXT": "#cccccc",
    "C_LEGEND": "#1e1e1e",
}
_LIGHT_GRAPH = {
    "C_BG": "#ffffff",
    "C_AX": "#fafafa",
    "C_GRID": "#e5e7eb",
    "C_TICK": "#9ca3af",
    "C_SPINE": "#d1d5db",
    "C_TEXT": "#374151",
    "C_LEGEND": "#ffffff",
}
THEMES = {"light": _LIGHT_GRAPH, "dark": _DARK_GRAPH}


def palette(theme: str) -> dict:
    """Colours for ``"dark"`` or ``"light"``; anything else is light."""
    return THEMES.get(theme, _LIGHT_GRAPH)


def _style_axes(ax, fig, colors: dict):
    fig.patch.set_facecolor(colors["C_BG"])
    ax.set_facecolor(colors["C_AX"])
    ax.tick_params(colors=colors["C_TICK"], labelsize=9)
    ax.xaxis.label.set_color(colors["C_TEXT"])
    ax.yaxis.label.set_color(colors["C_TEXT"])
    ax.title.set_color(colors["C_TEXT"])
    for spine in ax.spines.values():
        spine.set_edgecolor(colors["C_SPINE"])
    ax.grid(True, axis="y", color=colors["C_GRID"], linestyle="--", linewidth=0.6)


def _text_figure(title: str, message: str, colors: dict) -> Figure:
    """A blank figure carrying just a title and a message."""
    fig = Figure(figsize=(7, 3.8), dpi=100)
    ax = fig.add_subplot(111)
    _style_axes(ax, fig, colors)
    ax.set_xticks([])
    ax.set_yticks([])
    ax.set_title(title, color=colors["C_TEXT"], fontsize=10)
    ax.text(0.5, 0.5, message, ha="center", va="center",
            color=colors["C_TEXT"], fontsize=9, transform=ax.transAxes)
    return fig


def series_color(output, index: int) -> str:
    """The output's own colour, else a palette colour by position."""
    return getattr(output, "color", None) or COLORS[index % len(COLORS)]


def build_figure(result: dict, hidden=(), title: str | None = None,
                 theme: str = "light") -> Figure:
    """
    Build a Figure for a ``run_simulation`` *result*.

    Series whose symbol is in *hidden* are left out.  *theme* picks the
    light or dark palette.  An empty dataset gives a text-only figure
    instead of an empty plot.
    """
    colors = palette(theme)
    hidden = set(hidden or ())
    data = result.get("data") or []
    primary = result.get("primary")
    outputs = result.get("outputs") or []

    if primary is None or not data:
        return _text_figure(title or "No data",
                            "The formula produced no points to plot.", colors)

    xs = np.array([p.get(primary.symbol, np.nan) for p in data], dtype=float)

    fig = Figure(figsize=(7, 3.8), dpi=100)
    ax = fig.add_subplot(111)
    _style_axes(ax, fig, colors)

    plotted = []
    for index, output in enumerate(outputs):
        if output.symbol in hidden:
            continue
        ys = np.array([p.get(output.symbol, np.nan) for p in data], dtype=float)
        label = output.name
        if output.unit:
            label = f"{label} ({output.unit})"
        ax.plot(xs, ys, color=series_color(output, index), linewidth=2.5, label=label)
        plotted.append(ys)

    markers = result.get("intersections") or []
    if markers:
        ax.scatter([m["x"] for m in markers], [m["y"] for m in markers],
                   color=markers[0]["color"], s=70, zorder=5,
                   label=markers[0]["label"])
        for m in markers:
            ax.annotate(f"({m['x']:g}, {m['y']:g})", (m["x"], m["y"]),
                        textcoords="offset points", xytext=(6, 6),
                        color=colors["C_TEXT"], fontsize=8)

    # Clip y-axis to avoid extreme values
    if plotted:
        y_all = np.concatenate(plotted)
        y_finite = y_all[np.isfinite(y_all)]
        if len(y_finite):
            ylo, yhi = np.percentile(y_finite, 2), np.percentile(y_finite, 98)
            pad = max((yhi - ylo) * 0.2, 1.0)
            ax.set_ylim(ylo - pad, yhi + pad)

    ax.set_title(title or "", color=colors["C_TEXT"], fontsize=10)
    ax.set_xlabel(primary.name, color=colors["C_TEXT"])
    if plotted or markers:
        ax.legend(fontsize=8, facecolor=colors["C_LEGEND"], edgecolor=colors["C_SPINE"],
                  labelcolor=colors["C_TEXT"])
    fig.tight_layout(pad=1.2)
    return fig


def figure_to_png(fig: Figure) -> bytes:
    """Render *fig* to PNG bytes."""
    buf = io.BytesIO()
    fig.savefig(buf, format="png", facecolor=fig.get_facecolor())
    return buf.getvalue()
