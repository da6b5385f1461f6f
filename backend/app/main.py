import math
from typing import Literal
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from simulator import OutputVariable, SimulationSchema, VariableDef, run_simulation
from simulator.config import get_settings
from simulator.export import dataset_to_csv, export_filename
from simulator.graph import build_figure, figure_to_png
from simulator.provider import ModelProvider, ModelProviderError

app = FastAPI(title="Word Problem Simulator API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_MAX_RESOLUTION = get_settings().max_resolution


class AnalyzeRequest(BaseModel):
    problem: str


class SimulateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    simulation: SimulationSchema = Field(alias="schema")
    variables: dict[str, float] = Field(default_factory=dict)
    resolution: int | None = Field(default=None, le=_MAX_RESOLUTION)
    hidden: list[str] = Field(default_factory=list)


class PlotRequest(SimulateRequest):
    theme: Literal["light", "dark"] = "light"


class IntersectionInfo(BaseModel):
    x: float
    y: float
    label: str
    color: str
    series: list[str]


class SimulateResponse(BaseModel):
    data: list[dict[str, float | None]]
    primary: VariableDef | None
    outputs: list[OutputVariable]
    intersections: list[IntersectionInfo]


class ExplainRequest(BaseModel):
    context: str = ""
    question: str


class ExplainResponse(BaseModel):
    answer: str


def get_provider() -> ModelProvider:
    try:
        return ModelProvider()
    except ModelProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


def _json_safe(point: dict) -> dict:
    """NaN / inf aren't valid JSON; send them as null."""
    return {
        key: value if isinstance(value, (int, float)) and math.isfinite(value) else None
        for key, value in point.items()
    }


def _attachment(filename: str) -> str:
    """Content-Disposition value; non-ASCII names use the RFC 5987 form."""
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


def _simulate(req: SimulateRequest) -> dict:
    return run_simulation(req.simulation, req.variables, req.resolution, req.hidden)


@app.post("/api/analyze", response_model=SimulationSchema)
def analyze(req: AnalyzeRequest, provider: ModelProvider = Depends(get_provider)):
    problem = req.problem.strip()
    if not problem:
        raise HTTPException(status_code=400, detail="Problem text cannot be empty.")

    try:
        return provider.analyze_problem(problem)
    except ModelProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.post("/api/simulate", response_model=SimulateResponse)
def simulate(req: SimulateRequest):
    result = _simulate(req)
    result["data"] = [_json_safe(point) for point in result["data"]]
    return result


@app.post("/api/export")
def export(req: SimulateRequest):
    result = _simulate(req)
    if not result["data"]:
        raise HTTPException(status_code=400, detail="Nothing to export: the dataset is empty.")
    filename = export_filename(req.simulation.title)
    return Response(
        content=dataset_to_csv(result["data"]),
        media_type="text/csv",
        headers={"Content-Disposition": _attachment(filename)},
    )


@app.post("/api/plot")
def plot(req: PlotRequest):
    result = _simulate(req)
    fig = build_figure(result, hidden=req.hidden, title=req.simulation.title,
                       theme=req.theme)
    return Response(content=figure_to_png(fig), media_type="image/png")


@app.post("/api/explain", response_model=ExplainResponse)
def explain(req: ExplainRequest, provider: ModelProvider = Depends(get_provider)):
    try:
        answer = provider.explain_concept(req.context, req.question)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ModelProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"answer": answer}
