"""
Model provider: turn a free-form word problem into a SimulationSchema.

Uses the Anthropic API.  The reply is expected to be a single JSON object;
markdown code fences around it are tolerated.  Whatever comes back is
repaired by ``SimulationSchema`` validation, so callers always get a usable
schema or a ``ModelProviderError``.
"""

import json
import logging

from anthropic import Anthropic, APIError
from pydantic import ValidationError

from simulator.config import get_settings
from simulator.schema import SimulationSchema

logger = logging.getLogger(__name__)


class ModelProviderError(RuntimeError):
    """The model could not be reached or returned something unusable."""


ANALYSIS_SYSTEM_PROMPT = """\
You are a senior mathematics teacher and data scientist. You turn word
problems into an interactive simulation model.

STRATEGY
1. If the text contains several distinct problems, pick the most interesting
   system of equations (usually motion or an intersection) to simulate, but
   explain all of them in the markdown report.
2. If the problem asks for F(x), G(x), ... simulate all of them together.
3. Extract every key quantity as an independent variable. The FIRST variable
   is the one swept along the horizontal axis (usually time or x).

FORMULA LANGUAGE ("formula" field)
- Statements separated by ';'. Optional local values: const r = 0.05;
- Must end with a return. Use an object when there is more than one
  function: return { A: 14*t, B: 11*t + 6 };
- Object keys must equal the output symbols.
- Operators: + - * / % ** ^ ( ) comparisons, && ||, cond ? a : b
- if (cond) { ... } else { ... } blocks may hold assignments and returns.
- Functions: pow exp log log10 log2 sqrt cbrt abs sin cos tan asin acos
  atan atan2 sinh cosh tanh floor ceil round trunc sign hypot min max.
  Constants: PI E LN2 LN10 LOG2E LOG10E SQRT2 SQRT1_2 (a "Math." prefix is fine).
- Fix OCR errors (e.g. "0.95t" -> 0.95^t for decay). Linear: m*x + b.
  Exponential: a * (1 + r)^t.

MARKDOWN REPORT ("analysisMarkdown" field), with these sections:
1. Interpretation of the problem.
2. Identification of the functions (linear, affine, exponential) and why.
3. Mathematical model (formal equations).
4. Step-by-step development, including solving f(t) = g(t) for any
   intersections with the numbers substituted.
5. Conclusions and insights.
6. Three harder follow-up problems.

Reply with ONLY a JSON object of this shape:
{
  "title": str, "description": str,
  "independentVariables": [
    {"name": str, "symbol": str, "min": number, "max": number,
     "default": number, "step": number, "description": str}
  ],
  "outputs": [{"name": str, "symbol": str, "unit": str, "color": "#RRGGBB"}],
  "formula": str,
  "pythonFormula": str,
  "analysisMarkdown": str
}
"""

TUTOR_SYSTEM_PROMPT = (
    "You are a mathematics and data science teacher. "
    "Answer in detailed Markdown."
)


def clean_json_text(text: str) -> str:
    """Strip a surrounding ```json ... ``` (or bare ```) fence."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


class ModelProvider:
    """Anthropic-backed schema generator and tutor.

    Pass *client* to supply a pre-built (or fake) client; otherwise one is
    created from *api_key* or ``ANTHROPIC_API_KEY``.
    """

    def __init__(self, api_key: str | None = None, model: str | None = None,
                 max_tokens: int | None = None, client=None):
        settings = get_settings()
        self.model = model or settings.model
        self.max_tokens = max_tokens or settings.max_tokens
        if client is None:
            key = api_key or settings.anthropic_api_key
            if not key:
                raise ModelProviderError(
                    "API key not found. Set the ANTHROPIC_API_KEY environment variable."
                )
            client = Anthropic(api_key=key)
        self.client = client

    def _complete(self, system: str, prompt: str) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except APIError as e:
            logger.error("Model request failed: %s", e)
            raise ModelProviderError(f"Model request failed: {e}") from e

        text = "".join(
            block.text for block in response.content
            if getattr(block, "type", None) == "text"
        )
        if not text.strip():
            raise ModelProviderError("The model returned no text.")
        return text

    def analyze_problem(self, problem_text: str) -> SimulationSchema:
        """Ask the model for a schema describing *problem_text*."""
        if not problem_text.strip():
            raise ValueError("Problem text cannot be empty.")

        logger.info("Analyzing problem via %s", self.model)
        text = self._complete(ANALYSIS_SYSTEM_PROMPT, f'Problem statement:\n"{problem_text}"')
        try:
            payload = json.loads(clean_json_text(text))
        except json.JSONDecodeError as e:
            logger.error("Model reply is not valid JSON: %s", e)
            raise ModelProviderError(f"The model reply is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ModelProviderError("The model reply is not a JSON object.")

        try:
            schema = SimulationSchema.model_validate(payload)
        except ValidationError as e:
            raise ModelProviderError(f"The model reply is not a usable schema: {e}") from e
        logger.info("Received schema '%s' with %d variable(s), %d output(s)",
                    schema.title, len(schema.independent_variables), len(schema.outputs))
        return schema

    def explain_concept(self, context: str, question: str) -> str:
        """Answer a follow-up *question* about *context* in Markdown."""
        if not question.strip():
            raise ValueError("Question cannot be empty.")
        prompt = f"Context: {context}\nQuestion: {question}"
        return self._complete(TUTOR_SYSTEM_PROMPT, prompt)
