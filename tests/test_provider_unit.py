import json
from types import SimpleNamespace

import pytest

from simulator import config
from simulator import provider as provider_module
from simulator.provider import ModelProvider, ModelProviderError, clean_json_text


class _FakeMessages:
    def __init__(self, reply: str):
        self.reply = reply
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.reply)])


class _FakeClient:
    def __init__(self, reply: str):
        self.messages = _FakeMessages(reply)


def _provider(reply: str) -> ModelProvider:
    return ModelProvider(model="test-model", max_tokens=123, client=_FakeClient(reply))


_SCHEMA_JSON = json.dumps({
    "title": "Cyclists",
    "independentVariables": [
        {"name": "Time", "symbol": "t", "min": 0, "max": 5, "default": 0, "step": 1},
    ],
    "outputs": [{"name": "Cyclist A", "symbol": "A"}, {"name": "Cyclist B", "symbol": "B"}],
    "jsFormula": "return { A: 14*t, B: 11*t + 6 };",
    "pythonFormula": "A = 14*t; B = 11*t + 6",
    "analysisMarkdown": "### Analysis",
})


@pytest.mark.parametrize(
    "raw",
    ["```json\n{\"a\": 1}\n```", "```\n{\"a\": 1}```", "  {\"a\": 1}  "],
)
def test_clean_json_text(raw: str) -> None:
    assert clean_json_text(raw) == '{"a": 1}'


def test_analyze_problem_returns_normalized_schema() -> None:
    prov = _provider(f"```json\n{_SCHEMA_JSON}\n```")
    schema = prov.analyze_problem("Cyclist A rides at 14 km/h ...")

    assert schema.title == "Cyclists"
    assert [o.symbol for o in schema.outputs] == ["A", "B"]
    assert schema.formula.startswith("return")
    assert schema.analysis_markdown == "### Analysis"

    call = prov.client.messages.calls[0]
    assert call["model"] == "test-model"
    assert call["max_tokens"] == 123
    assert "Cyclist A rides" in call["messages"][0]["content"]


def test_analyze_problem_rejects_bad_replies() -> None:
    with pytest.raises(ModelProviderError, match="not valid JSON"):
        _provider("Sorry, I can't help with that.").analyze_problem("x")
    with pytest.raises(ModelProviderError, match="not a JSON object"):
        _provider("[1, 2]").analyze_problem("x")
    with pytest.raises(ModelProviderError, match="no text"):
        _provider("   ").analyze_problem("x")


def test_analyze_problem_requires_text() -> None:
    with pytest.raises(ValueError):
        _provider(_SCHEMA_JSON).analyze_problem("   ")


def test_explain_concept() -> None:
    prov = _provider("**Slope** is the rate of change.")
    assert prov.explain_concept("Cyclists", "What is the slope?").startswith("**Slope**")
    assert "What is the slope?" in prov.client.messages.calls[0]["messages"][0]["content"]


def test_missing_api_key(monkeypatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    with pytest.raises(ModelProviderError, match="ANTHROPIC_API_KEY"):
        ModelProvider()


def test_client_built_from_api_key(monkeypatch) -> None:
    built = {}

    class _Anthropic:
        def __init__(self, api_key):
            built["api_key"] = api_key

    monkeypatch.setattr(provider_module, "Anthropic", _Anthropic)
    prov = ModelProvider(api_key="sk-test")
    assert built == {"api_key": "sk-test"}
    assert isinstance(prov.client, _Anthropic)
