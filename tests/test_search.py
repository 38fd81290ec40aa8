from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from agent_conductor import search as search_module
from agent_conductor.errors import ConfigurationError
from agent_conductor.search import BrightDataSearch, ChromaDocumentSearch, parse_serp_results


class _DeterministicEmbeddingFunction:
    """Hash-based vectors so the documentation index needs no network access."""

    def __init__(self, *, dims: int = 96) -> None:
        self._dims = dims

    def __call__(self, input):  # noqa: ANN001,ANN204
        values = [input] if isinstance(input, str) else [str(item) for item in input]
        vectors: list[list[float]] = []
        for value in values:
            digest = hashlib.sha256(value.encode("utf-8")).digest()
            vectors.append([((digest[idx % len(digest)] / 255.0) * 2.0) - 1.0 for idx in range(self._dims)])
        return vectors

    def embed_query(self, input):  # noqa: ANN001,ANN201
        return self.__call__(input)

    @staticmethod
    def name() -> str:
        return "default"

    @staticmethod
    def build_from_config(config: dict[str, object]):  # noqa: ANN205
        dims_raw = config.get("dims")
        if isinstance(dims_raw, int) and dims_raw > 0:
            return _DeterministicEmbeddingFunction(dims=dims_raw)
        return _DeterministicEmbeddingFunction()

    def get_config(self) -> dict[str, object]:
        return {"dims": self._dims}

    def is_legacy(self) -> bool:
        return False

    def default_space(self) -> str:
        return "cosine"

    def supported_spaces(self) -> list[str]:
        return ["cosine", "l2", "ip"]


def test_web_search_requires_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BRIGHTDATA_API_KEY", raising=False)
    monkeypatch.setenv("BRIGHTDATA_SERP_ZONE", "serp_zone")
    with pytest.raises(ConfigurationError, match="BRIGHTDATA_API_KEY"):
        BrightDataSearch.from_env()


def test_web_search_calls_brightdata_request_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BRIGHTDATA_API_KEY", "token")
    monkeypatch.setenv("BRIGHTDATA_SERP_ZONE", "serp_zone")
    monkeypatch.delenv("BRIGHTDATA_SERP_COUNTRY", raising=False)
    captured: dict[str, object] = {}

    def _fake_post_json(url: str, payload: dict[str, object], headers: dict[str, str]) -> dict[str, object]:
        captured.update(url=url, payload=payload, headers=headers)
        return {
            "organic": [
                {"link": "https://example.com/a", "title": "A", "description": "Result A"},
                {"url": "https://example.com/b", "name": "B", "snippet": "Result B"},
            ]
        }

    monkeypatch.setattr(search_module, "post_json", _fake_post_json)

    results = BrightDataSearch.from_env().query("greeting conventions")

    assert captured["url"] == "https://api.brightdata.com/request"
    assert captured["headers"] == {"Authorization": "Bearer token"}
    assert captured["payload"] == {
        "zone": "serp_zone",
        "url": "https://www.google.com/search?q=greeting+conventions",
        "format": "json",
        "country": "us",
        "method": "GET",
    }
    assert [(r.url, r.title, r.snippet) for r in results] == [
        ("https://example.com/a", "A", "Result A"),
        ("https://example.com/b", "B", "Result B"),
    ]


def test_web_search_http_failure_propagates(monkeypatch: pytest.MonkeyPatch) -> None:
    def _failing_post_json(url: str, payload: dict[str, object], headers: dict[str, str]) -> dict[str, object]:
        raise RuntimeError("Failed to reach https://api.brightdata.com/request: Connection refused")

    monkeypatch.setattr(search_module, "post_json", _failing_post_json)
    with pytest.raises(RuntimeError, match="Connection refused"):
        BrightDataSearch("token", "serp_zone").query("failing search query")


def test_serp_parsing_finds_nested_results_and_honours_limit() -> None:
    payload = '{"body": {"sections": [{"organic_results": [{"link": "u1", "title": "t1"}, {}, {"link": "u2"}]}]}}'
    assert [result.url for result in parse_serp_results(payload, limit=5)] == ["u1", "u2"]
    assert len(parse_serp_results(payload, limit=1)) == 1
    assert parse_serp_results({"organic": []}, limit=5) == []
    with pytest.raises(RuntimeError, match="not valid JSON"):
        parse_serp_results("<html>", limit=5)


def test_documentation_index_returns_ranked_results(tmp_path: Path) -> None:
    index = ChromaDocumentSearch(tmp_path / "docs", embedding_function=_DeterministicEmbeddingFunction())
    index.add("pathlib", "pathlib.Path.read_text reads a file as a string", url="https://docs.test/pathlib", title="pathlib")
    index.add("shlex", "shlex.quote escapes a string for the shell", url="https://docs.test/shlex", title="shlex")

    results = index.query("pathlib.Path.read_text reads a file as a string", limit=2)
    assert len(results) == 2
    assert results[0].title == "pathlib"
    assert results[0].url == "https://docs.test/pathlib"
    assert results[0].score is not None and results[0].score >= results[1].score
    with pytest.raises(ValueError, match="limit"):
        index.query("anything", limit=0)
