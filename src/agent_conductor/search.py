"""Web search and documentation index backends."""

from __future__ import annotations

import json
import logging
import os
import urllib.parse
from collections import deque
from pathlib import Path
from typing import Any

import chromadb
from chromadb.api.types import Documents, EmbeddingFunction
from chromadb.utils import embedding_functions

from .errors import ConfigurationError
from .http_client import post_json
from .llm import ensure_openai_api_key
from .models import SearchResult

logger = logging.getLogger(__name__)

_BRIGHTDATA_ENDPOINT = "https://api.brightdata.com/request"
_RESULT_KEYS = ("organic", "organic_results", "results")
_RESULT_FIELD_SIGNALS = ("url", "link", "title", "description", "snippet")


def _coerce_json_object(payload: Any) -> dict[str, Any]:
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, list):
        return {"results": payload}
    if isinstance(payload, str):
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise RuntimeError("Bright Data response was not valid JSON") from exc
        return _coerce_json_object(parsed) if isinstance(parsed, (dict, list)) else {}
    raise RuntimeError("Bright Data response must be a JSON object or JSON list")


def _first_string(entry: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _find_result_candidates(payload: Any) -> list[dict[str, Any]]:
    """Breadth-first search for the list of result dicts inside a SERP payload."""
    queue: deque[Any] = deque([payload])
    while queue:
        node = queue.popleft()
        if isinstance(node, dict):
            for key in _RESULT_KEYS:
                value = node.get(key)
                if isinstance(value, list):
                    return [item for item in value if isinstance(item, dict)]
            queue.extend(value for value in node.values() if isinstance(value, (dict, list)))
            continue
        if isinstance(node, list):
            dict_items = [item for item in node if isinstance(item, dict)]
            if dict_items and any(any(signal in item for signal in _RESULT_FIELD_SIGNALS) for item in dict_items[:5]):
                return dict_items
            queue.extend(item for item in node if isinstance(item, (dict, list)))
    return []


def parse_serp_results(payload: Any, *, limit: int) -> list[SearchResult]:
    results: list[SearchResult] = []
    for entry in _find_result_candidates(_coerce_json_object(payload)):
        url = _first_string(entry, ("url", "link", "displayed_link"))
        title = _first_string(entry, ("title", "name", "headline"))
        snippet = _first_string(entry, ("snippet", "description", "text", "body"))
        if not any((url, title, snippet)):
            continue
        results.append(SearchResult(url=url, title=title, snippet=snippet))
        if len(results) >= limit:
            break
    return results


class BrightDataSearch:
    """Web search through the Bright Data SERP API."""

    def __init__(self, api_key: str, zone: str, *, country: str = "us") -> None:
        self.api_key = api_key
        self.zone = zone
        self.country = country

    @classmethod
    def from_env(cls) -> "BrightDataSearch":
        api_key = os.getenv("BRIGHTDATA_API_KEY", "").strip()
        zone = os.getenv("BRIGHTDATA_SERP_ZONE", "").strip()
        if not api_key or not zone:
            raise ConfigurationError("web search requires BRIGHTDATA_API_KEY and BRIGHTDATA_SERP_ZONE")
        return cls(api_key, zone, country=os.getenv("BRIGHTDATA_SERP_COUNTRY", "us").strip() or "us")

    def query(self, text: str, *, limit: int = 5) -> list[SearchResult]:
        search_url = f"https://www.google.com/search?{urllib.parse.urlencode({'q': text})}"
        payload = {
            "zone": self.zone,
            "url": search_url,
            "format": "json",
            "country": self.country,
            "method": "GET",
        }
        logger.debug("web search query=%r zone=%s", text, self.zone)
        data = post_json(_BRIGHTDATA_ENDPOINT, payload, headers={"Authorization": f"Bearer {self.api_key}"})
        results = parse_serp_results(data, limit=limit)
        logger.debug("web search returned %d results for %r", len(results), text)
        return results


def _build_embedding_function(*, model_name: str) -> EmbeddingFunction[Documents]:
    return embedding_functions.OpenAIEmbeddingFunction(api_key=ensure_openai_api_key(), model_name=model_name)


class ChromaDocumentSearch:
    """Documentation index stored in a persistent Chroma collection."""

    def __init__(
        self,
        root: Path,
        *,
        collection: str = "docs",
        embedding_model: str = "text-embedding-3-large",
        embedding_function: EmbeddingFunction[Documents] | None = None,
    ) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.client = chromadb.PersistentClient(path=str(self.root))
        self.collection = self.client.get_or_create_collection(
            name=collection,
            embedding_function=embedding_function or _build_embedding_function(model_name=embedding_model),
            metadata={"hnsw:space": "cosine"},
        )

    def add(self, doc_id: str, text: str, *, url: str = "", title: str = "") -> None:
        self.collection.upsert(ids=[doc_id], documents=[text], metadatas=[{"url": url, "title": title}])

    def query(self, text: str, *, limit: int = 5) -> list[SearchResult]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        result = self.collection.query(
            query_texts=[text],
            n_results=limit,
            include=["documents", "metadatas", "distances"],
        )
        documents = (result.get("documents") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        ranked: list[SearchResult] = []
        for document, metadata, distance in zip(documents, metadatas, distances):
            # cosine distance: lower is closer
            ranked.append(
                SearchResult(
                    url=str((metadata or {}).get("url", "")),
                    title=str((metadata or {}).get("title", "")),
                    snippet=str(document or "")[:500],
                    score=max(0.0, min(1.0, 1.0 - float(distance))),
                )
            )
        return ranked
