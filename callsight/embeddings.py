from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

import httpx

from .config import Settings


class EmbeddingClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class EmbeddingResult:
    vectors: List[List[float]]
    model: str


def _normalize_base_url(raw: str) -> str:
    return raw.rstrip("/")


def _validate_texts(texts: Sequence[str]) -> List[str]:
    cleaned = [text.strip() for text in texts if isinstance(text, str) and text.strip()]
    if not cleaned:
        raise EmbeddingClientError("embedding request requires at least one non-empty text")
    return cleaned


def _validate_vectors(vectors: Sequence[Sequence[float]], expected_dim: int) -> List[List[float]]:
    normalized: List[List[float]] = []
    for index, vector in enumerate(vectors):
        if len(vector) != expected_dim:
            raise EmbeddingClientError(
                f"embedding {index} has dim {len(vector)}; expected {expected_dim}"
            )
        normalized.append([float(value) for value in vector])
    return normalized


class EmbeddingClient:
    """Single fixed embedding model behind an OpenAI-compatible /embeddings API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def model_id(self) -> str:
        return self._settings.embeddings_model_id

    @property
    def dim(self) -> int:
        return self._settings.embeddings_dim

    def enabled(self) -> bool:
        return bool(self._settings.embeddings_base_url.strip())

    def _api_key(self) -> str:
        return self._settings.embeddings_api_key or self._settings.openai_api_key

    def embed_texts(self, texts: Sequence[str]) -> EmbeddingResult:
        if not self.enabled():
            raise EmbeddingClientError("EMBEDDINGS_BASE_URL is not configured")

        cleaned = _validate_texts(texts)
        payload = {"input": cleaned, "model": self._settings.embeddings_model_id}
        url = f"{_normalize_base_url(self._settings.embeddings_base_url)}/embeddings"
        timeout = httpx.Timeout(self._settings.embeddings_timeout_s)
        headers = {}
        api_key = self._api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(f"embedding HTTP request failed: {exc}") from exc

        if response.status_code != 200:
            detail = response.text.strip()
            if len(detail) > 400:
                detail = detail[:400]
            raise EmbeddingClientError(
                f"embedding service returned {response.status_code}: {detail}"
            )

        body = response.json()
        data = body.get("data")
        if not isinstance(data, list):
            raise EmbeddingClientError("embedding response missing 'data' list")
        if len(data) != len(cleaned):
            raise EmbeddingClientError(
                f"embedding response count mismatch: got {len(data)}, expected {len(cleaned)}"
            )

        ordered = sorted(data, key=lambda item: int(item.get("index", 0)))
        vectors = _validate_vectors(
            [item.get("embedding") or [] for item in ordered],
            self._settings.embeddings_dim,
        )
        model = str(body.get("model") or self._settings.embeddings_model_id)
        return EmbeddingResult(vectors=vectors, model=model)

    def embed_texts_batched(
        self, texts: Sequence[str], batch_size: Optional[int] = None
    ) -> EmbeddingResult:
        cleaned = _validate_texts(texts)
        size = batch_size or self._settings.embeddings_batch_size
        if size <= 0:
            raise EmbeddingClientError("batch size must be > 0")

        all_vectors: List[List[float]] = []
        model_used = self._settings.embeddings_model_id
        for start in range(0, len(cleaned), size):
            chunk = cleaned[start : start + size]
            result = self.embed_texts(chunk)
            all_vectors.extend(result.vectors)
            model_used = result.model
        return EmbeddingResult(vectors=all_vectors, model=model_used)

    def embed(self, text: str) -> List[float]:
        return self.embed_texts([text]).vectors[0]
