"""
Embedding helpers: vector math shared by the pipeline and an HTTP client
for embedding free text (custom interests) against an OpenAI-compatible
``/embeddings`` endpoint.
"""
import logging
from typing import Sequence

import httpx
import numpy as np
from scipy.spatial.distance import cdist

from .config import EMBEDDING_API_KEY, EMBEDDING_MODEL, EMBEDDING_URL, HTTP_TIMEOUT, MAX_HTTP_RETRIES
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)


class EmbeddingRequestError(RuntimeError):
    """The embedding service could not produce a vector."""


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0 or not np.isfinite(norm):
        return vector
    return vector / norm


def average_embeddings(vectors: Sequence[np.ndarray], weights: Sequence[float]) -> np.ndarray | None:
    """
    Weighted mean of embeddings, L2-normalized.

    Returns None when there is nothing to average or all weights are zero.
    """
    if not vectors:
        return None
    matrix = np.vstack([np.asarray(v, dtype=np.float64) for v in vectors])
    w = np.asarray(weights, dtype=np.float64)
    total = w.sum()
    if total <= 0:
        return None
    mean = (matrix * w[:, None]).sum(axis=0) / total
    return l2_normalize(mean)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


def cosine_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine distance from query to each row; zero-norm rows get distance 1."""
    if matrix.size == 0:
        return np.empty(0)
    with np.errstate(invalid='ignore', divide='ignore'):
        distances = cdist(query[None, :], matrix, metric='cosine')[0]
    return np.nan_to_num(distances, nan=1.0)


class HttpTextEmbedder:
    """Embeds text through an OpenAI-compatible embeddings API."""

    def __init__(
        self,
        base_url: str = EMBEDDING_URL,
        model_id: str = EMBEDDING_MODEL,
        api_key: str = EMBEDDING_API_KEY,
        timeout: float = HTTP_TIMEOUT,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.model_id = model_id
        headers = {'Authorization': f'Bearer {api_key}'} if api_key else {}
        self.client = client or httpx.Client(timeout=timeout, headers=headers)

    def get_text_embedding(self, text: str) -> np.ndarray:
        if not self.base_url:
            raise EmbeddingRequestError("No embedding endpoint configured (LIBRARY_REC_EMBEDDING_URL)")
        try:
            payload = self._post({'model': self.model_id, 'input': text})
        except httpx.HTTPError as e:
            raise EmbeddingRequestError(f"Embedding request failed: {e}") from e

        try:
            vector = payload['data'][0]['embedding']
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingRequestError(f"Malformed embedding response: {e}") from e
        return np.asarray(vector, dtype=np.float64)

    @retry_with_backoff(max_retries=MAX_HTTP_RETRIES, initial_delay=1.0, exceptions=(httpx.TransportError,))
    def _post(self, body: dict) -> dict:
        response = self.client.post(f"{self.base_url}/embeddings", json=body)
        response.raise_for_status()
        return response.json()

    def close(self) -> None:
        self.client.close()
