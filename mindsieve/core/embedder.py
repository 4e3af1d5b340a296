"""Embedding service for text vectorization.

Vectors come from the Vertex AI text embedding model over REST. Each region
is tried with the ``:embedText`` endpoint first and ``:predict`` second
before moving to the next region.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import google.auth
import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest

from mindsieve.config import EmbeddingConfig, GCPConfig, get_settings
from mindsieve.exceptions import EmbeddingUnavailableError

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

Vector = List[float]


def _as_vector(values: Any) -> Optional[Vector]:
    if not isinstance(values, list) or not values:
        return None
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
        return None
    return [float(v) for v in values]


def _first_prediction(body: Dict[str, Any]) -> Dict[str, Any]:
    predictions = body.get("predictions")
    if isinstance(predictions, list) and predictions and isinstance(predictions[0], dict):
        return predictions[0]
    return {}


def _from_embedding(body: Dict[str, Any]) -> Optional[Vector]:
    return _as_vector((body.get("embedding") or {}).get("values"))


def _from_prediction_embeddings(body: Dict[str, Any]) -> Optional[Vector]:
    return _as_vector((_first_prediction(body).get("embeddings") or {}).get("values"))


def _from_prediction_embedding(body: Dict[str, Any]) -> Optional[Vector]:
    return _as_vector((_first_prediction(body).get("embedding") or {}).get("values"))


# Known response layouts, tried in order.
RESPONSE_PARSERS: List[Callable[[Dict[str, Any]], Optional[Vector]]] = [
    _from_embedding,
    _from_prediction_embeddings,
    _from_prediction_embedding,
]


def extract_vector(body: Any) -> Optional[Vector]:
    """Return the first non-empty numeric vector found in a response body."""
    if not isinstance(body, dict):
        return None
    for parser in RESPONSE_PARSERS:
        vector = parser(body)
        if vector:
            return vector
    return None


@dataclass
class EmbeddingEndpoint:
    """One endpoint shape of the embedding model."""
    method: str
    build_body: Callable[[str], Dict[str, Any]]


ENDPOINTS = [
    EmbeddingEndpoint("embedText", lambda text: {"text": text}),
    EmbeddingEndpoint(
        "predict",
        lambda text: {"instances": [{"content": text}], "parameters": {"autoTruncate": True}},
    ),
]


class DefaultCredentialsTokenProvider:
    """Access tokens from Application Default Credentials."""

    def __init__(self):
        self._credentials = None

    def _refresh(self) -> str:
        if self._credentials is None:
            self._credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        if not self._credentials.valid:
            self._credentials.refresh(GoogleAuthRequest())
        return self._credentials.token

    async def get_token(self) -> str:
        # google-auth refresh is blocking I/O
        return await asyncio.to_thread(self._refresh)


class Embedder:
    """Service for generating text embeddings.

    Raises ``EmbeddingUnavailableError`` once every region and endpoint has
    failed; callers surface that as an error instead of searching with a
    made-up vector.
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        gcp: Optional[GCPConfig] = None,
        regions: Optional[List[str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_provider=None,
    ):
        """Initialize the embedder.

        Args:
            config: Embedding configuration
            gcp: Project and primary region
            regions: Ordered regions to try
            http_client: Pre-configured HTTP client (for testing)
            token_provider: Object with async ``get_token()``
        """
        settings = get_settings()
        self.config = config or settings.embedding
        self.gcp = gcp or settings.gcp
        self.regions = regions or settings.embedding_regions
        self._http = http_client
        self._owns_http = http_client is None
        self.token_provider = token_provider or DefaultCredentialsTokenProvider()

    def _ensure_initialized(self):
        """Lazy initialization of the HTTP client."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.timeout)

    def endpoint_url(self, region: str, method: str) -> str:
        return (
            f"https://{region}-aiplatform.googleapis.com/v1/projects/{self.gcp.project_id}"
            f"/locations/{region}/publishers/google/models/{self.config.model_name}:{method}"
        )

    async def _try_endpoint(
        self,
        region: str,
        endpoint: EmbeddingEndpoint,
        text: str,
        token: str,
    ) -> Optional[Vector]:
        try:
            response = await self._http.post(
                self.endpoint_url(region, endpoint.method),
                headers={"Authorization": f"Bearer {token}"},
                json=endpoint.build_body(text),
            )
        except httpx.HTTPError as e:
            logger.warning(f":{endpoint.method} threw in {region}: {e}")
            return None

        if not response.is_success:
            logger.warning(
                f":{endpoint.method} failed in {region} with {response.status_code}: "
                f"{response.text[:300]}"
            )
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning(f":{endpoint.method} returned a non-JSON body in {region}")
            return None

        vector = extract_vector(body)
        if vector is None:
            logger.warning(f":{endpoint.method} returned no vector in {region}")
        return vector

    async def embed(self, text: str) -> Vector:
        """Generate embedding for a single text.

        Args:
            text: Input text to embed

        Returns:
            The embedding vector
        """
        self._ensure_initialized()

        payload_text = (text or "").strip()[: self.config.max_chars]

        try:
            token = await self.token_provider.get_token()
        except Exception as e:
            logger.error(f"Could not obtain an access token for embeddings: {e}")
            raise EmbeddingUnavailableError(
                "Failed to authenticate for text embeddings.",
            ) from e

        for region in self.regions:
            for endpoint in ENDPOINTS:
                vector = await self._try_endpoint(region, endpoint, payload_text, token)
                if vector:
                    logger.info(f"Embeddings OK via :{endpoint.method} in {region} ({len(vector)} dims)")
                    return vector

        logger.error(f"All embedding attempts failed for {self.config.model_name} in {self.regions}")
        raise EmbeddingUnavailableError(
            "Failed to generate text embedding.",
            {"model": self.config.model_name, "regions": list(self.regions)},
        )

    async def close(self):
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
