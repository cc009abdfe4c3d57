"""Embedding generation using Model2Vec (lightweight, CPU-only)."""

from __future__ import annotations

import logging

import numpy as np
from scipy.spatial.distance import pdist, squareform

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "minishlab/potion-base-8M"

_models: dict[str, object] = {}


def get_model(model_name: str = DEFAULT_MODEL):
    """Lazy-load the embedding model."""
    if model_name not in _models:
        from model2vec import StaticModel

        logger.info("Loading embedding model: %s", model_name)
        _models[model_name] = StaticModel.from_pretrained(model_name)
    return _models[model_name]


def embed_texts(texts: list[str], model_name: str = DEFAULT_MODEL) -> np.ndarray:
    """Generate embeddings for a list of texts. Returns (N, D) array."""
    model = get_model(model_name)
    return np.asarray(model.encode(texts))


def similarity_matrix(embeddings: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarity; zero vectors are similar to nothing."""
    sim = 1.0 - squareform(pdist(embeddings, metric="cosine"))
    return np.nan_to_num(sim, nan=0.0)
