from types import SimpleNamespace

import pytest
import torch

from app.exceptions import InitializationError, ProviderError
from core.vectorizer import LocalTextEmbedder


def _bare_embedder(truncate_dim=None, native_dimension=4, model=None):
    """LocalTextEmbedder without loading weights."""
    embedder = LocalTextEmbedder.__new__(LocalTextEmbedder)
    embedder.model_name = "test/model"
    embedder.device = "cpu"
    embedder.truncate_dim = truncate_dim
    embedder.model = model
    embedder.processor = None
    embedder._native_dimension = native_dimension
    embedder._is_loaded = False
    return embedder


def test_embeddings_are_l2_normalised():
    vectors = _bare_embedder()._postprocess_embeddings(torch.tensor([[3.0, 4.0, 0.0, 0.0]]))

    assert vectors[0] == pytest.approx([0.6, 0.8, 0.0, 0.0])


def test_truncation_renormalises_and_reports_dimension():
    embedder = _bare_embedder(truncate_dim=2)

    vectors = embedder._postprocess_embeddings(torch.tensor([[1.0, 1.0, 1.0, 1.0]]))

    assert vectors[0] == pytest.approx([2 ** -0.5, 2 ** -0.5])
    assert embedder.dimension == 2


def test_models_without_text_projection_use_masked_mean_pooling():
    class EncoderOnly:
        def __call__(self, **inputs):
            return SimpleNamespace(last_hidden_state=torch.tensor([[[1.0, 1.0], [5.0, 5.0]]]))

    embedder = _bare_embedder(model=EncoderOnly())

    pooled = embedder._run_inference({"attention_mask": torch.tensor([[1, 0]])})

    assert pooled.tolist() == [[1.0, 1.0]]


def test_unloaded_model_cannot_embed():
    embedder = _bare_embedder()

    assert not embedder.is_ready
    with pytest.raises(ProviderError):
        embedder.embed("a golden retriever")
    with pytest.raises(InitializationError):
        embedder.ensure_ready()


def test_load_failure_is_an_initialization_error(monkeypatch):
    def missing(*args, **kwargs):
        raise OSError("model not found")

    monkeypatch.setattr("core.vectorizer.AutoModel.from_pretrained", missing)

    with pytest.raises(InitializationError, match="model not found"):
        LocalTextEmbedder("does-not/exist", device="cpu")
