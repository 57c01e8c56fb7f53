"""
Unit tests for the embedding and generation providers.
"""

import os
import sys
from unittest.mock import Mock, patch

import numpy as np
import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from errors import ProviderError
from models import ChatTurn, ContextExcerpt, ContextPayload, ExcerptSource
from providers import HashEmbeddingProvider, OllamaGenerationProvider, SentenceTransformerProvider


class TestHashEmbeddingProvider:
    def setup_method(self):
        self.provider = HashEmbeddingProvider(dimension=64)

    def test_dimension(self):
        assert self.provider.dimension("any") == 64
        vectors = self.provider.embed_batch(["hello world"], "hash-v1")
        assert len(vectors) == 1
        assert len(vectors[0]) == 64

    def test_deterministic_and_normalized(self):
        first = self.provider.embed_batch(["The quick brown fox"], "hash-v1")[0]
        second = HashEmbeddingProvider(dimension=64).embed_batch(["The quick brown fox"], "hash-v1")[0]
        assert first == second
        assert np.linalg.norm(first) == pytest.approx(1.0)

    def test_case_insensitive(self):
        a, b = self.provider.embed_batch(["Neural Networks", "neural networks"], "hash-v1")
        assert a == b

    def test_model_id_changes_space(self):
        a = self.provider.embed_batch(["neural networks"], "hash-v1")[0]
        b = self.provider.embed_batch(["neural networks"], "hash-v2")[0]
        assert a != b

    def test_no_words_gives_zero_vector(self):
        [vector] = self.provider.embed_batch(["?!"], "hash-v1")
        assert not any(vector)

    def test_invalid_dimension(self):
        with pytest.raises(ValueError):
            HashEmbeddingProvider(dimension=0)


class TestSentenceTransformerProvider:
    @patch("sentence_transformers.SentenceTransformer")
    def test_load_model_once(self, mock_sentence_transformer):
        mock_model = Mock()
        mock_model.encode.return_value = np.array([[0.1, 0.2, 0.3, 0.4]])
        mock_sentence_transformer.return_value = mock_model

        provider = SentenceTransformerProvider()
        assert provider.dimension("test-model") == 4
        assert provider.dimension("test-model") == 4

        mock_sentence_transformer.assert_called_once_with("test-model", device=None)

    @patch("sentence_transformers.SentenceTransformer")
    def test_embed_batch(self, mock_sentence_transformer):
        mock_model = Mock()
        mock_model.encode.side_effect = [
            np.array([[0.0, 0.0]]),
            np.array([[0.1, 0.2], [0.3, 0.4]]),
        ]
        mock_sentence_transformer.return_value = mock_model

        provider = SentenceTransformerProvider()
        result = provider.embed_batch(["one", "two"], "test-model")

        assert result == [[0.1, 0.2], [0.3, 0.4]]
        mock_model.encode.assert_called_with(["one", "two"], convert_to_numpy=True)

    @patch("sentence_transformers.SentenceTransformer")
    def test_load_failure_is_permanent(self, mock_sentence_transformer):
        mock_sentence_transformer.side_effect = OSError("no such model")

        provider = SentenceTransformerProvider()
        with pytest.raises(ProviderError) as exc_info:
            provider.embed_batch(["text"], "missing-model")
        assert exc_info.value.transient is False

    @patch("sentence_transformers.SentenceTransformer")
    def test_encode_runtime_error_is_transient(self, mock_sentence_transformer):
        mock_model = Mock()
        mock_model.encode.side_effect = [np.array([[0.0, 0.0]]), RuntimeError("CUDA out of memory")]
        mock_sentence_transformer.return_value = mock_model

        provider = SentenceTransformerProvider()
        with pytest.raises(ProviderError) as exc_info:
            provider.embed_batch(["text"], "test-model")
        assert exc_info.value.transient is True

    @patch("providers._resolve_hf_snapshot", return_value="/models/local-snapshot")
    @patch("sentence_transformers.SentenceTransformer")
    def test_local_only_resolution(self, mock_sentence_transformer, mock_resolve):
        mock_model = Mock()
        mock_model.encode.return_value = np.array([[0.5, 0.5]])
        mock_sentence_transformer.return_value = mock_model

        provider = SentenceTransformerProvider(allow_download=False)
        provider.load_model("org/model")

        mock_resolve.assert_called_once_with("org/model")
        mock_sentence_transformer.assert_called_once_with("/models/local-snapshot", device=None)


class TestOllamaGenerationProvider:
    def setup_method(self):
        self.session = Mock(spec=requests.Session)
        self.provider = OllamaGenerationProvider(
            base_url="http://localhost:11434/", model="llama3.2", timeout=5.0, session=self.session
        )
        self.context = ContextPayload(
            excerpts=(ContextExcerpt(text="Related note.", source=ExcerptSource.NOTE, note_id="n1"),),
            budget_chars=100,
        )
        self.conversation = [ChatTurn(role="user", content="What did I write?")]

    def respond(self, status=200, body=None, json_error=None):
        response = Mock()
        response.status_code = status
        if json_error is not None:
            response.json.side_effect = json_error
        else:
            response.json.return_value = body if body is not None else {}
        self.session.post.return_value = response
        return response

    def test_build_messages(self):
        messages = self.provider.build_messages(self.context, self.conversation)
        assert messages == [
            {"role": "system", "content": "Related note."},
            {"role": "user", "content": "What did I write?"},
        ]

    def test_empty_context_has_no_system_message(self):
        empty = ContextPayload(excerpts=(), budget_chars=100)
        assert self.provider.build_messages(empty, self.conversation) == [
            {"role": "user", "content": "What did I write?"}
        ]

    def test_generate_success(self):
        self.respond(body={"message": {"role": "assistant", "content": "You wrote about CNNs."}})

        reply = self.provider.generate(self.context, self.conversation)

        assert reply == "You wrote about CNNs."
        args, kwargs = self.session.post.call_args
        assert args[0] == "http://localhost:11434/api/chat"
        assert kwargs["timeout"] == 5.0
        assert kwargs["json"]["model"] == "llama3.2"
        assert kwargs["json"]["stream"] is False

    def test_timeout_is_transient(self):
        self.session.post.side_effect = requests.Timeout("slow")
        with pytest.raises(ProviderError) as exc_info:
            self.provider.generate(self.context, self.conversation)
        assert exc_info.value.transient is True

    def test_connection_error_is_transient(self):
        self.session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(ProviderError) as exc_info:
            self.provider.generate(self.context, self.conversation)
        assert exc_info.value.retryable is True

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_server_errors_are_transient(self, status):
        self.respond(status=status)
        with pytest.raises(ProviderError) as exc_info:
            self.provider.generate(self.context, self.conversation)
        assert exc_info.value.transient is True
        assert exc_info.value.details == {"status": status}

    def test_client_error_is_permanent(self):
        self.respond(status=404)
        with pytest.raises(ProviderError) as exc_info:
            self.provider.generate(self.context, self.conversation)
        assert exc_info.value.transient is False

    def test_malformed_response(self):
        self.respond(body={"unexpected": True})
        with pytest.raises(ProviderError):
            self.provider.generate(self.context, self.conversation)

    def test_invalid_json(self):
        self.respond(json_error=ValueError("not json"))
        with pytest.raises(ProviderError):
            self.provider.generate(self.context, self.conversation)
