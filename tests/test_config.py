"""Config tests for CodeGraph Lite.

Tests critical configuration pathways:
- Defaults for memory budgets and indexing
- Environment variable override mechanism
- Validation in __post_init__
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from codegraph_lite.config import Config


class TestConfigDefaults:
    """Test that config has expected default values."""

    def test_memory_budgets(self):
        config = Config()
        assert config.active_memory_tokens == 4000
        assert config.working_memory_tokens == 16000
        assert config.max_graph_nodes == 1000
        assert config.history_limit == 10

    def test_importance_settings(self):
        config = Config()
        assert config.initial_importance == 0.5
        assert config.importance_step == 0.1

    def test_indexing_defaults(self):
        config = Config()
        assert config.batch_size == 50
        assert config.max_file_content == 10000
        assert ".py" in config.extensions
        assert ".ts" in config.extensions
        assert "node_modules/" in config.ignore_paths

    def test_embedding_dim_follows_provider(self):
        assert Config(use_local_embeddings=True).embedding_dim == 384
        assert Config(use_local_embeddings=False).embedding_dim == 1536


class TestConfigEnvironmentOverrides:
    """Test environment variable overrides for config."""

    def test_memory_budget_env_override(self):
        with patch.dict(os.environ, {"CODEGRAPH_ACTIVE_MEMORY_TOKENS": "2000"}):
            assert Config().active_memory_tokens == 2000

    def test_bool_env_override(self):
        with patch.dict(os.environ, {"CODEGRAPH_EMBEDDINGS_ENABLED": "false"}):
            assert Config().embeddings_enabled is False
        with patch.dict(os.environ, {"CODEGRAPH_USE_LOCAL_EMBEDDINGS": "yes"}):
            assert Config().use_local_embeddings is True

    def test_list_env_override(self):
        with patch.dict(os.environ, {"CODEGRAPH_EXTENSIONS": "py, rs"}):
            assert Config().extensions == [".py", ".rs"]

    def test_backend_lowercased(self):
        with patch.dict(os.environ, {"CODEGRAPH_GRAPH_BACKEND": "EMBEDDED"}):
            assert Config().graph_backend == "embedded"


class TestConfigValidation:
    def test_unknown_backend_falls_back_to_auto(self):
        assert Config(graph_backend="falkordb").graph_backend == "auto"

    def test_non_positive_budget_rejected(self):
        with pytest.raises(ValueError):
            Config(active_memory_tokens=0)

    def test_non_positive_batch_size_rejected(self):
        with pytest.raises(ValueError):
            Config(batch_size=0)

    def test_graph_file_relative_to_data_dir(self, tmp_path):
        config = Config(data_dir=str(tmp_path), embedded_graph_file="graph.json")
        assert config.data_dir == Path(tmp_path)
        assert config.graph_file == tmp_path / "graph.json"

    def test_graph_file_disabled(self):
        assert Config(embedded_graph_file="").graph_file is None
