"""Tests for configuration loading."""

import os

import pytest

from src.models.config import ConfigLoader, IndexerConfig
from src.models.errors import ConfigurationError


def write(path, text):
    with open(path, "w") as f:
        f.write(text)
    return path


def test_defaults_when_file_missing(temp_dir):
    config = ConfigLoader.load(os.path.join(temp_dir, "missing.yaml"), environ={})
    assert config == IndexerConfig()
    assert config.chunking.max_messages_per_window == 20
    assert config.chunking.max_window_minutes == 10
    assert config.qdrant.vector_size == 384
    assert config.slack.history_page_limit == 200


def test_load_yaml(temp_dir):
    path = write(
        os.path.join(temp_dir, "config.yaml"),
        """
slack:
  channel_types: [public_channel, private_channel]
  history_page_limit: 100
chunking:
  max_messages_per_window: 8
qdrant:
  url: ":memory:"
  collection_name: test_chunks
top_k: 3
""",
    )

    config = ConfigLoader.load(path, environ={})

    assert config.slack.channel_types == ["public_channel", "private_channel"]
    assert config.slack.history_page_limit == 100
    assert config.chunking.max_messages_per_window == 8
    assert config.chunking.max_window_minutes == 10
    assert config.qdrant.url == ":memory:"
    assert config.top_k == 3


def test_environment_overrides_file(temp_dir):
    path = write(os.path.join(temp_dir, "config.yaml"), "chunking:\n  max_window_minutes: 30\n")

    config = ConfigLoader.load(
        path,
        environ={"MAX_WINDOW_MINUTES": "5", "QDRANT_COLLECTION": "from_env", "HISTORY_PAGE_LIMIT": "50"},
    )

    assert config.chunking.max_window_minutes == 5
    assert config.qdrant.collection_name == "from_env"
    assert config.slack.history_page_limit == 50


def test_invalid_values_raise_configuration_error(temp_dir):
    path = write(os.path.join(temp_dir, "config.yaml"), "slack:\n  history_page_limit: 5000\n")
    with pytest.raises(ConfigurationError):
        ConfigLoader.load(path, environ={})


def test_non_mapping_file(temp_dir):
    path = write(os.path.join(temp_dir, "config.yaml"), "- just\n- a list\n")
    with pytest.raises(ConfigurationError):
        ConfigLoader.load(path, environ={})


def test_invalid_env_value(temp_dir):
    with pytest.raises(ConfigurationError):
        ConfigLoader.load(os.path.join(temp_dir, "missing.yaml"), environ={"MAX_MESSAGES_PER_WINDOW": "zero"})
