import pytest
from qdrant_client import QdrantClient

from src.rag.qdrant_manager import QdrantChunkStore
from tests.helpers import FakeEmbeddings


@pytest.fixture
def temp_dir(tmpdir):
    return tmpdir


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings(size=8)


@pytest.fixture
def memory_store() -> QdrantChunkStore:
    store = QdrantChunkStore(QdrantClient(location=":memory:"), collection_name="test_chunks", vector_size=8)
    store.ensure_collection()
    return store
