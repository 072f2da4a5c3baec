"""Shared fixtures: in-memory stores, a scripted LLM provider and a signed-in session."""
import asyncio
from typing import Any, Optional

import pytest

from clouddrive.schemas.user import CurrentUser
from clouddrive.services.analysis import FileAnalyzer
from clouddrive.services.drive_repository import DriveRepository
from clouddrive.services.drive_session import DriveSession
from clouddrive.services.file_storage import InMemoryBlobStore
from clouddrive.services.identity import StaticIdentityProvider
from clouddrive.services.llm_base import BaseLLMProvider
from clouddrive.services.metadata_store import InMemoryMetadataStore

BUCKET = "test-bucket"


class FakeLLMProvider(BaseLLMProvider):
    """Returns scripted replies and records every prompt it receives."""

    def __init__(self, text: str = "", data: Optional[dict] = None, error: Optional[Exception] = None):
        super().__init__(api_key="test", model_name="fake")
        self.text = text
        self.data = data if data is not None else {"summary": "A file.", "tags": ["test"]}
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def generate(self, prompt, system_prompt=None, **kwargs):
        self.calls.append({"method": "generate", "prompt": prompt})
        if self.error:
            raise self.error
        return self.text

    async def generate_json(self, prompt, system_prompt=None, json_schema=None, **kwargs):
        self.calls.append({"method": "generate_json", "prompt": prompt, "schema": json_schema})
        if self.error:
            raise self.error
        return self.data

    async def generate_with_image(self, prompt, image_bytes, mime_type="image/png", **kwargs):
        self.calls.append({"method": "generate_with_image", "prompt": prompt, "image": image_bytes})
        if self.error:
            raise self.error
        return self.text


class FlakyMetadataStore(InMemoryMetadataStore):
    """In-memory store whose writes fail on demand.

    ``fail_on`` holds (operation, collection, document_id) triples; a
    ``None`` document id matches every document of that collection.
    """

    def __init__(self):
        super().__init__()
        self.fail_on: set[tuple[str, str, Optional[str]]] = set()
        self.fail_reads = False
        self.read_delay = 0.0
        # list calls allowed before every later one fails; None means unlimited
        self.reads_left: Optional[int] = None

    def _check(self, operation: str, collection: str, document_id: str) -> None:
        if (operation, collection, document_id) in self.fail_on or (operation, collection, None) in self.fail_on:
            raise ConnectionError(f"{operation} {collection}/{document_id} refused")

    async def create_document(self, collection, document_id, fields):
        self._check("create", collection, document_id)
        return await super().create_document(collection, document_id, fields)

    async def update_document(self, collection, document_id, fields):
        self._check("update", collection, document_id)
        return await super().update_document(collection, document_id, fields)

    async def delete_document(self, collection, document_id):
        self._check("delete", collection, document_id)
        return await super().delete_document(collection, document_id)

    async def list_documents(self, collection, predicates=()):
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.reads_left is not None:
            self.reads_left -= 1
            if self.reads_left < 0:
                raise ConnectionError("metadata store unavailable")
        if self.fail_reads:
            raise ConnectionError("metadata store unavailable")
        return await super().list_documents(collection, predicates)


class FlakyBlobStore(InMemoryBlobStore):
    def __init__(self):
        super().__init__()
        self.fail_put = False
        self.fail_delete = False

    async def put(self, bucket, blob_id, data, content_type="application/octet-stream"):
        if self.fail_put:
            raise ConnectionError("blob upload refused")
        return await super().put(bucket, blob_id, data, content_type)

    async def delete(self, bucket, blob_id):
        if self.fail_delete:
            raise ConnectionError("blob delete refused")
        return await super().delete(bucket, blob_id)


@pytest.fixture
def alice():
    return CurrentUser(id="alice", display_name="Alice", email="alice@example.com")


@pytest.fixture
def bob():
    return CurrentUser(id="bob", display_name="Bob", email="bob@example.com")


@pytest.fixture
def metadata():
    return FlakyMetadataStore()


@pytest.fixture
def blobs():
    return FlakyBlobStore()


@pytest.fixture
def repository(metadata, blobs):
    return DriveRepository(metadata, blobs, bucket=BUCKET, timeout=5.0)


@pytest.fixture
def llm():
    return FakeLLMProvider(text='{"summary": "A cat.", "tags": ["cat", "pet"]}')


@pytest.fixture
def analyzer(llm):
    return FileAnalyzer(llm, text_limit=10_000, chat_text_limit=20_000)


@pytest.fixture
def identity(alice):
    return StaticIdentityProvider(alice)


@pytest.fixture
async def session(identity, repository, analyzer):
    """Signed-in, loaded session that seeds no default folders."""
    drive = DriveSession(identity, repository, analyzer, seed_folders=[])
    await drive.refresh()
    yield drive
    await drive.wait_for_analysis()
    drive.close()
