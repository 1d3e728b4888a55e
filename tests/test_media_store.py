"""
Tests for copying listing photos into Supabase Storage.
"""

from unittest.mock import MagicMock, patch

import pytest

from marketbot.services.integrations.media_store import MediaStore
from tests.helpers.recording_gateway import RecordingGateway


def _configured_store(gateway):
    return MediaStore(gateway, supabase_url="https://example.supabase.co", supabase_key="service-key", bucket="products")


@pytest.mark.asyncio
async def test_unconfigured_store_keeps_file_id(db):
    gateway = RecordingGateway()
    media = MediaStore(gateway, supabase_url="", supabase_key="")

    assert media.configured is False
    assert await media.persist_telegram_file("AgACAgFile", "products/1/a.jpg") == "AgACAgFile"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_configured_store_uploads_downloaded_bytes(db):
    gateway = RecordingGateway()
    media = _configured_store(gateway)

    with patch.object(gateway, "download", return_value=(b"jpeg-bytes", "image/jpeg")) as download, \
            patch.object(media, "upload", return_value="https://cdn.example/products/1/a.jpg") as upload:
        url = await media.persist_telegram_file("AgACAgFile", "products/1/a.jpg", user_id=1)

    assert url == "https://cdn.example/products/1/a.jpg"
    assert gateway.calls_for("getFile") == [{"file_id": "AgACAgFile"}]
    download.assert_called_once_with("https://api.telegram.org/file/bottest_token/photos/AgACAgFile.jpg")
    upload.assert_called_once_with(b"jpeg-bytes", "products/1/a.jpg", "image/jpeg")


@pytest.mark.asyncio
async def test_telegram_failure_falls_back_to_file_id(db):
    gateway = RecordingGateway(fail_methods={"getFile"})
    media = _configured_store(gateway)

    assert await media.persist_telegram_file("AgACAgFile", "products/1/a.jpg") == "AgACAgFile"


@pytest.mark.asyncio
async def test_upload_failure_falls_back_to_file_id(db):
    gateway = RecordingGateway()
    media = _configured_store(gateway)

    with patch.object(gateway, "download", return_value=(b"x", "image/jpeg")), \
            patch.object(media, "upload", side_effect=RuntimeError("bucket missing")):
        assert await media.persist_telegram_file("AgACAgFile", "products/1/a.jpg") == "AgACAgFile"


def test_upload_uses_supabase_bucket():
    media = _configured_store(RecordingGateway())
    bucket = MagicMock()
    bucket.get_public_url.return_value = "https://cdn.example/products/x.jpg"
    client = MagicMock()
    client.storage.from_.return_value = bucket

    with patch("supabase.create_client", return_value=client) as create_client:
        url = media.upload(b"data", "x.jpg", "image/png")

    assert url == "https://cdn.example/products/x.jpg"
    create_client.assert_called_once_with("https://example.supabase.co", "service-key")
    client.storage.from_.assert_called_once_with("products")
    bucket.upload.assert_called_once_with(
        path="x.jpg", file=b"data", file_options={"content-type": "image/png", "upsert": "true"}
    )


def test_upload_requires_configuration():
    media = MediaStore(RecordingGateway(), supabase_url="", supabase_key="")

    with pytest.raises(ValueError):
        media.upload(b"data", "x.jpg")
