"""Local blob store tests."""

import pytest

from partner_portal.middleware.exceptions import BlobUploadError
from partner_portal.onboarding.blobs import LocalBlobStore, blob_path


@pytest.mark.unit
def test_blob_path_layout():
    path = blob_path("tenant-1", "brand", "logo_primary", "My Logo.png")
    tenant, task, name = path.split("/")
    assert (tenant, task) == ("tenant-1", "brand")
    assert name.startswith("logo_primary_")
    assert name.endswith("_My_Logo.png")


@pytest.mark.asyncio
class TestLocalBlobStore:

    async def test_upload_and_read(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        ref = await store.upload("t1/brand/logo.png", b"\x89PNG", "image/png")

        assert ref.path == "t1/brand/logo.png"
        assert ref.size == 4
        assert ref.as_field_value() == "t1/brand/logo.png"
        assert (tmp_path / "t1" / "brand" / "logo.png").read_bytes() == b"\x89PNG"
        assert await store.read(ref.path) == b"\x89PNG"

    async def test_no_partial_file_left_behind(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        await store.upload("t1/legal/a.pdf", b"%PDF-1.7", "application/pdf")
        assert [p.name for p in (tmp_path / "t1" / "legal").iterdir()] == ["a.pdf"]

    async def test_refuses_paths_outside_root(self, tmp_path):
        store = LocalBlobStore(tmp_path / "blobs")
        with pytest.raises(BlobUploadError):
            await store.upload("../escape.png", b"x", "image/png")

    async def test_write_failure_maps_to_blob_error(self, tmp_path):
        root = tmp_path / "blobs"
        root.mkdir()
        # A file where a directory is needed
        (root / "t1").write_bytes(b"")
        store = LocalBlobStore(root)

        with pytest.raises(BlobUploadError) as exc_info:
            await store.upload("t1/brand/logo.png", b"x", "image/png")
        assert exc_info.value.status_code == 502
