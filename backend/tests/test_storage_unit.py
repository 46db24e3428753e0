import time
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from backend.app.errors import ValidationFailed
from backend.app.services.storage import (
    LocalStorage,
    StorageError,
    SupabaseStorage,
    sign_local_path,
    verify_local_signature,
)


class TestLocalStorage:
    def test_upload_download_remove(self, tmp_path):
        """Files round-trip under root/bucket/path and can be removed"""
        storage = LocalStorage(root=str(tmp_path))
        storage.upload("photos", "events/e1/previews/a.webp", b"abc", "image/webp")
        assert (tmp_path / "photos" / "events/e1/previews/a.webp").read_bytes() == b"abc"
        assert storage.download("photos", "events/e1/previews/a.webp") == b"abc"
        assert storage.remove("photos", ["events/e1/previews/a.webp", "missing.webp"]) == 1
        assert not storage.exists("photos", "events/e1/previews/a.webp")

    def test_missing_file_raises(self, tmp_path):
        """Download of an absent key is a storage error"""
        with pytest.raises(StorageError):
            LocalStorage(root=str(tmp_path)).download("photos", "nope.webp")

    def test_traversal_rejected(self, tmp_path):
        """Keys with .. never reach the filesystem"""
        with pytest.raises(ValidationFailed):
            LocalStorage(root=str(tmp_path)).upload("photos", "../escape.txt", b"x", "text/plain")

    def test_signed_url_verifies(self, tmp_path):
        """The generated URL carries a valid, unexpired signature"""
        storage = LocalStorage(root=str(tmp_path))
        url = storage.create_signed_url("photos", "events/e1/a.webp", 60)
        parsed = urlparse(url)
        assert parsed.path == "/storage/photos/events/e1/a.webp"
        qs = parse_qs(parsed.query)
        expires = int(qs["expires"][0])
        assert verify_local_signature("photos", "events/e1/a.webp", expires, qs["signature"][0])
        assert not verify_local_signature("photos", "events/e1/b.webp", expires, qs["signature"][0])

    def test_expired_signature_rejected(self):
        """A correct signature past its expiry is refused"""
        expires = int(time.time()) - 1
        sig = sign_local_path("photos", "a.webp", expires)
        assert not verify_local_signature("photos", "a.webp", expires, sig)


class TestSupabaseStorage:
    def _storage(self):
        client = MagicMock()
        bucket = client.storage.from_.return_value
        return SupabaseStorage(client=client), client, bucket

    def test_upload_calls_bucket(self):
        """Upload goes to the named bucket with content-type options"""
        storage, client, bucket = self._storage()
        storage.upload("photo-private", "events/e1/originals/a.jpg", b"data", "image/jpeg")
        client.storage.from_.assert_called_with("photo-private")
        kwargs = bucket.upload.call_args.kwargs
        assert kwargs["path"] == "events/e1/originals/a.jpg"
        assert kwargs["file_options"]["content-type"] == "image/jpeg"

    def test_upload_failure_wrapped(self):
        """Client errors surface as StorageError"""
        storage, _, bucket = self._storage()
        bucket.upload.side_effect = RuntimeError("boom")
        with pytest.raises(StorageError):
            storage.upload("photos", "a.webp", b"x", "image/webp")

    def test_signed_url_key_spellings(self):
        """Both signedURL and signedUrl responses are understood"""
        storage, _, bucket = self._storage()
        bucket.create_signed_url.return_value = {"signedURL": "https://s/a"}
        assert storage.create_signed_url("photos", "a.webp", 60) == "https://s/a"
        bucket.create_signed_url.return_value = {"signedUrl": "https://s/b"}
        assert storage.create_signed_url("photos", "a.webp", 60) == "https://s/b"

    def test_batch_signed_urls_keyed_by_path(self):
        """Batch signing maps each path to its URL"""
        storage, _, bucket = self._storage()
        bucket.create_signed_urls.return_value = [
            {"path": "a.webp", "signedURL": "https://s/a"},
            {"path": "b.webp", "error": "not found", "signedURL": None},
        ]
        assert storage.create_signed_urls("photos", ["a.webp", "b.webp"], 60) == {"a.webp": "https://s/a"}
