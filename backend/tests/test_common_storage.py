from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from tests._bootstrap import bootstrap_backend_imports, reset_caches


bootstrap_backend_imports()


class StorageTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_caches()

    def test_get_minio_client_missing_credentials(self) -> None:
        os.environ["MINIO_ENDPOINT"] = "localhost:9000"
        os.environ["MINIO_ACCESS_KEY"] = ""
        os.environ["MINIO_SECRET_KEY"] = ""
        os.environ["MINIO_BUCKET"] = "attachments"
        reset_caches()

        from app.common.storage import StorageError, get_minio_client  # noqa: E402

        with self.assertRaises(StorageError):
            get_minio_client()

    def test_get_minio_client_missing_endpoint(self) -> None:
        os.environ["MINIO_ENDPOINT"] = ""
        os.environ["MINIO_ACCESS_KEY"] = "ak"
        os.environ["MINIO_SECRET_KEY"] = "sk"
        os.environ["MINIO_BUCKET"] = "b"
        reset_caches()

        from app.common.storage import StorageError, get_minio_client  # noqa: E402

        with self.assertRaises(StorageError):
            get_minio_client()

    def test_get_minio_client_parses_scheme_and_bounds_timeouts(self) -> None:
        os.environ["MINIO_ENDPOINT"] = "https://example.com:9000"
        os.environ["MINIO_ACCESS_KEY"] = "ak"
        os.environ["MINIO_SECRET_KEY"] = "sk"
        os.environ["MINIO_BUCKET"] = "b"
        os.environ["MINIO_SECURE"] = "false"
        os.environ["MINIO_CONNECT_TIMEOUT_SEC"] = "2"
        os.environ["MINIO_READ_TIMEOUT_SEC"] = "7"
        reset_caches()

        captured: dict[str, object] = {}

        class FakeMinio:
            def __init__(self, endpoint: str, access_key: str, secret_key: str, secure: bool, http_client=None):
                captured["endpoint"] = endpoint
                captured["secure"] = secure
                captured["http_client"] = http_client

            def bucket_exists(self, bucket: str) -> bool:  # noqa: ARG002
                return True

        try:
            with patch("app.common.storage.Minio", FakeMinio):
                from app.common.storage import get_minio_client  # noqa: E402

                client, bucket = get_minio_client()
        finally:
            os.environ.pop("MINIO_CONNECT_TIMEOUT_SEC", None)
            os.environ.pop("MINIO_READ_TIMEOUT_SEC", None)

        self.assertEqual(bucket, "b")
        self.assertIsNotNone(client)
        self.assertEqual(captured["endpoint"], "example.com:9000")
        self.assertEqual(captured["secure"], True)

        timeout = captured["http_client"].connection_pool_kw["timeout"]
        self.assertEqual(timeout.connect_timeout, 2.0)
        self.assertEqual(timeout.read_timeout, 7.0)

    def test_get_minio_client_creates_bucket(self) -> None:
        os.environ["MINIO_ENDPOINT"] = "localhost:9000"
        os.environ["MINIO_ACCESS_KEY"] = "ak"
        os.environ["MINIO_SECRET_KEY"] = "sk"
        os.environ["MINIO_BUCKET"] = "b"
        reset_caches()

        calls: list[str] = []

        class FakeMinio:
            def __init__(self, *_args, **_kwargs):
                pass

            def bucket_exists(self, bucket: str) -> bool:
                calls.append(f"exists:{bucket}")
                return False

            def make_bucket(self, bucket: str) -> None:
                calls.append(f"make:{bucket}")

        with patch("app.common.storage.Minio", FakeMinio):
            from app.common.storage import get_minio_client  # noqa: E402

            get_minio_client()

        self.assertEqual(calls, ["exists:b", "make:b"])

    def test_get_minio_client_bucket_init_failure(self) -> None:
        os.environ["MINIO_ENDPOINT"] = "localhost:9000"
        os.environ["MINIO_ACCESS_KEY"] = "ak"
        os.environ["MINIO_SECRET_KEY"] = "sk"
        os.environ["MINIO_BUCKET"] = "b"
        reset_caches()

        class FakeS3Error(Exception):
            def __init__(self, code: str):
                super().__init__(code)
                self.code = code

        class FakeMinio:
            def __init__(self, *_args, **_kwargs):
                pass

            def bucket_exists(self, bucket: str) -> bool:  # noqa: ARG002
                return False

            def make_bucket(self, _bucket: str) -> None:
                raise FakeS3Error("AccessDenied")

        with (
            patch("app.common.storage.S3Error", FakeS3Error),
            patch("app.common.storage.Minio", FakeMinio),
        ):
            from app.common.storage import StorageError, get_minio_client  # noqa: E402

            with self.assertRaises(StorageError):
                get_minio_client()

    def test_is_not_found_matches_known_codes(self) -> None:
        from app.common.storage import is_not_found  # noqa: E402

        class FakeS3Error(Exception):
            def __init__(self, code: str):
                super().__init__(code)
                self.code = code

        self.assertTrue(is_not_found(FakeS3Error("NoSuchKey")))
        self.assertTrue(is_not_found(FakeS3Error("NoSuchObject")))
        self.assertTrue(is_not_found(FakeS3Error("NotFound")))
        self.assertFalse(is_not_found(FakeS3Error("AccessDenied")))


if __name__ == "__main__":
    unittest.main()
